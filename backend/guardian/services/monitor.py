"""
实时监控服务 (Realtime Monitor Service)

订阅 AuditStream（只包含已持久化的审计条目），按规则生成 GuardianAlert 并交给 AlertNotifier：

告警规则 (Alert rules):
    1. 终态条目的严重度 ≥ 阈值
    2. 某个策略待审批工单数超过上限（审批积压）
    3. 实时执行失败（无论严重度）

同一指纹在去重窗口内只告警一次。审计存储不可达时 raise_local_alarm() 绕过审计流直接告警。
"""
from __future__ import annotations

import asyncio
import enum
import hashlib
import time
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from pydantic import BaseModel, Field

from guardian.core.config import PolicyStore
from guardian.core.logging import get_logger, redact_text
from guardian.healing.models import (
    TERMINAL_STAGES,
    AuditEntry,
    AuditOutcome,
    IssueCategory,
    PipelineStage,
    Severity,
    new_id,
    utcnow,
)
from guardian.services.review_tickets import ReviewTicketStore
from guardian.services.stream import AuditStream

if TYPE_CHECKING:
    from guardian.services.notifier import AlertNotifier

logger = get_logger(__name__)

PHI_SIGNATURES = frozenset({"phi-in-logs"})
PHI_STRATEGIES = frozenset({"redact_sensitive_log_field"})


class AlertSeverity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return list(AlertSeverity).index(self)


SEVERITY_TO_ALERT = {
    Severity.LOW: AlertSeverity.INFO,
    Severity.MEDIUM: AlertSeverity.WARNING,
    Severity.HIGH: AlertSeverity.CRITICAL,
    Severity.CRITICAL: AlertSeverity.EMERGENCY,
}


class AlertCategory(str, enum.Enum):
    SECURITY_VULNERABILITY = "security_vulnerability"
    PHI_EXPOSURE = "phi_exposure"
    RESOURCE_LEAK = "resource_leak"
    HEALING_GENERATED = "healing_generated"
    APPROVAL_REQUIRED = "approval_required"
    SYSTEM_HEALTH = "system_health"


class GuardianAlert(BaseModel):
    id: str = Field(default_factory=lambda: new_id("alert"))
    severity: AlertSeverity
    category: AlertCategory
    title: str
    message: str
    fingerprint: str
    correlation_id: Optional[str] = None
    issue_id: Optional[str] = None
    entry_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


def _fingerprint(*parts: Optional[str]) -> str:
    identifier = ":".join(p or "none" for p in parts)
    return hashlib.sha256(identifier.encode()).hexdigest()[:32]


def _alert_category(entry: AuditEntry) -> AlertCategory:
    if entry.issue.get("signature_id") in PHI_SIGNATURES or entry.strategy in PHI_STRATEGIES:
        return AlertCategory.PHI_EXPOSURE
    if entry.stage in (PipelineStage.NEEDS_APPROVAL, PipelineStage.REVIEW_PENDING):
        return AlertCategory.APPROVAL_REQUIRED
    if entry.stage == PipelineStage.APPLIED:
        return AlertCategory.HEALING_GENERATED
    if entry.category == IssueCategory.SECURITY_VULNERABILITY:
        return AlertCategory.SECURITY_VULNERABILITY
    if entry.category == IssueCategory.RESOURCE_LEAK:
        return AlertCategory.RESOURCE_LEAK
    return AlertCategory.SYSTEM_HEALTH


class RealtimeMonitor:
    """审计流消费者。notifier 为空时只记录日志和最近告警。"""

    def __init__(
        self,
        stream: AuditStream,
        tickets: Optional[ReviewTicketStore] = None,
        notifier: Optional["AlertNotifier"] = None,
        policy_store: Optional[PolicyStore] = None,
        clock: Callable[[], float] = time.monotonic,
        history_size: int = 200,
    ) -> None:
        self.stream = stream
        self.tickets = tickets
        self.notifier = notifier
        self.policy_store = policy_store or PolicyStore()
        self._clock = clock
        self._last_sent: dict[str, float] = {}
        self.recent: deque[GuardianAlert] = deque(maxlen=history_size)
        self.suppressed = 0
        self._queue: Optional[asyncio.Queue] = None

    # === 规则 (Rules) ===

    async def evaluate(self, entry: AuditEntry) -> list[GuardianAlert]:
        """按规则计算一条审计条目产生的告警（未去重）。"""
        policy = self.policy_store.current
        alerts: list[GuardianAlert] = []
        signature = entry.issue.get("signature_id")
        resources = entry.issue.get("affected_resources") or []
        resource = resources[0] if resources else None

        threshold = Severity(policy.alert_severity_threshold)
        if entry.stage in TERMINAL_STAGES and entry.severity.at_least(threshold):
            alerts.append(GuardianAlert(
                severity=SEVERITY_TO_ALERT[entry.severity],
                category=_alert_category(entry),
                title=f"{entry.severity.value.upper()} issue {entry.stage.value}: {signature}",
                message=redact_text(entry.detail),
                fingerprint=_fingerprint("severity", signature, entry.stage.value, resource),
                correlation_id=entry.correlation_id,
                issue_id=entry.issue_id,
                entry_id=entry.id,
            ))

        if (
            entry.stage == PipelineStage.FAILED
            and entry.outcome == AuditOutcome.FAILED
            and entry.action_id is not None
        ):
            alerts.append(GuardianAlert(
                severity=AlertSeverity.CRITICAL,
                category=AlertCategory.SYSTEM_HEALTH,
                title=f"Live healing failed: {entry.strategy}",
                message=redact_text(entry.detail),
                fingerprint=_fingerprint("apply_failed", entry.strategy, resource),
                correlation_id=entry.correlation_id,
                issue_id=entry.issue_id,
                entry_id=entry.id,
            ))

        if (
            self.tickets is not None
            and entry.strategy
            and entry.stage in (PipelineStage.NEEDS_APPROVAL, PipelineStage.REVIEW_PENDING)
        ):
            backlog = await self.tickets.count_open(entry.strategy)
            if backlog > policy.review_backlog_limit:
                alerts.append(GuardianAlert(
                    severity=AlertSeverity.WARNING,
                    category=AlertCategory.APPROVAL_REQUIRED,
                    title=f"Review backlog for {entry.strategy}: {backlog} open tickets",
                    message=f"{backlog} tickets waiting for review (limit {policy.review_backlog_limit})",
                    fingerprint=_fingerprint("backlog", entry.strategy),
                    correlation_id=entry.correlation_id,
                    issue_id=entry.issue_id,
                    entry_id=entry.id,
                ))
        return alerts

    def _should_send(self, alert: GuardianAlert) -> bool:
        window = self.policy_store.current.alert_dedup_seconds
        now = self._clock()
        last = self._last_sent.get(alert.fingerprint)
        if last is not None and now - last < window:
            self.suppressed += 1
            logger.debug("Suppressed duplicate alert %s (%s)", alert.fingerprint, alert.title)
            return False
        # 过期指纹随写入清理，字典大小受窗口内不同告警数限制
        self._last_sent = {fp: ts for fp, ts in self._last_sent.items() if now - ts < window}
        self._last_sent[alert.fingerprint] = now
        return True

    async def _dispatch(self, alert: GuardianAlert) -> None:
        self.recent.append(alert)
        logger.warning("Guardian alert [%s/%s] %s", alert.severity.value, alert.category.value, alert.title)
        if self.notifier is None:
            return
        status = await self.notifier.send(alert)
        if not status.delivered:
            logger.error("Alert %s was not delivered on any channel", alert.id)

    async def handle_entry(self, entry: AuditEntry) -> list[GuardianAlert]:
        """处理一条审计条目，返回实际发出的告警。"""
        sent = []
        for alert in await self.evaluate(entry):
            if self._should_send(alert):
                await self._dispatch(alert)
                sent.append(alert)
        return sent

    async def raise_local_alarm(self, reason: str) -> GuardianAlert:
        """持久化故障告警，不经过审计流。"""
        alert = GuardianAlert(
            severity=AlertSeverity.EMERGENCY,
            category=AlertCategory.SYSTEM_HEALTH,
            title="Guardian audit persistence degraded",
            message=redact_text(reason),
            fingerprint=_fingerprint("local_alarm", reason),
        )
        logger.critical("Local alarm: %s", alert.message)
        if self._should_send(alert):
            await self._dispatch(alert)
        return alert

    # === 运行循环 (Run loop) ===

    def start(self) -> None:
        if self._queue is None:
            self._queue = self.stream.subscribe()

    async def run(self) -> None:
        """消费审计流直到任务被取消。单条处理失败不影响后续条目。"""
        self.start()
        queue = self._queue
        logger.info("Realtime monitor subscribed to audit stream")
        try:
            while True:
                entry = await queue.get()
                try:
                    await self.handle_entry(entry)
                except Exception:
                    logger.exception("Realtime monitor failed on audit entry %s", entry.id)
        except asyncio.CancelledError:
            logger.info("Realtime monitor shutting down")
            raise
        finally:
            self.stream.unsubscribe(queue)
            self._queue = None
