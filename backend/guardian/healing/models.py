"""
自愈模块的 Pydantic 数据模型。

用于模块内部数据传递，与 SQLAlchemy ORM 模型（guardian.models）互补。
Issue / AuditEntry 创建后不可变；HealingAction 的状态迁移受白名单约束。
"""
from __future__ import annotations

import enum
import hashlib
import json
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from guardian.core.exceptions import IllegalTransitionError

UTC = timezone.utc


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(UTC)


def digest_of(data: Any) -> str:
    """规范化 JSON 的 SHA-256，用于前后状态摘要。"""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# 枚举 (Enums)
# ---------------------------------------------------------------------------

class IssueCategory(str, enum.Enum):
    SECURITY_VULNERABILITY = "security_vulnerability"
    PERFORMANCE_DEGRADATION = "performance_degradation"
    RESOURCE_LEAK = "resource_leak"
    DATA_INTEGRITY = "data_integrity"
    AVAILABILITY = "availability"


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2, Severity.CRITICAL: 3}


class EventKind(str, enum.Enum):
    """原始事件类型，决定未知签名的兜底严重度。"""
    UNHANDLED_EXCEPTION = "unhandled_exception"
    WARNING = "warning"
    POLICY_VIOLATION = "policy_violation"
    ANOMALY = "anomaly"


class ActionStatus(str, enum.Enum):
    PROPOSED = "proposed"
    SANDBOX_TESTED = "sandbox_tested"
    APPROVED = "approved"
    EXECUTED = "executed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


_ACTION_TRANSITIONS: dict[ActionStatus, set[ActionStatus]] = {
    ActionStatus.PROPOSED: {ActionStatus.SANDBOX_TESTED, ActionStatus.APPROVED, ActionStatus.FAILED},
    ActionStatus.SANDBOX_TESTED: {ActionStatus.APPROVED, ActionStatus.EXECUTED, ActionStatus.FAILED},
    ActionStatus.APPROVED: {ActionStatus.SANDBOX_TESTED, ActionStatus.EXECUTED, ActionStatus.FAILED},
    ActionStatus.EXECUTED: set(),
    ActionStatus.FAILED: {ActionStatus.ROLLED_BACK},
    ActionStatus.ROLLED_BACK: set(),
}


class PipelineStage(str, enum.Enum):
    """Issue 生命周期中的状态，每次迁移写一条审计。"""
    CLASSIFIED = "classified"
    AUTO_ELIGIBLE = "auto_eligible"
    NEEDS_APPROVAL = "needs_approval"
    GATED = "gated"
    SANDBOXED = "sandboxed"
    APPLIED = "applied"
    REJECTED = "rejected"
    REVIEW_PENDING = "review_pending"
    FAILED = "failed"


TERMINAL_STAGES = frozenset({
    PipelineStage.APPLIED,
    PipelineStage.REJECTED,
    PipelineStage.REVIEW_PENDING,
    PipelineStage.NEEDS_APPROVAL,
    PipelineStage.FAILED,
})


class AuditOutcome(str, enum.Enum):
    SUCCESS = "success"
    BLOCKED = "blocked"
    THROTTLED = "throttled"
    PENDING = "pending"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# 事件与 Issue (Events and issues)
# ---------------------------------------------------------------------------

class RawEvent(BaseModel):
    """宿主应用提交的原始错误/事件。"""
    message: str
    stack: Optional[str] = None
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    resource_hint: Optional[str] = None
    kind: EventKind = EventKind.UNHANDLED_EXCEPTION
    category_hint: Optional[IssueCategory] = None
    component: Optional[str] = None
    file_path: Optional[str] = None
    endpoint: Optional[str] = None
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class IssueContext(BaseModel):
    model_config = {"frozen": True}

    message: str
    stack: Optional[str] = None
    actor_id: Optional[str] = None
    session_id: Optional[str] = None
    resource_hint: Optional[str] = None
    kind: EventKind = EventKind.UNHANDLED_EXCEPTION
    category_hint: Optional[IssueCategory] = None
    component: Optional[str] = None
    file_path: Optional[str] = None
    endpoint: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Issue(BaseModel):
    """检测到的问题实例。创建后不可变，严重度不重新计算。"""
    model_config = {"frozen": True}

    id: str
    correlation_id: str
    timestamp: datetime
    signature_id: str
    category: IssueCategory
    severity: Severity
    affected_resources: tuple[str, ...] = ()
    context: IssueContext
    candidate_strategies: tuple[str, ...] = ()

    @property
    def primary_resource(self) -> Optional[str]:
        return self.affected_resources[0] if self.affected_resources else None

    def summary(self) -> str:
        return f"[{self.severity.value}] {self.signature_id} ({self.category.value}): {self.context.message[:120]}"


# ---------------------------------------------------------------------------
# 修复载荷：带标签的联合类型 (Healing payloads: tagged union)
# ---------------------------------------------------------------------------

class CodePatch(BaseModel):
    kind: Literal["code_patch"] = "code_patch"
    resource: str
    rule: str
    occurrences: int = 0


class ConfigToggle(BaseModel):
    kind: Literal["config_toggle"] = "config_toggle"
    resource: str
    key: str
    enabled: bool = True
    previous: Optional[dict[str, Any]] = None
    settings: dict[str, Any] = Field(default_factory=dict)


class RedactionRule(BaseModel):
    kind: Literal["redaction_rule"] = "redaction_rule"
    resource: str
    fields: list[str] = Field(default_factory=list)


class ResourceRelease(BaseModel):
    kind: Literal["resource_release"] = "resource_release"
    resource: str
    owner: str
    handle_kinds: list[str] = Field(default_factory=list)
    handle_ids: list[str] = Field(default_factory=list)


ActionPayload = Annotated[
    Union[CodePatch, ConfigToggle, RedactionRule, ResourceRelease],
    Field(discriminator="kind"),
]


class RollbackPlan(BaseModel):
    """策略自己声明的逆操作；不可逆的动作显式声明为 none。"""
    invertible: bool
    description: str
    steps: list[str] = Field(default_factory=list)


NO_ROLLBACK = RollbackPlan(invertible=False, description="none; re-apply from backup")


class TargetSnapshot(BaseModel):
    """修复目标（源文件内容或运行时状态）的快照。"""
    resource: str
    content: str = ""
    state: dict[str, Any] = Field(default_factory=dict)
    version: int = 0

    def digest(self) -> str:
        return digest_of({"content": self.content, "state": self.state})

    def same_as(self, other: "TargetSnapshot") -> bool:
        return self.content == other.content and self.state == other.state


class HealingAction(BaseModel):
    """建议或已执行的修复动作，由 Agent 持有到终态。"""
    id: str = Field(default_factory=lambda: new_id("action"))
    issue_id: str
    strategy: str
    description: str
    payload: ActionPayload
    rollback: RollbackPlan
    status: ActionStatus = ActionStatus.PROPOSED
    created_at: datetime = Field(default_factory=utcnow)

    def transition(self, new_status: ActionStatus) -> None:
        if new_status not in _ACTION_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"HealingAction {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status


class ApplyResult(BaseModel):
    target: TargetSnapshot
    changed: bool
    notes: list[str] = Field(default_factory=list)


class RateLimitSnapshot(BaseModel):
    key: str
    count: int
    limit: int
    window_seconds: float
    retry_after: float = 0.0


class SafetyDecision(BaseModel):
    """一次校验的结果，只作为审计条目的一部分持久化。"""
    allowed: bool
    reason: str
    requires_approval: bool = False
    rule: str = ""
    rate_limit: Optional[RateLimitSnapshot] = None


class TestResult(BaseModel):
    __test__ = False  # 不是 pytest 测试类

    passed: bool
    diff: str = ""
    errors: list[str] = Field(default_factory=list)
    idempotent: bool = True
    before_digest: str = ""
    after_digest: str = ""
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# 审计 (Audit)
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """一个流水线阶段的不可变记录，合规证据的最小单位。"""
    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: new_id("audit"))
    sequence: int = 0
    correlation_id: str
    issue_id: str
    parent_id: Optional[str] = None
    stage: PipelineStage
    outcome: AuditOutcome
    severity: Severity
    category: IssueCategory
    strategy: Optional[str] = None
    action_id: Optional[str] = None
    issue: dict[str, Any] = Field(default_factory=dict)
    action: Optional[dict[str, Any]] = None
    decision: Optional[dict[str, Any]] = None
    before_digest: Optional[str] = None
    after_digest: Optional[str] = None
    actor: str = "agent"
    detail: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    prev_hash: str = ""
    entry_hash: str = ""

    def hash_material(self) -> dict[str, Any]:
        """参与哈希链计算的字段（不含 entry_hash 本身）。"""
        return self.model_dump(mode="json", exclude={"entry_hash"})


class AuditAck(BaseModel):
    entry_id: str
    sequence: Optional[int] = None  # 条目写入存储时才封存编号 (Assigned when the entry reaches the store)
    durable: bool
    buffered: bool = False


class AuditQuery(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    severity: Optional[Severity] = None
    min_severity: Optional[Severity] = None
    outcome: Optional[AuditOutcome] = None
    stage: Optional[PipelineStage] = None
    correlation_id: Optional[str] = None
    issue_id: Optional[str] = None
    limit: int = Field(default=500, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)

    def matches(self, entry: AuditEntry) -> bool:
        if self.start and entry.timestamp < self.start:
            return False
        if self.end and entry.timestamp > self.end:
            return False
        if self.severity and entry.severity != self.severity:
            return False
        if self.min_severity and not entry.severity.at_least(self.min_severity):
            return False
        if self.outcome and entry.outcome != self.outcome:
            return False
        if self.stage and entry.stage != self.stage:
            return False
        if self.correlation_id and entry.correlation_id != self.correlation_id:
            return False
        if self.issue_id and entry.issue_id != self.issue_id:
            return False
        return True


class PipelineResult(BaseModel):
    """Agent 对单个 Issue 处理的最终结果。"""
    issue: Issue
    stage: PipelineStage
    outcome: AuditOutcome
    strategy: Optional[str] = None
    action_id: Optional[str] = None
    ticket_id: Optional[str] = None
    reason: str = ""
    entry_ids: list[str] = Field(default_factory=list)

    def summary(self) -> str:
        strategy = self.strategy or "none"
        return f"{self.stage.value.upper()} ({self.outcome.value}) via strategy={strategy}: {self.reason}"
