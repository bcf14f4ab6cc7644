"""
问题分析器 (Issue Analyzer)

把原始事件按签名目录分类为 Issue，计算严重度和受影响资源。
分类失败不能阻塞后续审计，因此 analyze() 从不抛出异常：任何内部错误都退化为 unknown 签名。

Classifies a raw event into an Issue against the signature catalog. It never
raises: an internal fault degrades to the synthetic "unknown" signature so the
raw event is still audited.
"""
from __future__ import annotations

from typing import Any, Callable, Optional

from guardian.core.logging import get_logger
from guardian.healing.models import (
    EventKind,
    Issue,
    IssueCategory,
    IssueContext,
    RawEvent,
    Severity,
    new_id,
)
from guardian.healing.signatures import UNKNOWN_SIGNATURE_ID, SignatureCatalog

logger = get_logger(__name__)

# 未知签名的兜底严重度 (Fallback severity for unmatched events)
_UNKNOWN_SEVERITY = {
    EventKind.UNHANDLED_EXCEPTION: Severity.HIGH,
    EventKind.WARNING: Severity.LOW,
}


def _affected_resources(raw: RawEvent) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in (raw.resource_hint, raw.file_path, raw.component, raw.endpoint):
        if value and value not in seen:
            seen[value] = None
    return tuple(seen)


def _context(raw: RawEvent, extra: Optional[dict[str, Any]]) -> IssueContext:
    return IssueContext(
        message=raw.message,
        stack=raw.stack,
        actor_id=raw.actor_id,
        session_id=raw.session_id,
        resource_hint=raw.resource_hint,
        kind=raw.kind,
        category_hint=raw.category_hint,
        component=raw.component,
        file_path=raw.file_path,
        endpoint=raw.endpoint,
        extra=dict(extra or {}),
    )


class IssueAnalyzer:
    """按签名目录分类原始事件。给定相同输入和 id_factory，结果相同。"""

    def __init__(
        self,
        catalog: SignatureCatalog,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self.catalog = catalog
        self._new_id = id_factory or (lambda: new_id("issue"))

    def analyze(self, raw: RawEvent, context: Optional[dict[str, Any]] = None) -> Issue:
        issue_id = self._new_id()
        correlation_id = raw.correlation_id or issue_id
        try:
            sig = self.catalog.match(raw)
            if sig is None:
                return self._unknown(issue_id, correlation_id, raw, context)
            return Issue(
                id=issue_id,
                correlation_id=correlation_id,
                timestamp=raw.timestamp,
                signature_id=sig.id,
                category=sig.category,
                severity=sig.severity,
                affected_resources=_affected_resources(raw),
                context=_context(raw, context),
                candidate_strategies=sig.strategies,
            )
        except Exception:
            logger.exception("Classification failed, degrading to unknown signature")
            return self._unknown(issue_id, correlation_id, raw, None)

    def reanalyze(self, issue: Issue) -> Issue:
        """重新分类：生成新的 Issue，沿用原 correlation_id，原 Issue 不变。"""
        ctx = issue.context
        raw = RawEvent(
            message=ctx.message,
            stack=ctx.stack,
            actor_id=ctx.actor_id,
            session_id=ctx.session_id,
            resource_hint=ctx.resource_hint,
            kind=ctx.kind,
            category_hint=ctx.category_hint,
            component=ctx.component,
            file_path=ctx.file_path,
            endpoint=ctx.endpoint,
            correlation_id=issue.correlation_id,
            timestamp=issue.timestamp,
        )
        return self.analyze(raw, ctx.extra)

    def _unknown(
        self,
        issue_id: str,
        correlation_id: str,
        raw: RawEvent,
        context: Optional[dict[str, Any]],
    ) -> Issue:
        logger.info("No signature matched event (kind=%s), using '%s'", raw.kind.value, UNKNOWN_SIGNATURE_ID)
        return Issue(
            id=issue_id,
            correlation_id=correlation_id,
            timestamp=raw.timestamp,
            signature_id=UNKNOWN_SIGNATURE_ID,
            category=raw.category_hint or IssueCategory.AVAILABILITY,
            severity=_UNKNOWN_SEVERITY.get(raw.kind, Severity.MEDIUM),
            affected_resources=_affected_resources(raw),
            context=_context(raw, context),
            candidate_strategies=(),
        )
