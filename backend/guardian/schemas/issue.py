"""
问题事件相关请求/响应模型。
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from guardian.healing.models import (
    AuditOutcome,
    IssueCategory,
    PipelineResult,
    PipelineStage,
    RawEvent,
    Severity,
)


class IssueBatchRequest(BaseModel):
    """批量提交事件请求体。"""
    events: List[RawEvent] = Field(min_length=1, max_length=100)


class PipelineResultResponse(BaseModel):
    """单个事件的处理结果。"""
    issue_id: str
    correlation_id: str
    signature_id: str
    category: IssueCategory
    severity: Severity
    stage: PipelineStage
    outcome: AuditOutcome
    strategy: Optional[str]
    action_id: Optional[str]
    ticket_id: Optional[str]
    reason: str
    entry_ids: List[str]

    @classmethod
    def from_result(cls, result: PipelineResult) -> "PipelineResultResponse":
        issue = result.issue
        return cls(
            issue_id=issue.id,
            correlation_id=issue.correlation_id,
            signature_id=issue.signature_id,
            category=issue.category,
            severity=issue.severity,
            stage=result.stage,
            outcome=result.outcome,
            strategy=result.strategy,
            action_id=result.action_id,
            ticket_id=result.ticket_id,
            reason=result.reason,
            entry_ids=result.entry_ids,
        )
