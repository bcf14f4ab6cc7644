"""
审批工单相关请求/响应模型。
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from guardian.healing.models import Severity
from guardian.services.review_tickets import ReviewTicket, TicketStatus


class ReviewTicketResponse(BaseModel):
    """审批工单响应体。"""
    id: str
    issue_id: str
    correlation_id: str
    strategy: str
    status: TicketStatus
    severity: Severity
    reason: str
    summary: str
    action: Dict[str, Any]
    sandbox_passed: Optional[bool]
    sandbox_diff: Optional[str]
    sandbox_errors: List[str]
    reviewer_id: Optional[str]
    reviewer_note: Optional[str]
    created_at: datetime
    resolved_at: Optional[datetime]

    @classmethod
    def from_ticket(cls, ticket: ReviewTicket) -> "ReviewTicketResponse":
        test = ticket.test_result
        return cls(
            id=ticket.id,
            issue_id=ticket.issue_id,
            correlation_id=ticket.correlation_id,
            strategy=ticket.strategy,
            status=ticket.status,
            severity=ticket.severity,
            reason=ticket.reason,
            summary=ticket.issue.summary(),
            action=ticket.action.model_dump(mode="json"),
            sandbox_passed=test.passed if test else None,
            sandbox_diff=test.diff if test else None,
            sandbox_errors=test.errors if test else [],
            reviewer_id=ticket.reviewer_id,
            reviewer_note=ticket.reviewer_note,
            created_at=ticket.created_at,
            resolved_at=ticket.resolved_at,
        )


class ResolveReviewRequest(BaseModel):
    """审批/拒绝请求体。"""
    approve: bool
    approver_id: str = Field(min_length=1, max_length=128)
    note: str = Field(default="", max_length=2000)
