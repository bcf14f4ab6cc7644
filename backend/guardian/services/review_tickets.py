"""
人工审批工单服务 (Review Ticket Service)

需要审批（critical、影响面过大）或沙箱未通过的修复动作生成一张工单，
保存 Issue、建议的动作、沙箱结果和审批意见。审批通过后由 AgentBrain 用工单中的动作实时执行。

状态流转 (Status flow):
    pending → approved → applied | failed
    pending → rejected
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional, Protocol

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardian.core.exceptions import IllegalTransitionError
from guardian.healing.models import HealingAction, Issue, Severity, TestResult, new_id, utcnow
from guardian.models.review_ticket import ReviewTicketRecord
from guardian.services.audit_store import as_utc


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"


_TICKET_TRANSITIONS = {
    TicketStatus.PENDING: {TicketStatus.APPROVED, TicketStatus.REJECTED},
    TicketStatus.APPROVED: {TicketStatus.APPLIED, TicketStatus.FAILED},
    TicketStatus.REJECTED: set(),
    TicketStatus.APPLIED: set(),
    TicketStatus.FAILED: set(),
}


class ReviewTicket(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ticket"))
    issue_id: str
    correlation_id: str
    strategy: str
    status: TicketStatus = TicketStatus.PENDING
    severity: Severity
    reason: str = ""
    issue: Issue
    action: HealingAction
    test_result: Optional[TestResult] = None
    last_entry_id: Optional[str] = None
    reviewer_id: Optional[str] = None
    reviewer_note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == TicketStatus.PENDING

    def transition(self, new_status: TicketStatus) -> None:
        if new_status not in _TICKET_TRANSITIONS[self.status]:
            raise IllegalTransitionError(
                f"Review ticket {self.id}: {self.status.value} -> {new_status.value} is not allowed"
            )
        self.status = new_status


class ReviewTicketStore(Protocol):
    async def save(self, ticket: ReviewTicket) -> None:
        ...

    async def get_by_issue(self, issue_id: str) -> Optional[ReviewTicket]:
        ...

    async def list_open(self, strategy: Optional[str] = None) -> list[ReviewTicket]:
        ...

    async def count_open(self, strategy: str) -> int:
        ...


class InMemoryReviewTicketStore:
    def __init__(self) -> None:
        self._tickets: dict[str, ReviewTicket] = {}

    async def save(self, ticket: ReviewTicket) -> None:
        self._tickets[ticket.issue_id] = ticket.model_copy(deep=True)

    async def get_by_issue(self, issue_id: str) -> Optional[ReviewTicket]:
        ticket = self._tickets.get(issue_id)
        return ticket.model_copy(deep=True) if ticket else None

    async def list_open(self, strategy: Optional[str] = None) -> list[ReviewTicket]:
        tickets = [
            t.model_copy(deep=True) for t in self._tickets.values()
            if t.is_open and (strategy is None or t.strategy == strategy)
        ]
        return sorted(tickets, key=lambda t: t.created_at)

    async def count_open(self, strategy: str) -> int:
        return sum(1 for t in self._tickets.values() if t.is_open and t.strategy == strategy)


def _to_ticket(record: ReviewTicketRecord) -> ReviewTicket:
    return ReviewTicket(
        id=record.id,
        issue_id=record.issue_id,
        correlation_id=record.correlation_id,
        strategy=record.strategy,
        status=TicketStatus(record.status),
        severity=Severity(record.severity),
        reason=record.reason,
        issue=Issue.model_validate(record.issue_json),
        action=HealingAction.model_validate(record.action_json),
        test_result=TestResult.model_validate(record.test_result_json) if record.test_result_json else None,
        last_entry_id=record.last_entry_id,
        reviewer_id=record.reviewer_id,
        reviewer_note=record.reviewer_note,
        created_at=as_utc(record.created_at),
        resolved_at=as_utc(record.resolved_at) if record.resolved_at else None,
    )


class SqlReviewTicketStore:
    """工单按 issue_id 唯一，save() 插入或整体覆盖。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def save(self, ticket: ReviewTicket) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReviewTicketRecord).where(ReviewTicketRecord.issue_id == ticket.issue_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = ReviewTicketRecord(id=ticket.id, issue_id=ticket.issue_id, created_at=ticket.created_at)
                session.add(record)
            record.correlation_id = ticket.correlation_id
            record.strategy = ticket.strategy
            record.status = ticket.status.value
            record.severity = ticket.severity.value
            record.reason = ticket.reason
            record.issue_json = ticket.issue.model_dump(mode="json")
            record.action_json = ticket.action.model_dump(mode="json")
            record.test_result_json = ticket.test_result.model_dump(mode="json") if ticket.test_result else None
            record.last_entry_id = ticket.last_entry_id
            record.reviewer_id = ticket.reviewer_id
            record.reviewer_note = ticket.reviewer_note
            record.resolved_at = ticket.resolved_at
            await session.commit()

    async def get_by_issue(self, issue_id: str) -> Optional[ReviewTicket]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReviewTicketRecord).where(ReviewTicketRecord.issue_id == issue_id)
            )
            record = result.scalar_one_or_none()
            return _to_ticket(record) if record else None

    async def list_open(self, strategy: Optional[str] = None) -> list[ReviewTicket]:
        stmt = select(ReviewTicketRecord).where(ReviewTicketRecord.status == TicketStatus.PENDING.value)
        if strategy:
            stmt = stmt.where(ReviewTicketRecord.strategy == strategy)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(ReviewTicketRecord.created_at))
            return [_to_ticket(r) for r in result.scalars().all()]

    async def count_open(self, strategy: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(ReviewTicketRecord).where(
                    ReviewTicketRecord.status == TicketStatus.PENDING.value,
                    ReviewTicketRecord.strategy == strategy,
                )
            )
            return int(result.scalar() or 0)
