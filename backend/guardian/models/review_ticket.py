"""
人工审批工单模型 (Review Ticket Model)

需要审批或沙箱未通过的修复动作进入工单，状态流转：
pending → approved → applied | failed，或 pending → rejected。
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from guardian.core.database import Base


class ReviewTicketRecord(Base):
    """审批工单表 (Review Ticket Table)"""
    __tablename__ = "guardian_review_tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    issue_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    correlation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    strategy: Mapped[str] = mapped_column(String(100), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), index=True, nullable=False, default="pending")
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")  # 进入审批的原因 (Why review is needed)
    issue_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    action_json: Mapped[dict] = mapped_column(JSON, nullable=False)
    test_result_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 沙箱结果 (Sandbox result)
    last_entry_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # 最近一条审计 (Latest audit entry)
    reviewer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    reviewer_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
