"""
审计条目模型 (Audit Entry Model)

自愈流水线每个阶段一条记录，只追加、不更新。sequence 给出全局顺序，
prev_hash / entry_hash 组成哈希链，用于发现篡改。

One row per pipeline stage, append-only. `sequence` gives the total order and
`prev_hash` / `entry_hash` form the tamper-evident chain.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from guardian.core.database import Base


class AuditEntryRecord(Base):
    """审计条目表 (Audit Entry Table)"""
    __tablename__ = "guardian_audit_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # 条目 ID (Entry ID)
    sequence: Mapped[int] = mapped_column(BigInteger, unique=True, index=True, nullable=False)  # 全局序号 (Global sequence)
    correlation_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    issue_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    parent_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # 同一 Issue 的上一条 (Previous entry of the issue)
    stage: Mapped[str] = mapped_column(String(30), index=True, nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), index=True, nullable=False)  # success/blocked/throttled/pending/failed
    severity: Mapped[str] = mapped_column(String(10), index=True, nullable=False)
    category: Mapped[str] = mapped_column(String(40), nullable=False)
    strategy: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    action_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    issue_json: Mapped[dict] = mapped_column(JSON, nullable=False)  # Issue 快照 (Issue snapshot)
    action_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 动作快照 (Action snapshot)
    decision_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 安全决策快照 (Decision snapshot)
    before_digest: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    after_digest: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    actor: Mapped[str] = mapped_column(String(100), nullable=False, default="agent")  # "agent" 或审批人 ID
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
