"""
审计持久化适配器 (Audit Persistence Adapters)

AuditLogger 只依赖 AuditStore 协议：只追加写入、按条件查询、保留期清理。
append() 以条目 id 幂等，超时后重放同一条目不会产生重复记录（至少一次写入语义）。
序号已被另一条目占用时抛出 AuditSequenceConflictError。

- SqlAuditStore：SQLAlchemy 异步会话，生产使用 PostgreSQL，测试使用 SQLite
- InMemoryAuditStore：进程内实现，可模拟后端不可达
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardian.core.exceptions import AuditSequenceConflictError
from guardian.healing.models import (
    AuditEntry,
    AuditOutcome,
    AuditQuery,
    IssueCategory,
    PipelineStage,
    Severity,
)
from guardian.models.audit_entry import AuditEntryRecord


def as_utc(value: datetime) -> datetime:
    """SQLite 读回的是 naive 时间，统一视为 UTC。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuditStore(Protocol):
    async def append(self, entry: AuditEntry) -> None:
        ...

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        ...

    async def all_entries(self) -> list[AuditEntry]:
        ...

    async def last(self) -> Optional[AuditEntry]:
        ...

    async def purge_before(self, cutoff: datetime) -> int:
        ...


class InMemoryAuditStore:
    """进程内审计存储。available=False 时所有操作抛出 ConnectionError。"""

    def __init__(self) -> None:
        self._entries: dict[str, AuditEntry] = {}
        self.available = True
        self.delay: float = 0.0
        self.append_calls = 0

    def _check(self) -> None:
        if not self.available:
            raise ConnectionError("audit store unavailable")

    async def append(self, entry: AuditEntry) -> None:
        self.append_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check()
        if entry.id in self._entries:
            return
        if any(e.sequence == entry.sequence for e in self._entries.values()):
            raise AuditSequenceConflictError(f"Audit sequence {entry.sequence} already taken", entry.id)
        self._entries[entry.id] = entry

    def _ordered(self) -> list[AuditEntry]:
        return sorted(self._entries.values(), key=lambda e: e.sequence)

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        self._check()
        matched = [e for e in self._ordered() if query.matches(e)]
        return matched[query.offset:query.offset + query.limit]

    async def all_entries(self) -> list[AuditEntry]:
        self._check()
        return self._ordered()

    async def last(self) -> Optional[AuditEntry]:
        self._check()
        ordered = self._ordered()
        return ordered[-1] if ordered else None

    async def purge_before(self, cutoff: datetime) -> int:
        self._check()
        expired = [k for k, e in self._entries.items() if e.timestamp < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)


def _to_record(entry: AuditEntry) -> AuditEntryRecord:
    return AuditEntryRecord(
        id=entry.id,
        sequence=entry.sequence,
        correlation_id=entry.correlation_id,
        issue_id=entry.issue_id,
        parent_id=entry.parent_id,
        stage=entry.stage.value,
        outcome=entry.outcome.value,
        severity=entry.severity.value,
        category=entry.category.value,
        strategy=entry.strategy,
        action_id=entry.action_id,
        issue_json=entry.issue,
        action_json=entry.action,
        decision_json=entry.decision,
        before_digest=entry.before_digest,
        after_digest=entry.after_digest,
        actor=entry.actor,
        detail=entry.detail,
        timestamp=entry.timestamp,
        prev_hash=entry.prev_hash,
        entry_hash=entry.entry_hash,
    )


def _to_entry(record: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        sequence=record.sequence,
        correlation_id=record.correlation_id,
        issue_id=record.issue_id,
        parent_id=record.parent_id,
        stage=PipelineStage(record.stage),
        outcome=AuditOutcome(record.outcome),
        severity=Severity(record.severity),
        category=IssueCategory(record.category),
        strategy=record.strategy,
        action_id=record.action_id,
        issue=record.issue_json or {},
        action=record.action_json,
        decision=record.decision_json,
        before_digest=record.before_digest,
        after_digest=record.after_digest,
        actor=record.actor,
        detail=record.detail or "",
        timestamp=as_utc(record.timestamp),
        prev_hash=record.prev_hash,
        entry_hash=record.entry_hash,
    )


_SEVERITY_ORDER = [s for s in Severity]


class SqlAuditStore:
    """基于 SQLAlchemy 异步会话的审计存储。每次写入独立事务并立即提交。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(self, entry: AuditEntry) -> None:
        async with self._session_factory() as session:
            if await session.get(AuditEntryRecord, entry.id) is not None:
                return
            session.add(_to_record(entry))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AuditSequenceConflictError(f"Audit sequence {entry.sequence} already taken", entry.id) from e

    async def query(self, query: AuditQuery) -> list[AuditEntry]:
        stmt = select(AuditEntryRecord)
        if query.start:
            stmt = stmt.where(AuditEntryRecord.timestamp >= as_utc(query.start))
        if query.end:
            stmt = stmt.where(AuditEntryRecord.timestamp <= as_utc(query.end))
        if query.severity:
            stmt = stmt.where(AuditEntryRecord.severity == query.severity.value)
        if query.min_severity:
            allowed = [s.value for s in _SEVERITY_ORDER if s.at_least(query.min_severity)]
            stmt = stmt.where(AuditEntryRecord.severity.in_(allowed))
        if query.outcome:
            stmt = stmt.where(AuditEntryRecord.outcome == query.outcome.value)
        if query.stage:
            stmt = stmt.where(AuditEntryRecord.stage == query.stage.value)
        if query.correlation_id:
            stmt = stmt.where(AuditEntryRecord.correlation_id == query.correlation_id)
        if query.issue_id:
            stmt = stmt.where(AuditEntryRecord.issue_id == query.issue_id)
        stmt = stmt.order_by(AuditEntryRecord.sequence).offset(query.offset).limit(query.limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_entry(r) for r in result.scalars().all()]

    async def all_entries(self) -> list[AuditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(select(AuditEntryRecord).order_by(AuditEntryRecord.sequence))
            return [_to_entry(r) for r in result.scalars().all()]

    async def last(self) -> Optional[AuditEntry]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AuditEntryRecord).order_by(AuditEntryRecord.sequence.desc()).limit(1)
            )
            record = result.scalar_one_or_none()
            return _to_entry(record) if record else None

    async def purge_before(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AuditEntryRecord).where(AuditEntryRecord.timestamp < as_utc(cutoff))
            )
            await session.commit()
            return result.rowcount or 0
