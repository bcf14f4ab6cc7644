"""
熔断状态持久化 (Circuit State Persistence)

启动时恢复、定期和关闭时保存，重启后打开的熔断器仍保持打开直到冷却结束。
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardian.core.logging import get_logger
from guardian.healing.circuit_breaker import CircuitBreakerRegistry, CircuitSnapshot, CircuitState
from guardian.models.circuit_state import CircuitStateRecord

logger = get_logger(__name__)


async def save_circuit_states(
    session_factory: async_sessionmaker[AsyncSession],
    registry: CircuitBreakerRegistry,
) -> int:
    snapshots = registry.snapshot()
    if not snapshots:
        return 0
    async with session_factory() as session:
        for snap in snapshots:
            record = await session.get(CircuitStateRecord, snap.name)
            if record is None:
                record = CircuitStateRecord(name=snap.name)
                session.add(record)
            record.state = snap.state.value
            record.consecutive_failures = snap.consecutive_failures
            record.last_transition_at = snap.last_transition_at
            record.next_retry_at = snap.next_retry_at
            record.open_count = snap.open_count
            record.cooldown_seconds = snap.cooldown_seconds
        await session.commit()
    return len(snapshots)


async def load_circuit_states(
    session_factory: async_sessionmaker[AsyncSession],
    registry: CircuitBreakerRegistry,
) -> int:
    async with session_factory() as session:
        result = await session.execute(select(CircuitStateRecord))
        records = result.scalars().all()
    restored = registry.restore(
        CircuitSnapshot(
            name=r.name,
            state=CircuitState(r.state),
            consecutive_failures=r.consecutive_failures,
            last_transition_at=r.last_transition_at,
            next_retry_at=r.next_retry_at,
            open_count=r.open_count,
            cooldown_seconds=r.cooldown_seconds,
        )
        for r in records
    )
    if restored:
        logger.info("Restored %d circuit breaker states", restored)
    return restored
