"""
熔断状态持久化任务

定期保存所有熔断器状态，重启后由 lifespan 调用 load_circuit_states() 恢复。
"""
import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardian.core.logging import get_logger
from guardian.healing.circuit_breaker import CircuitBreakerRegistry
from guardian.services.circuit_store import save_circuit_states

logger = get_logger(__name__)


async def circuit_persistence_loop(
    session_factory: async_sessionmaker[AsyncSession],
    registry: CircuitBreakerRegistry,
    interval: int = 60,
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            saved = await save_circuit_states(session_factory, registry)
            logger.debug("Persisted %d circuit breaker states", saved)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Circuit state persistence error: %s", e)
