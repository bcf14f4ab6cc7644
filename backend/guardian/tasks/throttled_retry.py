"""
限流重试任务

定期重新处理被限流或熔断挡下的 Issue，超过 TTL 的条目由队列丢弃并记录日志。
"""
import asyncio
from typing import Optional

from guardian.core.config import settings
from guardian.core.logging import get_logger
from guardian.healing.agent import AgentBrain
from guardian.healing.models import AuditOutcome

logger = get_logger(__name__)


async def throttled_retry_loop(agent: AgentBrain, interval: Optional[int] = None) -> None:
    interval = interval or settings.throttled_retry_interval
    logger.info("Throttled retry loop started (interval=%ds)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            results = await agent.retry_throttled()
            if results:
                still = sum(1 for r in results if r.outcome == AuditOutcome.THROTTLED)
                logger.info("Retried %d throttled issues, %d still throttled", len(results), still)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Throttled retry error: %s", e)
