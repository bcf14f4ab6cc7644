"""
审计保留期清理任务

按策略中的 retention_days（默认六年）删除过期审计条目。
保留期之后的第一条记录成为哈希链的新起点，verify_chain() 不会把清理当作篡改。
"""
import asyncio
from typing import Optional

from guardian.core.config import settings
from guardian.core.logging import get_logger
from guardian.healing.agent import AgentBrain

logger = get_logger(__name__)


async def audit_retention_loop(agent: AgentBrain, interval: Optional[int] = None) -> None:
    interval = interval or settings.retention_interval
    logger.info("Audit retention loop started (interval=%ds)", interval)
    while True:
        try:
            retention_days = agent.policy.retention_days
            removed = await agent.audit.purge_expired(retention_days)
            if not removed:
                logger.debug("Audit retention: nothing older than %d days", retention_days)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Audit retention error: %s", e)
        await asyncio.sleep(interval)
