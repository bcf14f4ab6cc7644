"""
审计缓冲回写任务

审计存储恢复后按原始顺序回写缓冲条目。record() 在下一次写入时也会先回写，
这个循环保证没有新事件时积压也能及时落盘。
"""
import asyncio
from typing import Optional

from guardian.core.config import settings
from guardian.core.logging import get_logger
from guardian.services.audit import AuditLogger

logger = get_logger(__name__)


async def audit_flush_loop(audit: AuditLogger, interval: Optional[int] = None) -> None:
    interval = interval or settings.audit_flush_interval
    logger.info("Audit flush loop started (interval=%ds)", interval)
    while True:
        try:
            if audit.buffered:
                flushed = await audit.flush()
                if audit.buffered:
                    logger.warning("Audit store still degraded, %d entries buffered", audit.buffered)
                elif flushed:
                    logger.info("Audit buffer drained (%d entries)", flushed)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Audit flush error: %s", e)
        await asyncio.sleep(interval)
