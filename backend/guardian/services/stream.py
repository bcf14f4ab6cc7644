"""
审计流广播器 (Audit Stream Broadcaster)

AuditLogger 在条目持久化成功之后才发布，订阅方（实时监控）只会看到已提交的审计事件。
基于内存队列的发布-订阅，与 AgentBrain 的控制流解耦。
"""
import asyncio
from typing import List

from guardian.core.logging import get_logger
from guardian.healing.models import AuditEntry

logger = get_logger(__name__)


class AuditStream:
    """
    每个订阅者一个有界队列。

    队列满时最多等待 put_timeout 秒让订阅者消费；仍然满则丢弃该事件，
    计入 dropped 并通过 stats() 暴露到 Agent 状态接口。
    发布发生在审计锁内，等待时间必须保持很短。
    """

    def __init__(self, maxsize: int = 1000, put_timeout: float = 0.1):
        self._maxsize = maxsize
        self.put_timeout = put_timeout
        self._subscribers: List[asyncio.Queue] = []
        self.published = 0
        self.dropped = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def publish(self, entry: AuditEntry):
        self.published += 1
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(entry)
                continue
            except asyncio.QueueFull:
                pass
            try:
                await asyncio.wait_for(queue.put(entry), timeout=self.put_timeout)
            except asyncio.TimeoutError:
                self.dropped += 1
                logger.error(
                    "Audit stream subscriber queue full, dropped entry seq=%d (%d dropped so far)",
                    entry.sequence, self.dropped,
                )

    def stats(self) -> dict:
        return {
            "subscribers": len(self._subscribers),
            "published": self.published,
            "dropped": self.dropped,
        }
