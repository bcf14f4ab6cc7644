"""
限流 / 熔断打开时被挡下的 Issue 的重试队列。

按 correlation_id 去重。过期时间从第一次被挡下时开始计算，重试再次被挡不会续期；
超过 TTL 的条目直接丢弃（它们的 throttled 审计记录保留）。
"""
from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable

from guardian.core.logging import get_logger
from guardian.healing.models import Issue

logger = get_logger(__name__)


@dataclass
class ThrottledItem:
    issue: Issue
    enqueued_at: float
    expires_at: float
    attempts: int = 1


class ThrottledQueue:
    def __init__(
        self,
        ttl_seconds: float = 600.0,
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._items: "OrderedDict[str, ThrottledItem]" = OrderedDict()
        # correlation_id -> (首次被挡时间, 尝试次数)，跨 take() 保留
        self._history: dict[str, tuple[float, int]] = {}

    def __len__(self) -> int:
        return len(self._items)

    def push(self, issue: Issue) -> ThrottledItem:
        now = self._clock()
        first_seen, attempts = self._history.get(issue.correlation_id, (now, 0))
        self._history[issue.correlation_id] = (first_seen, attempts + 1)
        self._items.pop(issue.correlation_id, None)
        item = ThrottledItem(issue, first_seen, first_seen + self.ttl_seconds, attempts + 1)
        self._items[issue.correlation_id] = item
        while len(self._items) > self.max_size:
            key, dropped = self._items.popitem(last=False)
            self._history.pop(key, None)
            logger.warning("Throttled queue full, dropping issue %s", dropped.issue.id)
        return item

    def take(self) -> tuple[list[ThrottledItem], list[ThrottledItem]]:
        """取出全部条目，返回 (仍有效, 已过期)。"""
        now = self._clock()
        due, expired = [], []
        for key, item in self._items.items():
            if now >= item.expires_at:
                expired.append(item)
                self._history.pop(key, None)
            else:
                due.append(item)
        self._items.clear()
        return due, expired

    def forget(self, correlation_id: str) -> None:
        """重试后不再被挡，清除去重记录。"""
        self._history.pop(correlation_id, None)
