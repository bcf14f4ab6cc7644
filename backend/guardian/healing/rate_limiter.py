"""
滑动窗口限流器，按策略名（或通知渠道名）维度限流，防止修复风暴。

allow() 只做检查，record() 提交一次通过；acquire() 在同一把按 key 的锁内
完成检查与提交，并发调用者不会同时看到"还剩一个名额"。
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict, deque
from typing import Callable, Optional

from guardian.core.config import RateLimitPolicy
from guardian.healing.models import RateLimitSnapshot


class RateLimiter:
    """每个 key 一个时间戳队列，窗口外的时间戳在访问时清理。"""

    def __init__(
        self,
        default: Optional[RateLimitPolicy] = None,
        overrides: Optional[dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default = default or RateLimitPolicy()
        self._overrides = dict(overrides or {})
        self._clock = clock
        self._history: dict[str, deque[float]] = defaultdict(deque)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def policy_for(self, key: str) -> RateLimitPolicy:
        return self._overrides.get(key, self._default)

    def update_policy(
        self,
        default: RateLimitPolicy,
        overrides: Optional[dict[str, RateLimitPolicy]] = None,
    ) -> None:
        """替换阈值，已记录的时间戳保留，新窗口大小在下一次检查时生效。"""
        self._default = default
        self._overrides = dict(overrides or {})

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _prune(self, key: str, now: float) -> deque[float]:
        window = self.policy_for(key).window_seconds
        history = self._history[key]
        while history and now - history[0] >= window:
            history.popleft()
        return history

    def allow(self, key: str) -> bool:
        with self._lock(key):
            history = self._prune(key, self._clock())
            return len(history) < self.policy_for(key).max_actions

    def record(self, key: str) -> None:
        with self._lock(key):
            now = self._clock()
            self._prune(key, now).append(now)

    def acquire(self, key: str) -> bool:
        """原子地检查并占用一个名额。"""
        with self._lock(key):
            now = self._clock()
            history = self._prune(key, now)
            if len(history) >= self.policy_for(key).max_actions:
                return False
            history.append(now)
            return True

    def snapshot(self, key: str) -> RateLimitSnapshot:
        with self._lock(key):
            now = self._clock()
            history = self._prune(key, now)
            policy = self.policy_for(key)
            retry_after = 0.0
            if len(history) >= policy.max_actions:
                retry_after = max(0.0, policy.window_seconds - (now - history[0]))
            return RateLimitSnapshot(
                key=key,
                count=len(history),
                limit=policy.max_actions,
                window_seconds=policy.window_seconds,
                retry_after=round(retry_after, 3),
            )

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._history.clear()
            return
        with self._lock(key):
            self._history.pop(key, None)
