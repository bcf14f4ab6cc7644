"""
熔断器 (Circuit Breaker)

按外部依赖（通知渠道、实时修复目标）各一个实例，状态只按
closed → open → half_open → {closed | open} 迁移：

- closed（初始）：调用直接通过；连续失败达到阈值 → open
- open：调用快速失败，不触达依赖；冷却期结束 → half_open
- half_open：只放行一次试探调用；成功 → closed（计数清零），失败 → open（冷却期按倍数退避，有上限）

超过截止时间按失败计。

Per-dependency breaker. Open fails fast without invoking the dependency;
half-open admits exactly one trial call whose outcome alone decides the next
state. A deadline overrun counts as a failure.
"""
from __future__ import annotations

import asyncio
import enum
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from pydantic import BaseModel

from guardian.core.config import BreakerPolicy
from guardian.core.exceptions import CircuitOpenError, IllegalTransitionError
from guardian.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_LEGAL_TRANSITIONS = {
    CircuitState.CLOSED: {CircuitState.OPEN},
    CircuitState.OPEN: {CircuitState.HALF_OPEN},
    CircuitState.HALF_OPEN: {CircuitState.CLOSED, CircuitState.OPEN},
}


class CircuitSnapshot(BaseModel):
    """可持久化的熔断状态。时间戳为 epoch 秒。"""
    name: str
    state: CircuitState
    consecutive_failures: int = 0
    last_transition_at: float = 0.0
    next_retry_at: float = 0.0
    open_count: int = 0
    cooldown_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["last_transition_at_iso"] = _iso(self.last_transition_at)
        data["next_retry_at_iso"] = _iso(self.next_retry_at) if self.state != CircuitState.CLOSED else None
        return data


def _iso(ts: float) -> Optional[str]:
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class CircuitBreaker:
    """单个依赖的熔断器。状态只能通过 call()/restore() 改变。"""

    def __init__(
        self,
        name: str,
        policy: Optional[BreakerPolicy] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.policy = policy or BreakerPolicy()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_transition_at = clock()
        self._next_retry_at = 0.0
        self._open_count = 0
        self._cooldown = self.policy.cooldown_seconds
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allows_call(self) -> bool:
        """只读检查：当前是否会放行一次调用（不占用试探名额）。"""
        if self._state == CircuitState.CLOSED:
            return True
        if self._state == CircuitState.OPEN:
            return self._clock() >= self._next_retry_at
        return not self._trial_in_flight

    def _transition(self, new_state: CircuitState) -> None:
        if new_state not in _LEGAL_TRANSITIONS[self._state]:
            raise IllegalTransitionError(
                f"Circuit '{self.name}': {self._state.value} -> {new_state.value} is not allowed"
            )
        logger.info("Circuit breaker '%s' state transition: %s -> %s", self.name, self._state.value, new_state.value)
        self._state = new_state
        self._last_transition_at = self._clock()

    def _open(self) -> None:
        self._transition(CircuitState.OPEN)
        self._open_count += 1
        self._next_retry_at = self._clock() + self._cooldown

    async def _admit(self) -> None:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if now < self._next_retry_at:
                    raise CircuitOpenError(self.name, self._next_retry_at - now)
                self._transition(CircuitState.HALF_OPEN)
                self._trial_in_flight = True
                return
            # HALF_OPEN：试探调用进行中，其余调用快速失败
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, self._cooldown)
            self._trial_in_flight = True

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
                self._trial_in_flight = False
                self._cooldown = self.policy.cooldown_seconds
            self._failures = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._cooldown = min(
                    self._cooldown * self.policy.backoff_multiplier,
                    self.policy.max_cooldown_seconds,
                )
                logger.warning("Circuit breaker '%s' trial call failed, reopening for %.1fs", self.name, self._cooldown)
                self._open()
            elif self._state == CircuitState.CLOSED and self._failures >= self.policy.failure_threshold:
                logger.warning(
                    "Circuit breaker '%s' failure threshold reached (%d), opening for %.1fs",
                    self.name, self._failures, self._cooldown,
                )
                self._open()

    async def _release_trial(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    async def call(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> T:
        """
        通过熔断器调用异步依赖。

        open 状态下抛出 CircuitOpenError 且不调用 fn；
        fn 抛出的异常（包括 asyncio.TimeoutError）计为失败后原样向上抛出。
        """
        await self._admit()
        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=timeout)
        except asyncio.CancelledError:
            await self._release_trial()
            raise
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    def snapshot(self) -> CircuitSnapshot:
        return CircuitSnapshot(
            name=self.name,
            state=self._state,
            consecutive_failures=self._failures,
            last_transition_at=self._last_transition_at,
            next_retry_at=self._next_retry_at,
            open_count=self._open_count,
            cooldown_seconds=self._cooldown,
        )

    def restore(self, snap: CircuitSnapshot) -> None:
        """从持久化状态恢复。进行中的试探调用不跨进程保留。"""
        self._state = snap.state
        self._failures = snap.consecutive_failures
        self._last_transition_at = snap.last_transition_at
        self._next_retry_at = snap.next_retry_at
        self._open_count = snap.open_count
        self._cooldown = snap.cooldown_seconds or self.policy.cooldown_seconds
        self._trial_in_flight = False


class CircuitBreakerRegistry:
    """按名称懒创建熔断器，进程内共享。"""

    def __init__(self, policy: Optional[BreakerPolicy] = None, clock: Callable[[], float] = time.time) -> None:
        self._policy = policy or BreakerPolicy()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = self._breakers[name] = CircuitBreaker(name, self._policy, self._clock)
        return breaker

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def update_policy(self, policy: BreakerPolicy) -> None:
        """新阈值对已有熔断器的下一次判定生效，当前状态不变。"""
        self._policy = policy
        for breaker in self._breakers.values():
            breaker.policy = policy

    def snapshot(self) -> list[CircuitSnapshot]:
        return [self._breakers[name].snapshot() for name in self.names()]

    def restore(self, snapshots: Iterable[CircuitSnapshot]) -> int:
        count = 0
        for snap in snapshots:
            self.get(snap.name).restore(snap)
            count += 1
        return count
