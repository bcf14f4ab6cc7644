"""滑动窗口限流器单元测试。"""
import threading

from guardian.core.config import RateLimitPolicy
from guardian.healing.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    def test_allows_up_to_limit(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=3, window_seconds=60), clock=FakeClock())
        assert [rl.acquire("sanitize_unsafe_input") for _ in range(4)] == [True, True, True, False]

    def test_keys_are_independent(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=1, window_seconds=60), clock=FakeClock())
        assert rl.acquire("sanitize_unsafe_input") is True
        assert rl.acquire("parameterize_query") is True
        assert rl.acquire("sanitize_unsafe_input") is False

    def test_window_slides(self):
        clock = FakeClock()
        rl = RateLimiter(RateLimitPolicy(max_actions=2, window_seconds=60), clock=clock)
        rl.acquire("k")
        clock.advance(30)
        rl.acquire("k")
        assert rl.acquire("k") is False
        clock.advance(30)
        # 第一个时间戳刚好滑出窗口
        assert rl.acquire("k") is True
        assert rl.acquire("k") is False

    def test_allow_does_not_consume(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=1, window_seconds=60), clock=FakeClock())
        assert rl.allow("k") is True
        assert rl.allow("k") is True
        rl.record("k")
        assert rl.allow("k") is False

    def test_strategy_override(self):
        rl = RateLimiter(
            RateLimitPolicy(max_actions=5, window_seconds=60),
            {"redact_sensitive_log_field": RateLimitPolicy(max_actions=1, window_seconds=60)},
            clock=FakeClock(),
        )
        assert rl.acquire("redact_sensitive_log_field") is True
        assert rl.acquire("redact_sensitive_log_field") is False
        assert rl.policy_for("parameterize_query").max_actions == 5

    def test_snapshot_retry_after(self):
        clock = FakeClock()
        rl = RateLimiter(RateLimitPolicy(max_actions=1, window_seconds=60), clock=clock)
        rl.acquire("k")
        clock.advance(15)
        snap = rl.snapshot("k")
        assert snap.count == 1
        assert snap.limit == 1
        assert snap.retry_after == 45.0

    def test_update_policy_keeps_history(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=2, window_seconds=60), clock=FakeClock())
        rl.acquire("k")
        rl.update_policy(RateLimitPolicy(max_actions=1, window_seconds=60))
        assert rl.acquire("k") is False

    def test_reset(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=1, window_seconds=60), clock=FakeClock())
        rl.acquire("k")
        rl.reset("k")
        assert rl.acquire("k") is True

    def test_concurrent_acquire_never_exceeds_limit(self):
        rl = RateLimiter(RateLimitPolicy(max_actions=5, window_seconds=60))
        granted = []
        lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            ok = rl.acquire("release_leaked_handle")
            with lock:
                granted.append(ok)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert granted.count(True) == 5
        assert granted.count(False) == 15
