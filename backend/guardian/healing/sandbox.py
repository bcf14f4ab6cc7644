"""
沙箱执行器：在目标的隔离副本上试运行修复动作。

流程：深拷贝目标 → apply() → 对自身输出再 apply() 一次（幂等检查）→ 策略断言 → diff。
在工作线程里执行并受截止时间约束。从不抛出异常，失败一律体现在 TestResult 里。
"""
from __future__ import annotations

import asyncio
import copy
import difflib
import json
import time
from typing import Optional

from guardian.core.config import settings
from guardian.core.exceptions import GuardianError
from guardian.core.logging import get_logger
from guardian.healing.models import ApplyResult, HealingAction, TargetSnapshot, TestResult
from guardian.healing.registry import StrategyRegistry
from guardian.healing.strategies import HealingStrategy

logger = get_logger(__name__)


def render_diff(before: TargetSnapshot, after: TargetSnapshot) -> str:
    """内容与状态的统一 diff。"""
    chunks = []
    if before.content != after.content:
        chunks.extend(difflib.unified_diff(
            before.content.splitlines(keepends=True),
            after.content.splitlines(keepends=True),
            fromfile=f"a/{before.resource}",
            tofile=f"b/{after.resource}",
        ))
    if before.state != after.state:
        chunks.extend(difflib.unified_diff(
            json.dumps(before.state, indent=2, sort_keys=True, default=str).splitlines(keepends=True),
            json.dumps(after.state, indent=2, sort_keys=True, default=str).splitlines(keepends=True),
            fromfile=f"a/{before.resource}#state",
            tofile=f"b/{after.resource}#state",
        ))
    return "".join(line if line.endswith("\n") else line + "\n" for line in chunks)


class SandboxExecutor:
    """只在副本上运行策略，实时目标永远不会被触碰。"""

    def __init__(self, registry: StrategyRegistry, timeout: Optional[float] = None) -> None:
        self.registry = registry
        self.timeout = timeout if timeout is not None else settings.sandbox_timeout
        self.runs = 0

    @staticmethod
    def _run(strategy: HealingStrategy, action: HealingAction, isolated: TargetSnapshot) -> tuple[ApplyResult, ApplyResult]:
        first = strategy.apply(action, isolated)
        second = strategy.apply(action, first.target)
        return first, second

    async def test(self, action: HealingAction, target: TargetSnapshot) -> TestResult:
        self.runs += 1
        start = time.monotonic()
        isolated = copy.deepcopy(target)
        before_digest = target.digest()

        def failed(*errors: str) -> TestResult:
            elapsed = int((time.monotonic() - start) * 1000)
            logger.warning("Sandbox run of %s failed: %s", action.strategy, "; ".join(errors))
            return TestResult(
                passed=False,
                errors=list(errors),
                before_digest=before_digest,
                duration_ms=elapsed,
            )

        try:
            strategy = self.registry.for_action(action)
        except GuardianError as e:
            return failed(e.message)

        try:
            first, second = await asyncio.wait_for(
                asyncio.to_thread(self._run, strategy, action, isolated),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return failed(f"sandbox timed out after {self.timeout}s")
        except Exception as e:
            return failed(f"apply raised {type(e).__name__}: {e}")

        errors: list[str] = []
        idempotent = second.target.same_as(first.target)
        if not idempotent:
            errors.append("second apply changed the result; action is not idempotent")
        try:
            errors.extend(strategy.verify(action, first.target))
        except Exception as e:
            errors.append(f"verify raised {type(e).__name__}: {e}")

        elapsed = int((time.monotonic() - start) * 1000)
        result = TestResult(
            passed=not errors,
            diff=render_diff(target, first.target),
            errors=errors,
            idempotent=idempotent,
            before_digest=before_digest,
            after_digest=first.target.digest(),
            duration_ms=elapsed,
        )
        if result.passed:
            logger.info("Sandbox passed for %s on %s (%dms)", action.strategy, target.resource, elapsed)
        else:
            logger.warning("Sandbox rejected %s on %s: %s", action.strategy, target.resource, "; ".join(errors))
        return result
