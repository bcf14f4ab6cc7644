"""
install_circuit_breaker_wrapper：为持续失败的外部依赖开启熔断包装。

目标状态格式：
    {"circuit_breakers": {"<dependency>": {"enabled": true, "failure_threshold": 3, "cooldown_seconds": 60}}}
"""
from __future__ import annotations

from typing import Optional

from guardian.healing.models import ConfigToggle, HealingAction, Issue, RollbackPlan, TargetSnapshot
from guardian.healing.strategies.base import HealingStrategy

DEFAULT_WRAPPER_SETTINGS = {"failure_threshold": 3, "cooldown_seconds": 60}


class InstallCircuitBreakerWrapper(HealingStrategy):
    name = "install_circuit_breaker_wrapper"
    payload_kind = "config_toggle"
    rollback_plan = RollbackPlan(
        invertible=True,
        description="restore the previous wrapper configuration of the dependency",
        steps=["set circuit_breakers[<dependency>] back to its recorded previous value"],
    )

    def build_payload(self, issue: Issue, target: TargetSnapshot) -> ConfigToggle:
        ctx = issue.context
        key = ctx.endpoint or ctx.component or self.target_resource(issue)
        current = target.state.get("circuit_breakers", {}).get(key)
        return ConfigToggle(
            resource=target.resource,
            key=key,
            enabled=True,
            previous=dict(current) if current is not None else None,
            settings=dict(DEFAULT_WRAPPER_SETTINGS),
        )

    def describe(self, issue: Issue, payload: ConfigToggle) -> str:
        return f"Wrap calls to {payload.key} in a circuit breaker"

    def _apply(self, payload: ConfigToggle, target: TargetSnapshot) -> list[str]:
        breakers = target.state.setdefault("circuit_breakers", {})
        desired = {**payload.settings, "enabled": payload.enabled}
        if breakers.get(payload.key) == desired:
            return []
        breakers[payload.key] = desired
        return [f"circuit breaker for {payload.key} enabled={payload.enabled}"]

    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        payload = self.payload_of(action)
        entry = target.state.get("circuit_breakers", {}).get(payload.key)
        if not entry or entry.get("enabled") is not payload.enabled:
            return [f"circuit breaker for {payload.key} is not enabled"]
        return []

    def rollback(
        self,
        action: HealingAction,
        before: TargetSnapshot,
        after: TargetSnapshot,
    ) -> Optional[TargetSnapshot]:
        payload = self.payload_of(action)
        restored = after.model_copy(deep=True)
        breakers = restored.state.setdefault("circuit_breakers", {})
        if payload.previous is None:
            breakers.pop(payload.key, None)
        else:
            breakers[payload.key] = dict(payload.previous)
        return restored
