"""
修复策略基类。

每个策略声明自己的载荷类型、回滚方案和正确性断言：
- propose(issue, target) → HealingAction
- apply(action, target) → ApplyResult，不修改传入的快照，幂等
- verify(action, target) → 未通过断言的描述列表，空列表表示通过
- rollback(action, before, after) → 逆操作后的快照；不可逆策略返回 None
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from guardian.core.exceptions import StrategyExecutionError
from guardian.healing.models import (
    ApplyResult,
    HealingAction,
    Issue,
    RollbackPlan,
    TargetSnapshot,
)


class HealingStrategy(ABC):
    name: str = ""
    payload_kind: str = ""
    rollback_plan: RollbackPlan

    def target_resource(self, issue: Issue) -> str:
        return issue.primary_resource or f"issue:{issue.id}"

    @abstractmethod
    def build_payload(self, issue: Issue, target: TargetSnapshot) -> Any:
        ...

    def describe(self, issue: Issue, payload: Any) -> str:
        return f"{self.name} on {payload.resource}"

    def propose(self, issue: Issue, target: Optional[TargetSnapshot] = None) -> HealingAction:
        target = target or TargetSnapshot(resource=self.target_resource(issue))
        payload = self.build_payload(issue, target)
        return HealingAction(
            issue_id=issue.id,
            strategy=self.name,
            description=self.describe(issue, payload),
            payload=payload,
            rollback=self.rollback_plan,
        )

    def payload_of(self, action: HealingAction) -> Any:
        if action.strategy != self.name or action.payload.kind != self.payload_kind:
            raise StrategyExecutionError(
                f"{self.name} cannot apply a '{action.payload.kind}' payload of strategy '{action.strategy}'"
            )
        return action.payload

    def apply(self, action: HealingAction, target: TargetSnapshot) -> ApplyResult:
        payload = self.payload_of(action)
        working = target.model_copy(deep=True)
        notes = self._apply(payload, working)
        changed = not working.same_as(target)
        if changed:
            working.version = target.version + 1
        return ApplyResult(target=working, changed=changed, notes=notes)

    @abstractmethod
    def _apply(self, payload: Any, target: TargetSnapshot) -> list[str]:
        """就地修改 target（调用方已深拷贝），返回说明。"""

    @abstractmethod
    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        ...

    def rollback(
        self,
        action: HealingAction,
        before: TargetSnapshot,
        after: TargetSnapshot,
    ) -> Optional[TargetSnapshot]:
        if not self.rollback_plan.invertible:
            return None
        return before.model_copy(deep=True)
