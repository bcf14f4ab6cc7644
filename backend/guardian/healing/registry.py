"""
策略注册表：策略名 → 策略实现的不可变映射。

启动时构造一次，显式传给 AgentBrain；测试可以构造只含替身策略的注册表。
"""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Optional

from guardian.core.exceptions import NotFoundError
from guardian.core.logging import get_logger
from guardian.healing.models import HealingAction
from guardian.healing.strategies import ALL_STRATEGIES, HealingStrategy

logger = get_logger(__name__)


class StrategyRegistry(Mapping[str, HealingStrategy]):
    """构造后不可修改的策略注册表。"""

    def __init__(self, strategies: Iterable[HealingStrategy]) -> None:
        table: dict[str, HealingStrategy] = {}
        for strategy in strategies:
            if not strategy.name:
                raise ValueError(f"{type(strategy).__name__} has no name")
            if strategy.name in table:
                raise ValueError(f"Duplicate strategy name: {strategy.name}")
            table[strategy.name] = strategy
            logger.debug("Registered healing strategy: %s", strategy.name)
        self._table: Mapping[str, HealingStrategy] = MappingProxyType(table)

    def __getitem__(self, name: str) -> HealingStrategy:
        return self._table[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._table)

    def __len__(self) -> int:
        return len(self._table)

    def find(self, name: str) -> Optional[HealingStrategy]:
        return self._table.get(name)

    def for_action(self, action: HealingAction) -> HealingStrategy:
        """按动作的策略名分派，并确认载荷类型与策略匹配。"""
        strategy = self._table.get(action.strategy)
        if strategy is None:
            raise NotFoundError(f"No strategy registered as '{action.strategy}'")
        strategy.payload_of(action)
        return strategy


def build_default_registry() -> StrategyRegistry:
    return StrategyRegistry(cls() for cls in ALL_STRATEGIES)
