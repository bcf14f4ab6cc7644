"""
修复目标存储：读取实时目标的快照、提交修复后的新状态。

宿主应用实现 TargetStore（源码仓库、配置中心、运行时状态），
这里提供进程内实现，供默认部署和测试使用。
"""
from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from guardian.healing.models import TargetSnapshot


class TargetStore(Protocol):
    async def snapshot(self, resource: str) -> TargetSnapshot:
        ...

    async def commit(self, target: TargetSnapshot) -> None:
        ...


class InMemoryTargetStore:
    """未登记的资源返回空快照。snapshot() 返回副本，外部修改不影响存储。"""

    def __init__(self, targets: Optional[dict[str, TargetSnapshot]] = None) -> None:
        self._targets: dict[str, TargetSnapshot] = dict(targets or {})
        self._lock = asyncio.Lock()
        self.commits: list[TargetSnapshot] = []

    def put(self, target: TargetSnapshot) -> None:
        self._targets[target.resource] = target.model_copy(deep=True)

    def get(self, resource: str) -> Optional[TargetSnapshot]:
        target = self._targets.get(resource)
        return target.model_copy(deep=True) if target else None

    async def snapshot(self, resource: str) -> TargetSnapshot:
        async with self._lock:
            target = self._targets.get(resource)
            if target is None:
                return TargetSnapshot(resource=resource)
            return target.model_copy(deep=True)

    async def commit(self, target: TargetSnapshot) -> None:
        async with self._lock:
            self._targets[target.resource] = target.model_copy(deep=True)
            self.commits.append(target.model_copy(deep=True))
