"""
release_leaked_handle：释放某个组件泄漏的监听器、定时器、订阅或连接。

目标状态格式：
    {"handles": [{"id": "h1", "kind": "listener", "owner": "PatientDashboard", "open": true}, ...]}
"""
from __future__ import annotations

from typing import Any, Optional

from guardian.healing.models import HealingAction, Issue, ResourceRelease, RollbackPlan, TargetSnapshot
from guardian.healing.strategies.base import HealingStrategy

HANDLE_KINDS = ("listener", "timer", "subscription", "connection")


def _leaked(handles: list[dict[str, Any]], payload: ResourceRelease) -> list[dict[str, Any]]:
    return [
        h for h in handles
        if h.get("open")
        and h.get("owner") == payload.owner
        and (not payload.handle_kinds or h.get("kind") in payload.handle_kinds)
    ]


class ReleaseLeakedHandle(HealingStrategy):
    name = "release_leaked_handle"
    payload_kind = "resource_release"
    rollback_plan = RollbackPlan(
        invertible=True,
        description="re-open the handles released by this action",
        steps=["mark released handle ids open again"],
    )

    def build_payload(self, issue: Issue, target: TargetSnapshot) -> ResourceRelease:
        owner = issue.context.component or self.target_resource(issue)
        payload = ResourceRelease(resource=target.resource, owner=owner, handle_kinds=list(HANDLE_KINDS))
        payload.handle_ids = [str(h.get("id")) for h in _leaked(target.state.get("handles", []), payload)]
        return payload

    def describe(self, issue: Issue, payload: ResourceRelease) -> str:
        return f"Release {len(payload.handle_ids)} leaked handle(s) owned by {payload.owner}"

    def _apply(self, payload: ResourceRelease, target: TargetSnapshot) -> list[str]:
        released = []
        for handle in _leaked(target.state.get("handles", []), payload):
            handle["open"] = False
            released.append(str(handle.get("id")))
        return [f"released {', '.join(released)}"] if released else []

    def verify(self, action: HealingAction, target: TargetSnapshot) -> list[str]:
        payload = self.payload_of(action)
        return [
            f"handle {h.get('id')} ({h.get('kind')}) owned by {payload.owner} is still open"
            for h in _leaked(target.state.get("handles", []), payload)
        ]

    def rollback(
        self,
        action: HealingAction,
        before: TargetSnapshot,
        after: TargetSnapshot,
    ) -> Optional[TargetSnapshot]:
        ids = set(self.payload_of(action).handle_ids)
        restored = after.model_copy(deep=True)
        for handle in restored.state.get("handles", []):
            if str(handle.get("id")) in ids:
                handle["open"] = True
        return restored
