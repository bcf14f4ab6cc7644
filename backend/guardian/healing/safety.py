"""
安全校验：禁令列表、审批要求、影响范围检查。

最后一道防线。每个修复策略执行前都必须通过这里。
内置禁令列表硬编码，配置只能追加条目，不能删除内置条目。
纯函数，不做任何 I/O。
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

from guardian.core.config import GuardianPolicy
from guardian.healing.models import Issue, RateLimitSnapshot, SafetyDecision, Severity

# === 内置禁令列表 ===
HARD_DENYLIST: frozenset[str] = frozenset({
    # 数据销毁
    "delete_data",
    "drop_table",
    "truncate_table",
    "purge_records",
    # 认证凭据
    "modify_auth_credentials",
    "reset_user_password",
    "rotate_encryption_keys",
    # 权限与审计
    "grant_admin_role",
    "disable_audit_logging",
    "disable_rls_policy",
})


def normalize_strategy_name(name: str) -> str:
    """'Delete Data' / 'delete-data' / 'DELETE_DATA' 统一为 delete_data。"""
    return re.sub(r"[\s\-]+", "_", name.strip()).lower()


class SafetyValidator:
    """
    按顺序评估规则，第一条命中的规则决定结果：
    1. 禁令列表 → 拒绝，不可覆盖
    2. 策略未注册 → 拒绝
    3. 严重度 critical → 需要人工审批
    4. 受影响资源数 > fanout_threshold → 需要人工审批
    5. 其他 → 允许
    """

    def __init__(self, policy: GuardianPolicy, registered: Iterable[str] = ()) -> None:
        self._denylist = HARD_DENYLIST | {normalize_strategy_name(s) for s in policy.denylist}
        self._fanout_threshold = policy.fanout_threshold
        self._registered = frozenset(registered)

    @property
    def denylist(self) -> frozenset[str]:
        return self._denylist

    def is_denied(self, strategy: str) -> bool:
        return normalize_strategy_name(strategy) in self._denylist

    def validate(
        self,
        issue: Issue,
        strategy: str,
        rate_limit: Optional[RateLimitSnapshot] = None,
    ) -> SafetyDecision:
        if self.is_denied(strategy):
            return SafetyDecision(
                allowed=False,
                reason=f"Strategy '{strategy}' is on the hard denylist",
                rule="denylist",
                rate_limit=rate_limit,
            )

        # 没有实现的策略无从审批，也无从执行
        if strategy not in self._registered:
            return SafetyDecision(
                allowed=False,
                reason=f"Strategy '{strategy}' has no registered implementation",
                rule="unregistered",
                rate_limit=rate_limit,
            )

        if issue.severity == Severity.CRITICAL:
            return SafetyDecision(
                allowed=True,
                requires_approval=True,
                reason="Critical severity is never healed autonomously",
                rule="critical_severity",
                rate_limit=rate_limit,
            )

        fanout = len(issue.affected_resources)
        if fanout > self._fanout_threshold:
            return SafetyDecision(
                allowed=True,
                requires_approval=True,
                reason=f"Blast radius {fanout} exceeds fan-out threshold {self._fanout_threshold}",
                rule="fanout",
                rate_limit=rate_limit,
            )

        return SafetyDecision(allowed=True, reason="OK", rule="allow", rate_limit=rate_limit)
