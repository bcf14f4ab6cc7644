"""
修复策略库 (Healing Strategy Library)

每个策略都是幂等的，并声明自己的回滚方案。
注册表见 guardian.healing.registry.build_default_registry()。
"""
from guardian.healing.strategies.base import HealingStrategy
from guardian.healing.strategies.breaker_wrapper import InstallCircuitBreakerWrapper
from guardian.healing.strategies.parameterize_query import ParameterizeQuery
from guardian.healing.strategies.redact_log_field import RedactSensitiveLogField
from guardian.healing.strategies.release_handle import ReleaseLeakedHandle
from guardian.healing.strategies.sanitize_input import SanitizeUnsafeInput

ALL_STRATEGIES: list[type[HealingStrategy]] = [
    SanitizeUnsafeInput,
    ParameterizeQuery,
    RedactSensitiveLogField,
    ReleaseLeakedHandle,
    InstallCircuitBreakerWrapper,
]

__all__ = [
    "ALL_STRATEGIES",
    "HealingStrategy",
    "InstallCircuitBreakerWrapper",
    "ParameterizeQuery",
    "RedactSensitiveLogField",
    "ReleaseLeakedHandle",
    "SanitizeUnsafeInput",
]
