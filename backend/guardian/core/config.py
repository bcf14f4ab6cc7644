"""
应用配置模块 (Application Configuration Module)

两层配置：
1. Settings：进程级配置（数据库、Redis、API 令牌、超时），由 pydantic-settings 从环境变量和 .env 加载。
2. GuardianPolicy：运行策略（签名目录、禁令列表、限流、熔断、保留期），带版本号，
   只能通过 PolicyStore.swap() 整体替换，不支持单字段热修改。

Two configuration layers:
1. Settings: process level (database, Redis, API token, deadlines), loaded by
   pydantic-settings from environment variables and .env.
2. GuardianPolicy: runtime policy (signature catalog, denylist, rate limits,
   breaker thresholds, retention), versioned, swapped only as a whole through
   PolicyStore.swap().
"""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from guardian.core.exceptions import PolicyVersionError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    应用全局配置类 (Application Global Configuration Class)

    字段名自动映射同名环境变量（不区分大小写），支持 .env 文件加载。
    Field names map to same-named environment variables (case insensitive).
    """

    # 数据库配置 (Database Configuration)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "guardian"
    postgres_user: str = "guardian"
    postgres_password: str = "guardian_dev_password"

    # Redis 配置 (Redis Configuration)
    redis_host: str = "localhost"
    redis_port: int = 6379

    # Agent 配置 (Agent Configuration)
    agent_enabled: bool = True  # 是否启用自动修复 (Enable auto-healing)
    agent_listener_enabled: bool = False  # 是否订阅 Redis 事件频道 (Subscribe to Redis event channel)
    policy_file: Optional[str] = None  # 策略 YAML 路径，为空时使用内置默认值 (Policy YAML path)

    # 超时配置（秒） (Deadlines in seconds)
    audit_write_timeout: float = 2.0
    sandbox_timeout: float = 5.0
    live_apply_timeout: float = 10.0
    notify_timeout: float = 10.0

    # 审计缓冲 (Audit buffering)
    audit_buffer_size: int = 1000
    audit_fallback_path: str = "guardian-audit-fallback.jsonl"
    audit_flush_interval: int = 15

    # 后台任务间隔（秒） (Background task intervals)
    throttled_retry_interval: int = 30
    retention_interval: int = 86400

    # API 认证：SHA-256 后的令牌 (API auth: SHA-256 hex of the bearer token)
    api_token_hash: str = ""

    # 通知渠道 (Notification channels)
    notify_webhook_url: str = ""
    notify_chat_webhook_url: str = ""
    notify_pager_url: str = ""
    notify_pager_routing_key: str = ""
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_ssl: bool = True
    notify_email_recipients: list[str] = Field(default_factory=list)

    environment: str = "development"
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """构造 PostgreSQL 异步连接 URL (Build PostgreSQL async connection URL)。"""
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_url(self) -> str:
        return f"redis://{self.redis_host}:{self.redis_port}/0"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# ---------------------------------------------------------------------------
# 运行策略 (Runtime policy)
# ---------------------------------------------------------------------------

class RateLimitPolicy(BaseModel):
    """滑动窗口限流参数。"""
    max_actions: int = Field(default=5, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)


class BreakerPolicy(BaseModel):
    """熔断器参数。"""
    failure_threshold: int = Field(default=3, ge=1)
    cooldown_seconds: float = Field(default=60.0, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_cooldown_seconds: float = Field(default=900.0, gt=0)


class SignatureSpec(BaseModel):
    """策略文件中的签名条目，字段与 healing.signatures.Signature 对应。"""
    id: str
    category: str
    severity: str
    match_kind: str
    pattern: str = ""
    strategies: list[str] = Field(default_factory=list)
    description: str = ""


class GuardianPolicy(BaseModel):
    """
    带版本号的运行策略快照 (Versioned runtime policy snapshot)

    所有阈值都是部署决策而非正确性要求，默认值只是保守起点。
    """
    model_config = {"frozen": True}

    version: int = 1
    denylist: list[str] = Field(default_factory=list)  # 追加到内置禁令列表 (Added to the built-in denylist)
    fanout_threshold: int = Field(default=3, ge=0)
    default_rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    strategy_rate_limits: dict[str, RateLimitPolicy] = Field(default_factory=dict)
    breaker: BreakerPolicy = Field(default_factory=BreakerPolicy)
    channel_rate_limit: RateLimitPolicy = Field(
        default_factory=lambda: RateLimitPolicy(max_actions=20, window_seconds=60.0)
    )
    alert_severity_threshold: str = "high"
    review_backlog_limit: int = Field(default=5, ge=0)
    alert_dedup_seconds: float = 300.0
    throttled_ttl_seconds: float = 600.0
    throttled_queue_size: int = 500
    retention_days: int = Field(default=2190, ge=1)  # 六年 (six years)
    signatures: list[SignatureSpec] = Field(default_factory=list)  # 为空时使用内置目录

    def rate_limit_for(self, strategy: str) -> RateLimitPolicy:
        return self.strategy_rate_limits.get(strategy, self.default_rate_limit)


def load_policy(path: Optional[str]) -> GuardianPolicy:
    """从 YAML 加载策略，路径为空时返回默认策略。"""
    if not path:
        return GuardianPolicy()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    policy = GuardianPolicy.model_validate(data)
    logger.info("Loaded guardian policy v%d from %s", policy.version, path)
    return policy


class PolicyStore:
    """
    策略持有者：整体原子替换，版本号必须递增。

    Holds the active policy; a swap replaces it as one unit and the new
    version must be strictly greater than the current one.
    """

    def __init__(self, policy: Optional[GuardianPolicy] = None) -> None:
        self._policy = policy or GuardianPolicy()
        self._lock = threading.Lock()

    @property
    def current(self) -> GuardianPolicy:
        return self._policy

    def swap(self, policy: GuardianPolicy) -> GuardianPolicy:
        with self._lock:
            if policy.version <= self._policy.version:
                raise PolicyVersionError(
                    f"Policy version must increase (current={self._policy.version}, got={policy.version})"
                )
            previous = self._policy
            self._policy = policy
        logger.info("Guardian policy swapped: v%d -> v%d", previous.version, policy.version)
        return previous


# 全局配置实例 (Global Configuration Instance)
settings = Settings()
