"""
告警通知服务 (Alert Notifier Service)

按升级策略 (EscalationPolicy) 把 GuardianAlert 发送到各通知渠道：
Webhook / 聊天机器人 / 邮件 / 寻呼。

- 升级策略是显式有序的步骤列表，每步指定渠道、最低告警级别、成功后是否继续
- 每个渠道有独立的熔断器和限流器，某个渠道故障不会拖慢其他渠道
- 渠道发送失败时继续下一步（升级），send() 本身不抛出异常
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Iterable, Optional, Protocol

import aiosmtplib
import httpx
from pydantic import BaseModel, Field

from guardian.core.config import BreakerPolicy, GuardianPolicy, RateLimitPolicy, Settings, settings
from guardian.core.exceptions import CircuitOpenError
from guardian.core.logging import get_logger
from guardian.healing.circuit_breaker import CircuitBreakerRegistry
from guardian.healing.rate_limiter import RateLimiter
from guardian.services.monitor import AlertSeverity, GuardianAlert

logger = get_logger(__name__)

_SEVERITY_ICON = {
    AlertSeverity.INFO: "ℹ️",
    AlertSeverity.WARNING: "⚠️",
    AlertSeverity.CRITICAL: "🚨",
    AlertSeverity.EMERGENCY: "🆘",
}


def _alert_text(alert: GuardianAlert) -> str:
    """通知正文，各文本类渠道共用。"""
    lines = [
        f"{_SEVERITY_ICON[alert.severity]} **Guardian {alert.severity.value.upper()}**",
        "",
        f"**{alert.title}**",
        f"**Category**: {alert.category.value}",
    ]
    if alert.correlation_id:
        lines.append(f"**Correlation**: {alert.correlation_id}")
    if alert.message:
        lines += ["", alert.message]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# 通知渠道 (Notification channels)
# ---------------------------------------------------------------------------

class NotificationChannel(Protocol):
    name: str

    async def send(self, alert: GuardianAlert) -> None:
        """发送失败时抛出异常。"""
        ...


class _HttpChannel(ABC):
    """HTTP 渠道基类，子类只决定请求体。"""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.name = name
        self.url = url
        self.timeout = timeout
        self._transport = transport

    @abstractmethod
    def build_payload(self, alert: GuardianAlert) -> dict:
        ...

    async def send(self, alert: GuardianAlert) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.url, json=self.build_payload(alert))
            resp.raise_for_status()


class WebhookChannel(_HttpChannel):
    """通用 Webhook：发送告警的完整 JSON。"""

    def build_payload(self, alert: GuardianAlert) -> dict:
        return {"source": "guardian", "alert": alert.model_dump(mode="json")}


class ChatChannel(_HttpChannel):
    """聊天机器人 Webhook（markdown 文本）。"""

    def build_payload(self, alert: GuardianAlert) -> dict:
        body = _alert_text(alert)
        return {"msgtype": "markdown", "markdown": {"title": alert.title, "text": body}, "text": body}


class PagerChannel(_HttpChannel):
    """寻呼服务事件 API，按指纹去重。"""

    def __init__(self, name: str, url: str, routing_key: str, **kwargs) -> None:
        super().__init__(name, url, **kwargs)
        self.routing_key = routing_key

    def build_payload(self, alert: GuardianAlert) -> dict:
        return {
            "routing_key": self.routing_key,
            "event_action": "trigger",
            "dedup_key": alert.fingerprint,
            "payload": {
                "summary": alert.title,
                "source": "guardian",
                "severity": "critical" if alert.severity == AlertSeverity.EMERGENCY else alert.severity.value,
                "custom_details": {
                    "category": alert.category.value,
                    "correlation_id": alert.correlation_id,
                    "message": alert.message,
                },
            },
        }


class EmailChannel:
    def __init__(
        self,
        name: str,
        hostname: str,
        port: int,
        username: str,
        password: str,
        recipients: list[str],
        use_ssl: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.name = name
        self.hostname = hostname
        self.port = port
        self.username = username
        self.password = password
        self.recipients = list(recipients)
        self.use_ssl = use_ssl
        self.timeout = timeout

    def build_message(self, alert: GuardianAlert) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["From"] = self.username
        msg["To"] = ", ".join(self.recipients)
        msg["Subject"] = f"[Guardian {alert.severity.value.upper()}] {alert.title}"
        msg.attach(MIMEText(_alert_text(alert), "plain", "utf-8"))
        return msg

    async def send(self, alert: GuardianAlert) -> None:
        if not self.recipients:
            raise ValueError("email channel has no recipients")
        kwargs = {
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username or None,
            "password": self.password or None,
            "timeout": self.timeout,
        }
        if self.use_ssl:
            kwargs["use_tls"] = True
        else:
            kwargs["start_tls"] = True
        await aiosmtplib.send(self.build_message(alert), **kwargs)


# ---------------------------------------------------------------------------
# 升级策略 (Escalation policy)
# ---------------------------------------------------------------------------

class EscalationStep(BaseModel):
    channel: str
    min_severity: AlertSeverity = AlertSeverity.INFO
    continue_on_success: bool = True


class EscalationPolicy(BaseModel):
    steps: list[EscalationStep] = Field(default_factory=list)


class ChannelAttempt(BaseModel):
    channel: str
    delivered: bool
    error: Optional[str] = None


class DeliveryStatus(BaseModel):
    alert_id: str
    delivered: bool
    attempts: list[ChannelAttempt] = Field(default_factory=list)

    @property
    def delivered_to(self) -> list[str]:
        return [a.channel for a in self.attempts if a.delivered]


class AlertNotifier:
    """按升级策略逐步投递告警。"""

    def __init__(
        self,
        channels: Iterable[NotificationChannel],
        escalation: EscalationPolicy,
        breaker_policy: Optional[BreakerPolicy] = None,
        rate_limit: Optional[RateLimitPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.channels = {c.name: c for c in channels}
        self.escalation = escalation
        self.breakers = CircuitBreakerRegistry(breaker_policy)
        self.rate_limiter = RateLimiter(rate_limit or RateLimitPolicy(max_actions=20, window_seconds=60.0))
        self.timeout = timeout if timeout is not None else settings.notify_timeout

    async def send(self, alert: GuardianAlert) -> DeliveryStatus:
        attempts: list[ChannelAttempt] = []
        for step in self.escalation.steps:
            if alert.severity.rank < step.min_severity.rank:
                continue
            channel = self.channels.get(step.channel)
            if channel is None:
                logger.warning("Escalation step references unknown channel '%s'", step.channel)
                continue
            attempt = await self._deliver(channel, alert)
            attempts.append(attempt)
            if attempt.delivered and not step.continue_on_success:
                break
        status = DeliveryStatus(
            alert_id=alert.id,
            delivered=any(a.delivered for a in attempts),
            attempts=attempts,
        )
        if attempts and not status.delivered:
            logger.error("Alert %s failed on all %d channel(s)", alert.id, len(attempts))
        return status

    async def _deliver(self, channel: NotificationChannel, alert: GuardianAlert) -> ChannelAttempt:
        if not self.rate_limiter.acquire(channel.name):
            logger.warning("Notification channel %s rate limited, skipping alert %s", channel.name, alert.id)
            return ChannelAttempt(channel=channel.name, delivered=False, error="rate_limited")
        breaker = self.breakers.get(f"notify:{channel.name}")
        try:
            await breaker.call(channel.send, alert, timeout=self.timeout)
        except CircuitOpenError as e:
            return ChannelAttempt(channel=channel.name, delivered=False, error=e.message)
        except asyncio.TimeoutError:
            logger.warning("Notification channel %s timed out after %.1fs", channel.name, self.timeout)
            return ChannelAttempt(channel=channel.name, delivered=False, error="timeout")
        except Exception as e:
            logger.warning("Notification channel %s failed: %s", channel.name, e)
            return ChannelAttempt(channel=channel.name, delivered=False, error=f"{type(e).__name__}: {e}")
        logger.info("Alert %s delivered via %s", alert.id, channel.name)
        return ChannelAttempt(channel=channel.name, delivered=True)


def build_notifier(cfg: Settings, policy: GuardianPolicy) -> AlertNotifier:
    """按已配置的渠道组装通知器，未配置的渠道不出现在升级策略中。"""
    channels: list[NotificationChannel] = []
    steps: list[EscalationStep] = []
    if cfg.notify_webhook_url:
        channels.append(WebhookChannel("webhook", cfg.notify_webhook_url, timeout=cfg.notify_timeout))
        steps.append(EscalationStep(channel="webhook", min_severity=AlertSeverity.INFO))
    if cfg.notify_chat_webhook_url:
        channels.append(ChatChannel("chat", cfg.notify_chat_webhook_url, timeout=cfg.notify_timeout))
        steps.append(EscalationStep(channel="chat", min_severity=AlertSeverity.WARNING))
    if cfg.smtp_host and cfg.notify_email_recipients:
        channels.append(EmailChannel(
            "email",
            hostname=cfg.smtp_host,
            port=cfg.smtp_port,
            username=cfg.smtp_user,
            password=cfg.smtp_password,
            recipients=cfg.notify_email_recipients,
            use_ssl=cfg.smtp_ssl,
            timeout=cfg.notify_timeout,
        ))
        steps.append(EscalationStep(channel="email", min_severity=AlertSeverity.CRITICAL))
    if cfg.notify_pager_url and cfg.notify_pager_routing_key:
        channels.append(PagerChannel(
            "pager", cfg.notify_pager_url, cfg.notify_pager_routing_key, timeout=cfg.notify_timeout,
        ))
        steps.append(EscalationStep(channel="pager", min_severity=AlertSeverity.EMERGENCY))
    return AlertNotifier(
        channels,
        EscalationPolicy(steps=steps),
        breaker_policy=policy.breaker,
        rate_limit=policy.channel_rate_limit,
        timeout=cfg.notify_timeout,
    )
