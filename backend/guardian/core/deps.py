"""
运行时组装与 FastAPI 依赖项 (Runtime Assembly and FastAPI Dependencies)

GuardianRuntime 持有一个进程内的 AgentBrain 及其协作者（审计、审批工单、监控、通知）。
main.py 的 lifespan 构造它并挂在 app.state 上，路由通过 get_runtime() 取用。

GuardianRuntime holds the process-wide AgentBrain and its collaborators.
The lifespan in main.py builds it onto app.state; routers reach it through
get_runtime().
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from guardian.core.config import GuardianPolicy, Settings, load_policy, settings
from guardian.core.exceptions import GuardianError
from guardian.healing.agent import AgentBrain, build_agent_brain
from guardian.healing.targets import InMemoryTargetStore, TargetStore
from guardian.services.audit import AuditLogger
from guardian.services.audit_store import AuditStore, SqlAuditStore
from guardian.services.monitor import RealtimeMonitor
from guardian.services.notifier import AlertNotifier, build_notifier
from guardian.services.review_tickets import ReviewTicketStore, SqlReviewTicketStore
from guardian.services.stream import AuditStream


@dataclass
class GuardianRuntime:
    agent: AgentBrain
    audit: AuditLogger
    stream: AuditStream
    tickets: ReviewTicketStore
    monitor: RealtimeMonitor
    notifier: AlertNotifier
    settings: Settings


def build_runtime(
    *,
    cfg: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    audit_store: Optional[AuditStore] = None,
    tickets: Optional[ReviewTicketStore] = None,
    targets: Optional[TargetStore] = None,
    policy: Optional[GuardianPolicy] = None,
    notifier: Optional[AlertNotifier] = None,
) -> GuardianRuntime:
    """
    按配置组装运行时。

    未显式传入的存储使用 session_factory 上的 SQL 实现；
    目标存储默认为进程内实现，宿主应用应传入自己的 TargetStore。
    """
    cfg = cfg or settings
    policy = policy or load_policy(cfg.policy_file)
    if session_factory is None and (audit_store is None or tickets is None):
        from guardian.core.database import async_session
        session_factory = async_session

    stream = AuditStream()
    tickets = tickets or SqlReviewTicketStore(session_factory)
    notifier = notifier or build_notifier(cfg, policy)
    agent_targets = targets or InMemoryTargetStore()

    # 监控先于审计创建：审计降级回调直接走本地告警
    monitor = RealtimeMonitor(stream, tickets=tickets, notifier=notifier)
    audit = AuditLogger(
        audit_store or SqlAuditStore(session_factory),
        stream=stream,
        buffer_size=cfg.audit_buffer_size,
        write_timeout=cfg.audit_write_timeout,
        fallback_path=cfg.audit_fallback_path,
        on_degraded=monitor.raise_local_alarm,
    )
    agent = build_agent_brain(
        audit=audit,
        targets=agent_targets,
        tickets=tickets,
        policy=policy,
        live_timeout=cfg.live_apply_timeout,
    )
    agent.sandbox.timeout = cfg.sandbox_timeout
    # 监控与 Agent 共用同一个策略持有者，reload_policy() 同时生效
    monitor.policy_store = agent.policy_store
    return GuardianRuntime(
        agent=agent,
        audit=audit,
        stream=stream,
        tickets=tickets,
        monitor=monitor,
        notifier=notifier,
        settings=cfg,
    )


def get_runtime(request: Request) -> GuardianRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise GuardianError("Guardian runtime not initialised")
    return runtime


def get_agent(request: Request) -> AgentBrain:
    return get_runtime(request).agent
