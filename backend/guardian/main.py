"""
Guardian 后端应用入口模块 (Guardian Backend Application Entry Module)

自愈代理的 FastAPI 应用入口，负责应用的完整生命周期管理。

主要功能 (Main Features):
- 数据库表自动创建 (Automatic database table creation)
- 组装 AgentBrain 及审计、审批、监控、通知 (Assemble the agent and its collaborators)
- 恢复熔断器状态、续接审计哈希链 (Restore circuit states, continue the audit hash chain)
- 后台任务：事件监听、实时监控、审计回写、限流重试、保留期清理、熔断状态保存
- 健康检查 (Health check)
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI

from guardian.core.config import settings
from guardian.core.database import Base, async_session, engine
from guardian.core.deps import build_runtime
from guardian.core.exceptions import register_exception_handlers
from guardian.core.logging import get_logger, setup_logging
from guardian.core.redis import close_redis, redis_healthy
# 导入所有模型以确保 SQLAlchemy 表注册 (Import all models to register the tables)
from guardian.models import AuditEntryRecord, CircuitStateRecord, ReviewTicketRecord  # noqa: F401
from guardian.routers import agent, audit_log, issues, reviews
from guardian.services.circuit_store import load_circuit_states, save_circuit_states
from guardian.tasks.audit_flush import audit_flush_loop
from guardian.tasks.audit_retention import audit_retention_loop
from guardian.tasks.circuit_persistence import circuit_persistence_loop
from guardian.tasks.throttled_retry import throttled_retry_loop

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理器 (Application Lifecycle Manager)

    启动时建表、组装运行时、恢复熔断状态并启动后台任务；
    关闭时取消任务、保存熔断状态、回写审计缓冲并释放连接。
    """
    setup_logging(settings.log_level)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    runtime = build_runtime(session_factory=async_session)
    app.state.runtime = runtime
    agent_brain = runtime.agent

    try:
        await load_circuit_states(async_session, agent_brain.breakers)
    except Exception as e:
        logger.warning("Failed to restore circuit breaker states: %s", e)
    await runtime.audit.initialize()

    tasks = [
        asyncio.create_task(runtime.monitor.run()),
        asyncio.create_task(audit_flush_loop(runtime.audit)),
        asyncio.create_task(throttled_retry_loop(agent_brain)),
        asyncio.create_task(audit_retention_loop(agent_brain)),
        asyncio.create_task(circuit_persistence_loop(async_session, agent_brain.breakers)),
    ]

    # 入站事件监听（仅在配置启用时） (Inbound listener, only when enabled)
    if settings.agent_enabled and settings.agent_listener_enabled:
        from guardian.tasks.issue_listener import issue_listener_loop
        tasks.append(asyncio.create_task(issue_listener_loop(agent_brain)))

    logger.info("Guardian started (policy v%d, %d strategies)", agent_brain.policy.version, len(agent_brain.registry))

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)

    try:
        await save_circuit_states(async_session, agent_brain.breakers)
    except Exception as e:
        logger.warning("Failed to persist circuit breaker states: %s", e)
    remaining = runtime.audit.buffered
    if remaining:
        await runtime.audit.flush()
        if runtime.audit.buffered:
            logger.error("Shutting down with %d unflushed audit entries (kept in fallback log)", runtime.audit.buffered)

    await close_redis()
    await engine.dispose()


# 创建 FastAPI 应用实例 (Create FastAPI application instance)
app = FastAPI(
    title="Guardian",
    description="Autonomous incident-healing agent | 自愈代理",
    version="0.1.0",
    lifespan=lifespan,
)

# 注册全局异常处理器 (Register global exception handlers)
register_exception_handlers(app)

# 注册所有 API 路由模块 (Register all API router modules)
app.include_router(issues.router)  # 事件提交 (Issue events)
app.include_router(reviews.router)  # 人工审批 (Human review)
app.include_router(audit_log.router)  # 审计日志 (Audit log)
app.include_router(agent.router)  # Agent 运维 (Agent operations)


@app.get("/health")
async def health():
    """健康检查：审计 halted 时返回 degraded。"""
    runtime = getattr(app.state, "runtime", None)
    audit_status = runtime.audit.status() if runtime else None
    healthy = audit_status is not None and not audit_status["halted"]
    body = {
        "status": "ok" if healthy else "degraded",
        "audit": audit_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    # 监听器启用时 Redis 不可达同样视为降级
    if settings.agent_listener_enabled:
        listener_ok = await redis_healthy()
        body["listener"] = "ok" if listener_ok else "unreachable"
        if not listener_ok:
            body["status"] = "degraded"
    return body


def run() -> None:
    """命令行入口：guardian-server (Console entry point)"""
    import uvicorn

    uvicorn.run("guardian.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
