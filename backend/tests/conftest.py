"""
Guardian 测试基础配置

提供进程内审计存储、目标存储、审批工单存储、AgentBrain、SQLite 异步会话和 API 客户端等通用 fixture。
所有测试使用隔离的 SQLite 文件数据库，不依赖外部 PostgreSQL/Redis。
"""
import hashlib
import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# 必须在导入 guardian 之前设置环境变量，避免真实连接
os.environ["POSTGRES_HOST"] = "localhost"
os.environ["POSTGRES_PORT"] = "5432"
os.environ["REDIS_HOST"] = "localhost"
os.environ["API_TOKEN_HASH"] = hashlib.sha256(b"test-token").hexdigest()

from guardian.core.config import GuardianPolicy, Settings
from guardian.core.database import Base
from guardian.core.deps import build_runtime
from guardian.healing.agent import AgentBrain, build_agent_brain
from guardian.healing.models import TargetSnapshot
from guardian.healing.targets import InMemoryTargetStore
from guardian.models import AuditEntryRecord, CircuitStateRecord, ReviewTicketRecord  # noqa: F401
from guardian.services.audit import AuditLogger
from guardian.services.audit_store import InMemoryAuditStore
from guardian.services.review_tickets import InMemoryReviewTicketStore
from guardian.services.stream import AuditStream

API_TOKEN = "test-token"


XSS_SOURCE = "const el = document.getElementById('comment');\nel.innerHTML = comment.body;\n"


# ── 进程内存储 ────────────────────────────────────────────────────────

@pytest.fixture
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture
def stream() -> AuditStream:
    return AuditStream()


@pytest.fixture
def audit(audit_store, stream, tmp_path) -> AuditLogger:
    return AuditLogger(
        audit_store,
        stream=stream,
        buffer_size=50,
        write_timeout=1.0,
        fallback_path=str(tmp_path / "audit-fallback.jsonl"),
    )


@pytest.fixture
def targets() -> InMemoryTargetStore:
    store = InMemoryTargetStore()
    store.put(TargetSnapshot(resource="src/components/CommentView.js", content=XSS_SOURCE))
    return store


@pytest.fixture
def tickets() -> InMemoryReviewTicketStore:
    return InMemoryReviewTicketStore()


@pytest.fixture
def agent(audit, targets, tickets) -> AgentBrain:
    return build_agent_brain(audit=audit, targets=targets, tickets=tickets, live_timeout=5.0)


# ── SQLite 异步会话 ───────────────────────────────────────────────────

@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """每个测试一个 SQLite 文件数据库。"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/guardian.db", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


# ── API 客户端 ────────────────────────────────────────────────────────

@pytest.fixture
def runtime(audit_store, tickets, targets, tmp_path):
    cfg = Settings(
        api_token_hash=hashlib.sha256(API_TOKEN.encode()).hexdigest(),
        audit_fallback_path=str(tmp_path / "api-audit-fallback.jsonl"),
        audit_buffer_size=50,
        audit_write_timeout=1.0,
    )
    return build_runtime(
        cfg=cfg,
        audit_store=audit_store,
        tickets=tickets,
        targets=targets,
        policy=GuardianPolicy(),
    )


@pytest_asyncio.fixture
async def client(runtime) -> AsyncGenerator[AsyncClient, None]:
    """不触发 lifespan，直接把测试运行时挂到 app.state 上。"""
    from guardian.main import app

    app.state.runtime = runtime
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.runtime = None


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {API_TOKEN}"}
