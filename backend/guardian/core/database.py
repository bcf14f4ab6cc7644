"""
数据库连接模块 (Database Connection Module)

基于 SQLAlchemy 2.0 异步模式创建数据库引擎和会话工厂，为审计存储、审批工单和熔断状态提供持久化。

Creates the async engine and session factory (SQLAlchemy 2.0) backing the
audit store, review tickets and persisted circuit states.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from guardian.core.config import settings

# 使用 asyncpg 驱动连接 PostgreSQL，支持连接池和异步操作
engine = create_async_engine(settings.database_url, echo=False)

# 提交后不过期对象，便于访问已保存的数据 (Don't expire objects after commit)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """ORM 模型基类 (ORM Model Base Class)"""
    pass

