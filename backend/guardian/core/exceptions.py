"""
全局异常处理模块 (Global Exception Handling Module)

定义 Guardian 的异常体系和 FastAPI 全局异常处理器，提供统一的错误响应格式。
流水线内部的"分类未命中 / 安全拒绝 / 限流 / 沙箱失败"都是结果而非异常，
这里只定义真正需要向上传播的错误。

Defines the Guardian exception hierarchy and the FastAPI global exception
handlers. Classification misses, safety denials, throttling and sandbox
failures are pipeline outcomes, not exceptions; only conditions that must
propagate are defined here.
"""
import logging
import traceback
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


# ============================================================
# 业务异常类 (Business Exception Classes)
# ============================================================

class GuardianError(Exception):
    """Guardian 异常基类 (Base Guardian Exception)"""
    status_code: int = 400
    error: str = "guardian_error"

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)


class NotFoundError(GuardianError):
    """资源不存在 (Resource Not Found)"""
    status_code = 404
    error = "not_found"


class ValidationError(GuardianError):
    """数据校验失败 (Validation Error)"""
    status_code = 422
    error = "validation_error"


class ConflictError(GuardianError):
    """资源状态冲突 (Resource Conflict)"""
    status_code = 409
    error = "conflict"


class PolicyVersionError(ConflictError):
    """策略版本未递增 (Policy version did not increase)"""
    error = "policy_version"


class IllegalTransitionError(ConflictError):
    """非法状态迁移 (Illegal state transition)"""
    error = "illegal_transition"


class AuditSequenceConflictError(ConflictError):
    """审计序号已被其他条目占用，哈希链需要从存储重新续接 (Audit sequence already taken in the store)"""
    error = "audit_sequence_conflict"


class CircuitOpenError(GuardianError):
    """熔断器打开，调用被快速拒绝 (Circuit open, call rejected without invoking the dependency)"""
    status_code = 503
    error = "circuit_open"

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open", f"retry after {retry_after:.1f}s")


class SandboxTimeoutError(GuardianError):
    """沙箱或实时执行超过截止时间 (Sandbox or live execution exceeded its deadline)"""
    status_code = 504
    error = "sandbox_timeout"


class StrategyExecutionError(GuardianError):
    """修复策略 apply() 抛出异常 (Healing strategy apply() raised)"""
    status_code = 500
    error = "strategy_execution"


class AuditBufferOverflowError(GuardianError):
    """
    审计本地缓冲溢出 (Audit local buffer overflowed)

    出现后 Agent 拒绝继续执行任何实时修复，审计完整性优先于自愈可用性。
    """
    status_code = 503
    error = "audit_buffer_overflow"


class AuditStoreUnavailableError(GuardianError):
    """审计持久化后端不可达 (Durable audit store unreachable)"""
    status_code = 503
    error = "audit_store_unavailable"


# ============================================================
# 全局异常处理器注册 (Global Exception Handler Registration)
# ============================================================

def register_exception_handlers(app: FastAPI) -> None:
    """
    注册全局异常处理器到 FastAPI 应用

    处理优先级：
    1. GuardianError 子类 → 对应 HTTP 状态码 + 结构化响应
    2. HTTPException → 保持原样，包装为统一格式
    3. Exception → 500 + 完整 traceback 日志
    """

    @app.exception_handler(GuardianError)
    async def guardian_error_handler(request: Request, exc: GuardianError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning("%s on %s %s: %s", exc.error, request.method, request.url.path, exc.message)
        headers = None
        if isinstance(exc, CircuitOpenError):
            headers = {"Retry-After": str(max(1, int(exc.retry_after)))}
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error,
                "message": exc.message,
                "detail": exc.detail,
                "status_code": exc.status_code,
            },
            headers=headers,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": "http_error",
                "message": str(exc.detail),
                "detail": None,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception on %s %s: %s\n%s",
            request.method,
            request.url.path,
            str(exc),
            traceback.format_exc(),
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "Internal server error, please try again later",
                "detail": None,
                "status_code": 500,
            },
        )
