"""
审计日志路由模块 (Audit Log Router)

合规报表工具按时间范围、严重度、结果、阶段、关联 ID 查询审计记录，
并可校验哈希链完整性。

API端点：GET /api/v1/audit-log, GET /api/v1/audit-log/verify
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from guardian.core.auth import verify_api_token
from guardian.core.deps import GuardianRuntime, get_runtime
from guardian.healing.models import AuditOutcome, AuditQuery, PipelineStage, Severity
from guardian.schemas.audit import AuditLogPage
from guardian.services.audit import ChainReport

router = APIRouter(prefix="/api/v1/audit-log", tags=["audit-log"])


@router.get("", response_model=AuditLogPage)
async def query_audit_log(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    severity: Optional[Severity] = None,
    min_severity: Optional[Severity] = None,
    outcome: Optional[AuditOutcome] = None,
    stage: Optional[PipelineStage] = None,
    correlation_id: Optional[str] = None,
    issue_id: Optional[str] = None,
    limit: int = Query(500, ge=1, le=10000),
    offset: int = Query(0, ge=0),
    runtime: GuardianRuntime = Depends(get_runtime),
    _caller: str = Depends(verify_api_token),
):
    """按条件查询审计记录，按序号升序返回。"""
    query = AuditQuery(
        start=start,
        end=end,
        severity=severity,
        min_severity=min_severity,
        outcome=outcome,
        stage=stage,
        correlation_id=correlation_id,
        issue_id=issue_id,
        limit=limit,
        offset=offset,
    )
    entries = await runtime.agent.query_audit_log(query)
    return AuditLogPage(items=entries, count=len(entries), limit=limit, offset=offset)


@router.get("/verify", response_model=ChainReport)
async def verify_audit_chain(
    runtime: GuardianRuntime = Depends(get_runtime),
    _caller: str = Depends(verify_api_token),
):
    """重算全部哈希并检查链接。"""
    return await runtime.audit.verify_chain()
