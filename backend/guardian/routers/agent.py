"""
Agent 运维路由模块 (Agent Operations Router)

API端点：GET /api/v1/agent/status, POST /api/v1/agent/policy/reload, POST /api/v1/agent/audit/resume
"""
from fastapi import APIRouter, Depends

from guardian.core.auth import verify_api_token
from guardian.core.config import load_policy
from guardian.core.deps import GuardianRuntime, get_runtime
from guardian.core.exceptions import ValidationError
from guardian.core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/agent", tags=["agent"])


@router.get("/status")
async def agent_status(
    runtime: GuardianRuntime = Depends(get_runtime),
    _caller: str = Depends(verify_api_token),
):
    """Agent 指标、审计状态、熔断器状态和当前策略版本。"""
    status = runtime.agent.status()
    status["recent_alerts"] = [a.model_dump(mode="json") for a in list(runtime.monitor.recent)[-20:]]
    return status


@router.post("/policy/reload")
async def reload_policy(
    runtime: GuardianRuntime = Depends(get_runtime),
    caller: str = Depends(verify_api_token),
):
    """重新读取策略文件并整体替换；版本号未递增返回 409。"""
    path = runtime.settings.policy_file
    if not path:
        raise ValidationError("No policy file configured", "set POLICY_FILE to reload policy")
    policy = load_policy(path)
    previous = runtime.agent.reload_policy(policy)
    logger.info("Policy reloaded by %s: v%d -> v%d", caller, previous.version, policy.version)
    return {"previous_version": previous.version, "version": policy.version}


@router.post("/audit/resume")
async def resume_audit(
    runtime: GuardianRuntime = Depends(get_runtime),
    caller: str = Depends(verify_api_token),
):
    """运维确认兜底日志已对账后解除审计 halted 状态。"""
    flushed = await runtime.audit.flush()
    runtime.audit.resume()
    logger.warning("Audit halt cleared by %s (%d buffered entries flushed)", caller, flushed)
    return runtime.audit.status()
