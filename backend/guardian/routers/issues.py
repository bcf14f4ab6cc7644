"""
问题事件路由模块 (Issue Event Router)

宿主应用通过 HTTP 提交错误/安全事件，与 Redis 频道 guardian:issue:new 等价。
提交即同步走完整条流水线，返回最终阶段；流水线内部的拒绝、限流、待审批都是 200 响应。

API端点：POST /api/v1/issues/events, POST /api/v1/issues/events/batch
"""
from typing import List

from fastapi import APIRouter, Depends

from guardian.core.auth import verify_api_token
from guardian.core.deps import get_agent
from guardian.healing.agent import AgentBrain
from guardian.healing.models import RawEvent
from guardian.schemas.issue import IssueBatchRequest, PipelineResultResponse

router = APIRouter(prefix="/api/v1/issues", tags=["issues"])


@router.post("/events", response_model=PipelineResultResponse)
async def submit_issue_event(
    event: RawEvent,
    agent: AgentBrain = Depends(get_agent),
    _caller: str = Depends(verify_api_token),
):
    """提交单个事件并返回处理结果。"""
    result = await agent.submit_issue_event(event)
    return PipelineResultResponse.from_result(result)


@router.post("/events/batch", response_model=List[PipelineResultResponse])
async def submit_issue_batch(
    body: IssueBatchRequest,
    agent: AgentBrain = Depends(get_agent),
    _caller: str = Depends(verify_api_token),
):
    """批量提交，每个事件独立并发处理，结果顺序与请求一致。"""
    results = await agent.submit_batch(body.events)
    return [PipelineResultResponse.from_result(r) for r in results]
