"""
审批工单路由模块 (Review Ticket Router)

外部审批界面通过这里查看待审批的修复动作并作出决定。审批通过后 Agent 在沙箱复测，
再实时执行工单中保存的动作，审计记录的 actor 为审批人。

API端点：GET /api/v1/reviews, POST /api/v1/reviews/{issue_id}/resolve
"""
from typing import List, Optional

from fastapi import APIRouter, Depends

from guardian.core.auth import verify_api_token
from guardian.core.deps import GuardianRuntime, get_runtime
from guardian.schemas.issue import PipelineResultResponse
from guardian.schemas.review import ResolveReviewRequest, ReviewTicketResponse

router = APIRouter(prefix="/api/v1/reviews", tags=["reviews"])


@router.get("", response_model=List[ReviewTicketResponse])
async def list_open_reviews(
    strategy: Optional[str] = None,
    runtime: GuardianRuntime = Depends(get_runtime),
    _caller: str = Depends(verify_api_token),
):
    """列出待审批工单，按创建时间升序，可按策略筛选。"""
    tickets = await runtime.tickets.list_open(strategy)
    return [ReviewTicketResponse.from_ticket(t) for t in tickets]


@router.post("/{issue_id}/resolve", response_model=PipelineResultResponse)
async def resolve_review(
    issue_id: str,
    body: ResolveReviewRequest,
    runtime: GuardianRuntime = Depends(get_runtime),
    _caller: str = Depends(verify_api_token),
):
    """审批或拒绝。工单不存在返回 404，已处理返回 409。"""
    result = await runtime.agent.resolve_approval(issue_id, body.approve, body.approver_id, body.note)
    return PipelineResultResponse.from_result(result)
