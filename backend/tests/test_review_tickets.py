"""审批工单存储与熔断状态持久化测试。"""
import pytest

from guardian.core.config import BreakerPolicy
from guardian.core.exceptions import IllegalTransitionError
from guardian.healing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from guardian.healing.models import (
    Issue,
    IssueCategory,
    IssueContext,
    Severity,
    TargetSnapshot,
    TestResult,
)
from guardian.healing.strategies import SanitizeUnsafeInput
from guardian.services.circuit_store import load_circuit_states, save_circuit_states
from guardian.services.review_tickets import (
    InMemoryReviewTicketStore,
    ReviewTicket,
    SqlReviewTicketStore,
    TicketStatus,
)


def _ticket(issue_id: str = "issue-1", strategy: str = "sanitize_unsafe_input") -> ReviewTicket:
    issue = Issue(
        id=issue_id,
        correlation_id=f"corr-{issue_id}",
        timestamp="2026-01-05T10:00:00+00:00",
        signature_id="unsanitized-input",
        category=IssueCategory.SECURITY_VULNERABILITY,
        severity=Severity.MEDIUM,
        affected_resources=("src/A.js", "src/B.js", "src/C.js", "src/D.js"),
        context=IssueContext(message="xss in shared renderer"),
    )
    target = TargetSnapshot(resource="src/A.js", content="el.innerHTML = x;\n")
    return ReviewTicket(
        issue_id=issue_id,
        correlation_id=issue.correlation_id,
        strategy=strategy,
        severity=issue.severity,
        reason="Blast radius 4 exceeds fan-out threshold 3",
        issue=issue,
        action=SanitizeUnsafeInput().propose(issue, target),
    )


class TestTicketTransitions:
    def test_legal_path(self):
        ticket = _ticket()
        ticket.transition(TicketStatus.APPROVED)
        ticket.transition(TicketStatus.APPLIED)
        assert ticket.is_open is False

    def test_rejected_is_final(self):
        ticket = _ticket()
        ticket.transition(TicketStatus.REJECTED)
        with pytest.raises(IllegalTransitionError):
            ticket.transition(TicketStatus.APPROVED)

    def test_cannot_apply_without_approval(self):
        with pytest.raises(IllegalTransitionError):
            _ticket().transition(TicketStatus.APPLIED)


@pytest.mark.asyncio
async def test_in_memory_store_returns_copies():
    store = InMemoryReviewTicketStore()
    ticket = _ticket()
    await store.save(ticket)
    loaded = await store.get_by_issue("issue-1")
    loaded.transition(TicketStatus.APPROVED)
    assert (await store.get_by_issue("issue-1")).status == TicketStatus.PENDING


@pytest.mark.asyncio
async def test_sql_store_roundtrip(session_factory):
    store = SqlReviewTicketStore(session_factory)
    ticket = _ticket()
    ticket.test_result = TestResult(passed=False, errors=["unsanitized html sink remains"])
    await store.save(ticket)

    loaded = await store.get_by_issue("issue-1")
    assert loaded.id == ticket.id
    assert loaded.status == TicketStatus.PENDING
    assert loaded.issue == ticket.issue
    assert loaded.action.id == ticket.action.id
    assert loaded.action.payload.kind == "code_patch"
    assert loaded.test_result.errors == ["unsanitized html sink remains"]
    assert await store.get_by_issue("issue-missing") is None


@pytest.mark.asyncio
async def test_sql_store_update_and_counts(session_factory):
    store = SqlReviewTicketStore(session_factory)
    await store.save(_ticket("issue-1"))
    await store.save(_ticket("issue-2"))
    await store.save(_ticket("issue-3", strategy="parameterize_query"))
    assert await store.count_open("sanitize_unsafe_input") == 2

    ticket = await store.get_by_issue("issue-1")
    ticket.transition(TicketStatus.REJECTED)
    ticket.reviewer_id = "dr.chen"
    await store.save(ticket)

    assert await store.count_open("sanitize_unsafe_input") == 1
    open_ids = [t.issue_id for t in await store.list_open()]
    assert sorted(open_ids) == ["issue-2", "issue-3"]
    assert [t.issue_id for t in await store.list_open("parameterize_query")] == ["issue-3"]
    assert (await store.get_by_issue("issue-1")).reviewer_id == "dr.chen"


@pytest.mark.asyncio
async def test_circuit_states_survive_restart(session_factory):
    policy = BreakerPolicy(failure_threshold=1, cooldown_seconds=300)
    registry = CircuitBreakerRegistry(policy)

    async def boom():
        raise ConnectionError("pager down")

    with pytest.raises(ConnectionError):
        await registry.get("notify:pager").call(boom)
    registry.get("live:src/A.js")
    assert await save_circuit_states(session_factory, registry) == 2
    # 再保存一次走更新路径
    assert await save_circuit_states(session_factory, registry) == 2

    restored = CircuitBreakerRegistry(policy)
    assert await load_circuit_states(session_factory, restored) == 2
    assert restored.get("notify:pager").state == CircuitState.OPEN
    assert restored.get("notify:pager").allows_call() is False
    assert restored.get("live:src/A.js").state == CircuitState.CLOSED
