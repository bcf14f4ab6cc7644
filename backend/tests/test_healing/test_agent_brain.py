"""AgentBrain 集成测试：进程内存储下的完整自愈流水线。"""
import asyncio
import json

import pytest

from guardian.core.config import BreakerPolicy, GuardianPolicy, RateLimitPolicy
from guardian.core.exceptions import ConflictError, NotFoundError, PolicyVersionError
from guardian.healing.agent import build_agent_brain
from guardian.healing.models import (
    AuditOutcome,
    AuditQuery,
    PipelineStage,
    RawEvent,
    TargetSnapshot,
)
from guardian.healing.rate_limiter import RateLimiter
from guardian.healing.targets import InMemoryTargetStore
from guardian.services.audit import AuditLogger
from guardian.services.audit_store import InMemoryAuditStore
from guardian.services.review_tickets import TicketStatus

COMMENT_VIEW = "src/components/CommentView.js"
INTAKE_LOG = "INFO intake mrn=A1234567 ssn=123-45-6789\n"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FlakyTargetStore(InMemoryTargetStore):
    """第一次提交写入后丢失确认，模拟半完成的实时修改。"""

    def __init__(self):
        super().__init__()
        self.fail_next_commit = True

    async def commit(self, target):
        await super().commit(target)
        if self.fail_next_commit:
            self.fail_next_commit = False
            raise ConnectionError("ack lost")


class BrokenTargetStore(InMemoryTargetStore):
    async def snapshot(self, resource):
        raise RuntimeError("target store offline")


class SwitchableTargetStore(InMemoryTargetStore):
    def __init__(self):
        super().__init__()
        self.offline = False

    async def snapshot(self, resource):
        if self.offline:
            raise RuntimeError("target store offline")
        return await super().snapshot(resource)


def _xss_event(**kwargs) -> RawEvent:
    defaults = dict(message="Unsafe innerHTML assignment in CommentView", file_path=COMMENT_VIEW)
    defaults.update(kwargs)
    return RawEvent(**defaults)


def _phi_event() -> RawEvent:
    return RawEvent(
        message="patient ssn 123-45-6789 logged to console by IntakeForm",
        resource_hint="logs/intake.log",
        actor_id="nurse-7",
    )


def _leak_event() -> RawEvent:
    return RawEvent(
        message="MaxListenersExceededWarning: Possible EventEmitter memory leak detected",
        component="PatientDashboard",
        resource_hint="runtime:patient-dashboard",
    )


def _dependency_event() -> RawEvent:
    return RawEvent(
        message="ECONNREFUSED calling lab-results API",
        resource_hint="config:gateway",
        endpoint="/api/lab-results",
    )


def _dashboard() -> TargetSnapshot:
    return TargetSnapshot(resource="runtime:patient-dashboard", state={"handles": [
        {"id": "h1", "kind": "listener", "owner": "PatientDashboard", "open": True},
        {"id": "h2", "kind": "timer", "owner": "PatientDashboard", "open": True},
    ]})


async def _entries(agent, issue_id: str):
    return await agent.query_audit_log(AuditQuery(issue_id=issue_id))


def _stages(entries) -> list[PipelineStage]:
    return [e.stage for e in entries]


def _assert_chained(entries) -> None:
    assert entries[0].parent_id is None
    for previous, current in zip(entries, entries[1:]):
        assert current.parent_id == previous.id


# ── 自动修复 ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_xss_auto_healed(agent, targets):
    result = await agent.submit_issue_event(_xss_event())

    assert result.stage == PipelineStage.APPLIED
    assert result.outcome == AuditOutcome.SUCCESS
    assert result.strategy == "sanitize_unsafe_input"
    assert "el.innerHTML = sanitizeHtml(comment.body);" in targets.get(COMMENT_VIEW).content

    entries = await _entries(agent, result.issue.id)
    assert _stages(entries) == [
        PipelineStage.CLASSIFIED,
        PipelineStage.AUTO_ELIGIBLE,
        PipelineStage.GATED,
        PipelineStage.SANDBOXED,
        PipelineStage.APPLIED,
    ]
    _assert_chained(entries)
    assert result.entry_ids == [e.id for e in entries]
    assert {e.correlation_id for e in entries} == {result.issue.correlation_id}

    applied = entries[-1]
    assert applied.actor == "agent"
    assert applied.action["status"] == "executed"
    assert applied.before_digest != applied.after_digest
    assert "rollback:" in applied.detail
    assert agent.metrics.issues_healed == 1


@pytest.mark.asyncio
async def test_every_decision_is_audited_once(agent, audit_store):
    await agent.submit_issue_event(_xss_event())
    entries = await audit_store.all_entries()
    assert [e.sequence for e in entries] == [1, 2, 3, 4, 5]
    assert len({e.id for e in entries}) == 5


# ── 人工审批 ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_phi_requires_approval_then_applies(agent, targets, tickets):
    targets.put(TargetSnapshot(resource="logs/intake.log", content="INFO intake mrn=A1234567 ssn=123-45-6789\n"))

    result = await agent.submit_issue_event(_phi_event())
    assert result.stage == PipelineStage.NEEDS_APPROVAL
    assert result.outcome == AuditOutcome.PENDING
    assert result.ticket_id is not None
    assert targets.commits == []

    entries = await _entries(agent, result.issue.id)
    assert _stages(entries) == [PipelineStage.CLASSIFIED, PipelineStage.NEEDS_APPROVAL]
    assert entries[1].decision["rule"] == "critical_severity"
    for entry in entries:
        assert "123-45-6789" not in json.dumps(entry.issue)

    ticket = await tickets.get_by_issue(result.issue.id)
    assert ticket.status == TicketStatus.PENDING
    assert "123-45-6789" not in ticket.issue.context.message

    resolved = await agent.resolve_approval(result.issue.id, approve=True, approver_id="dr.chen", note="verified")
    assert resolved.stage == PipelineStage.APPLIED

    entries = await _entries(agent, result.issue.id)
    assert _stages(entries) == [
        PipelineStage.CLASSIFIED,
        PipelineStage.NEEDS_APPROVAL,
        PipelineStage.SANDBOXED,
        PipelineStage.APPLIED,
    ]
    _assert_chained(entries)
    assert [e.actor for e in entries[2:]] == ["dr.chen", "dr.chen"]
    assert "123-45-6789" not in targets.get("logs/intake.log").content

    ticket = await tickets.get_by_issue(result.issue.id)
    assert ticket.status == TicketStatus.APPLIED
    assert ticket.reviewer_id == "dr.chen"
    assert agent.metrics.approvals == 1


@pytest.mark.asyncio
async def test_reject_approval(agent, targets, tickets):
    targets.put(TargetSnapshot(resource="logs/intake.log", content="ssn=123-45-6789"))
    result = await agent.submit_issue_event(_phi_event())

    resolved = await agent.resolve_approval(result.issue.id, approve=False, approver_id="dr.chen", note="false positive")
    assert resolved.stage == PipelineStage.REJECTED
    assert resolved.outcome == AuditOutcome.BLOCKED
    assert "false positive" in resolved.reason
    assert targets.commits == []
    assert (await tickets.get_by_issue(result.issue.id)).status == TicketStatus.REJECTED


@pytest.mark.asyncio
async def test_resolve_twice_conflicts(agent, targets):
    targets.put(TargetSnapshot(resource="logs/intake.log", content="ssn=123-45-6789"))
    result = await agent.submit_issue_event(_phi_event())
    await agent.resolve_approval(result.issue.id, approve=False, approver_id="dr.chen")
    with pytest.raises(ConflictError):
        await agent.resolve_approval(result.issue.id, approve=True, approver_id="dr.chen")


@pytest.mark.asyncio
async def test_concurrent_resolve_conflicts(agent, targets):
    targets.put(TargetSnapshot(resource="logs/intake.log", content="ssn=123-45-6789"))
    result = await agent.submit_issue_event(_phi_event())
    outcomes = await asyncio.gather(
        agent.resolve_approval(result.issue.id, approve=True, approver_id="dr.chen"),
        agent.resolve_approval(result.issue.id, approve=True, approver_id="dr.patel"),
        return_exceptions=True,
    )
    assert sum(isinstance(o, ConflictError) for o in outcomes) == 1


@pytest.mark.asyncio
async def test_resolve_unknown_issue(agent):
    with pytest.raises(NotFoundError):
        await agent.resolve_approval("issue-missing", approve=True, approver_id="dr.chen")


@pytest.mark.asyncio
async def test_approval_refused_while_audit_halted(targets, tickets, tmp_path):
    store = InMemoryAuditStore()
    audit = AuditLogger(store, buffer_size=2, write_timeout=1.0, fallback_path=str(tmp_path / "fallback.jsonl"))
    agent = build_agent_brain(audit=audit, targets=targets, tickets=tickets, live_timeout=5.0)
    targets.put(TargetSnapshot(resource="logs/intake.log", content=INTAKE_LOG))
    pending = await agent.submit_issue_event(_phi_event())
    assert agent.metrics.review_pending == 1

    # 审计缓冲溢出，进入 halted
    store.available = False
    await agent.submit_issue_event(_xss_event())
    assert audit.halted is True
    store.available = True
    await audit.flush()

    refused = await agent.resolve_approval(pending.issue.id, approve=True, approver_id="dr.chen")
    assert refused.stage == PipelineStage.FAILED
    assert refused.reason.startswith("audit halted")
    assert _stages(await _entries(agent, pending.issue.id)) == [PipelineStage.CLASSIFIED, PipelineStage.NEEDS_APPROVAL]
    assert (await tickets.get_by_issue(pending.issue.id)).status == TicketStatus.PENDING
    assert agent.metrics.review_pending == 1
    assert targets.get("logs/intake.log").content == INTAKE_LOG

    audit.resume()
    resolved = await agent.resolve_approval(pending.issue.id, approve=True, approver_id="dr.chen")
    assert resolved.stage == PipelineStage.APPLIED
    assert _stages(await _entries(agent, pending.issue.id)) == [
        PipelineStage.CLASSIFIED,
        PipelineStage.NEEDS_APPROVAL,
        PipelineStage.SANDBOXED,
        PipelineStage.APPLIED,
    ]
    assert agent.metrics.review_pending == 0


@pytest.mark.asyncio
async def test_approval_fault_is_audited_and_closes_ticket(audit, tickets):
    targets = SwitchableTargetStore()
    targets.put(TargetSnapshot(resource="logs/intake.log", content="ssn=123-45-6789"))
    agent = build_agent_brain(audit=audit, targets=targets, tickets=tickets, live_timeout=5.0)
    pending = await agent.submit_issue_event(_phi_event())

    targets.offline = True
    result = await agent.resolve_approval(pending.issue.id, approve=True, approver_id="dr.chen")
    assert result.stage == PipelineStage.FAILED
    assert result.outcome == AuditOutcome.FAILED
    assert "target store offline" in result.reason

    entries = await _entries(agent, pending.issue.id)
    assert _stages(entries) == [PipelineStage.CLASSIFIED, PipelineStage.NEEDS_APPROVAL, PipelineStage.FAILED]
    assert entries[-1].actor == "dr.chen"
    _assert_chained(entries)
    assert (await tickets.get_by_issue(pending.issue.id)).status == TicketStatus.FAILED
    assert agent.metrics.review_pending == 0

    with pytest.raises(ConflictError):
        await agent.resolve_approval(pending.issue.id, approve=True, approver_id="dr.chen")


@pytest.mark.asyncio
async def test_fanout_requires_approval(agent):
    result = await agent.submit_issue_event(_xss_event(
        resource_hint="src/components/Shared.js",
        component="CommentView",
        endpoint="/api/comments",
    ))
    assert result.stage == PipelineStage.NEEDS_APPROVAL
    entries = await _entries(agent, result.issue.id)
    assert entries[-1].decision["rule"] == "fanout"


# ── 拒绝 ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_denylisted_strategy_rejected(agent, targets):
    result = await agent.submit_issue_event(RawEvent(
        message="checksum mismatch in patient_records table",
        resource_hint="db:patient_records",
    ))
    assert result.stage == PipelineStage.REJECTED
    assert result.outcome == AuditOutcome.BLOCKED
    assert result.strategy == "delete_data"
    assert targets.commits == []

    entries = await _entries(agent, result.issue.id)
    assert _stages(entries) == [PipelineStage.CLASSIFIED, PipelineStage.REJECTED]
    assert entries[-1].decision["rule"] == "denylist"
    assert agent.metrics.rejected == 1


@pytest.mark.asyncio
async def test_unknown_signature_rejected(agent):
    result = await agent.submit_issue_event(RawEvent(message="TypeError: x is undefined"))
    assert result.stage == PipelineStage.REJECTED
    entries = await _entries(agent, result.issue.id)
    assert entries[-1].decision["rule"] == "no_candidate"


# ── 限流与熔断 ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_healing_storm_is_throttled(agent, targets):
    targets.put(_dashboard())
    results = await agent.submit_batch([_leak_event() for _ in range(10)])

    applied = [r for r in results if r.stage == PipelineStage.APPLIED]
    throttled = [r for r in results if r.outcome == AuditOutcome.THROTTLED]
    assert len(applied) == 5
    assert len(throttled) == 5
    assert all(r.stage == PipelineStage.GATED for r in throttled)
    assert len(agent.throttled) == 5

    entries = await _entries(agent, throttled[0].issue.id)
    gated = entries[-1]
    assert gated.outcome == AuditOutcome.THROTTLED
    assert gated.decision["rate_limit"]["count"] == 5
    assert gated.decision["rate_limit"]["limit"] == 5


@pytest.mark.asyncio
async def test_throttled_issue_retried_with_same_correlation(audit, targets, tickets):
    clock = FakeClock()
    agent = build_agent_brain(
        audit=audit, targets=targets, tickets=tickets, live_timeout=5.0,
        rate_limiter=RateLimiter(RateLimitPolicy(max_actions=1, window_seconds=60), clock=clock),
    )
    targets.put(_dashboard())
    first = await agent.submit_issue_event(_leak_event())
    second = await agent.submit_issue_event(_leak_event())
    assert first.stage == PipelineStage.APPLIED
    assert second.outcome == AuditOutcome.THROTTLED

    # 窗口未过，重试再次被挡并重新入队
    retried = await agent.retry_throttled()
    assert [r.outcome for r in retried] == [AuditOutcome.THROTTLED]
    assert len(agent.throttled) == 1

    clock.now += 61
    retried = await agent.retry_throttled()
    assert len(retried) == 1
    assert retried[0].stage == PipelineStage.APPLIED
    assert retried[0].issue.correlation_id == second.issue.correlation_id
    assert retried[0].issue.id != second.issue.id
    assert len(agent.throttled) == 0


# ── 实时执行失败 ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_live_failure_rolls_back(audit, tickets):
    targets = FlakyTargetStore()
    targets.put(TargetSnapshot(resource="config:gateway", state={"circuit_breakers": {}}))
    agent = build_agent_brain(audit=audit, targets=targets, tickets=tickets, live_timeout=5.0)

    result = await agent.submit_issue_event(_dependency_event())
    assert result.stage == PipelineStage.FAILED
    assert result.outcome == AuditOutcome.FAILED
    assert targets.get("config:gateway").state == {"circuit_breakers": {}}

    failed = (await _entries(agent, result.issue.id))[-1]
    assert failed.stage == PipelineStage.FAILED
    assert failed.action["status"] == "rolled_back"
    assert "rolled back" in failed.detail
    assert "ack lost" in failed.detail
    assert agent.metrics.failed == 1


@pytest.mark.asyncio
async def test_open_circuit_gates_next_issue(audit, tickets):
    targets = FlakyTargetStore()
    targets.put(TargetSnapshot(resource="config:gateway", state={"circuit_breakers": {}}))
    agent = build_agent_brain(
        audit=audit, targets=targets, tickets=tickets, live_timeout=5.0,
        policy=GuardianPolicy(breaker=BreakerPolicy(failure_threshold=1)),
    )
    await agent.submit_issue_event(_dependency_event())

    result = await agent.submit_issue_event(_dependency_event())
    assert result.stage == PipelineStage.GATED
    assert result.outcome == AuditOutcome.THROTTLED
    assert "circuit 'live:config:gateway' is open" in result.reason
    assert len(agent.throttled) == 1


@pytest.mark.asyncio
async def test_sandbox_failure_goes_to_review(agent, targets, tickets):
    targets.put(TargetSnapshot(
        resource="src/api/search.js",
        content="db.query(\"SELECT * FROM t WHERE a = '\" + a + \"' AND b = '\" + b + \"'\")\n",
    ))
    result = await agent.submit_issue_event(RawEvent(
        message="sql injection attempt blocked by WAF",
        file_path="src/api/search.js",
    ))
    assert result.stage == PipelineStage.REVIEW_PENDING
    assert result.outcome == AuditOutcome.PENDING
    assert targets.commits == []

    entries = await _entries(agent, result.issue.id)
    assert _stages(entries)[-2:] == [PipelineStage.SANDBOXED, PipelineStage.REVIEW_PENDING]
    assert entries[-2].outcome == AuditOutcome.FAILED
    ticket = await tickets.get_by_issue(result.issue.id)
    assert ticket.test_result is not None and ticket.test_result.passed is False

    # 审批通过后沙箱复测仍然失败
    resolved = await agent.resolve_approval(result.issue.id, approve=True, approver_id="dr.chen")
    assert resolved.stage == PipelineStage.FAILED
    assert (await tickets.get_by_issue(result.issue.id)).status == TicketStatus.FAILED
    assert targets.commits == []


@pytest.mark.asyncio
async def test_pipeline_fault_is_audited(audit, tickets):
    agent = build_agent_brain(audit=audit, targets=BrokenTargetStore(), tickets=tickets)
    result = await agent.submit_issue_event(_xss_event())
    assert result.stage == PipelineStage.FAILED
    entries = await _entries(agent, result.issue.id)
    assert entries[-1].stage == PipelineStage.FAILED
    assert "target store offline" in entries[-1].detail


# ── 审计降级 ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_audit_outage_buffers_and_flushes_in_order(agent, audit, audit_store, targets):
    targets.put(_dashboard())
    targets.put(TargetSnapshot(resource="config:gateway", state={"circuit_breakers": {}}))
    audit_store.available = False

    results = []
    for event in (_xss_event(), _leak_event(), _dependency_event()):
        results.append(await agent.submit_issue_event(event))
    assert results[0].stage == PipelineStage.APPLIED
    assert audit.degraded is True
    assert audit.buffered == sum(len(r.entry_ids) for r in results)

    audit_store.available = True
    assert await audit.flush() == sum(len(r.entry_ids) for r in results)
    assert audit.degraded is False

    entries = await agent.query_audit_log(AuditQuery())
    assert len(entries) == sum(len(r.entry_ids) for r in results)
    # 顺序提交：每个 Issue 的记录连续排列，且按提交顺序出现
    assert [e.id for e in entries] == [entry_id for r in results for entry_id in r.entry_ids]
    assert _stages(entries[:5]) == [
        PipelineStage.CLASSIFIED,
        PipelineStage.AUTO_ELIGIBLE,
        PipelineStage.GATED,
        PipelineStage.SANDBOXED,
        PipelineStage.APPLIED,
    ]
    for result in results:
        own = await _entries(agent, result.issue.id)
        assert own[-1].stage == result.stage
        _assert_chained(own)
    assert (await audit.verify_chain()).valid is True


@pytest.mark.asyncio
async def test_audit_outage_batch_keeps_submission_order(agent, audit, audit_store, targets):
    targets.put(_dashboard())
    audit_store.available = False

    results = await agent.submit_batch([_leak_event() for _ in range(3)])
    assert [r.stage for r in results] == [PipelineStage.APPLIED] * 3
    assert audit.buffered == 15

    audit_store.available = True
    assert await audit.flush() == 15
    entries = await agent.query_audit_log(AuditQuery())
    assert len(entries) == 15

    first_seen = []
    for entry in entries:
        if entry.issue_id not in first_seen:
            first_seen.append(entry.issue_id)
    assert first_seen == [r.issue.id for r in results]
    for result in results:
        own = await _entries(agent, result.issue.id)
        assert [e.id for e in own] == result.entry_ids
        assert _stages(own) == [
            PipelineStage.CLASSIFIED,
            PipelineStage.AUTO_ELIGIBLE,
            PipelineStage.GATED,
            PipelineStage.SANDBOXED,
            PipelineStage.APPLIED,
        ]
    assert (await audit.verify_chain()).valid is True


@pytest.mark.asyncio
async def test_audit_overflow_halts_live_healing(targets, tickets, tmp_path):
    store = InMemoryAuditStore()
    audit = AuditLogger(store, buffer_size=2, write_timeout=1.0, fallback_path=str(tmp_path / "fallback.jsonl"))
    agent = build_agent_brain(audit=audit, targets=targets, tickets=tickets)
    original = targets.get(COMMENT_VIEW).content

    store.available = False
    result = await agent.submit_issue_event(_xss_event())
    assert result.stage == PipelineStage.FAILED
    assert result.reason.startswith("audit halted")
    assert audit.halted is True

    # 存储恢复后仍保持 halted，直到运维确认
    store.available = True
    await audit.flush()
    result = await agent.submit_issue_event(_xss_event())
    assert result.stage == PipelineStage.FAILED
    assert targets.get(COMMENT_VIEW).content == original

    audit.resume()
    result = await agent.submit_issue_event(_xss_event())
    assert result.stage == PipelineStage.APPLIED


# ── 策略与状态 ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reload_policy_extends_denylist(agent):
    previous = agent.reload_policy(GuardianPolicy(version=2, denylist=["sanitize_unsafe_input"]))
    assert previous.version == 1
    assert agent.policy.version == 2

    result = await agent.submit_issue_event(_xss_event())
    assert result.stage == PipelineStage.REJECTED

    with pytest.raises(PolicyVersionError):
        agent.reload_policy(GuardianPolicy(version=2))


@pytest.mark.asyncio
async def test_status(agent):
    await agent.submit_issue_event(_xss_event())
    status = agent.status()
    assert status["policy_version"] == 1
    assert status["metrics"]["issues_detected"] == 1
    assert status["audit"]["sequence"] == 5
    assert status["circuits"][0]["name"] == f"live:{COMMENT_VIEW}"
    assert "sanitize_unsafe_input" in status["strategies"]
