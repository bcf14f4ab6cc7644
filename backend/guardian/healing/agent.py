"""
AgentBrain：自愈流水线编排器。

事件 → 分类 → 安全校验 → 限流/熔断闸门 → 沙箱 → 实时执行或人工审批 → 审计。
每次状态迁移写且只写一条 AuditEntry，parent_id 指向同一 Issue 的上一条。
流水线内的任何异常都转成终态审计记录，不会传播到宿主应用。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, NamedTuple, Optional

from pydantic import BaseModel

from guardian.core.config import GuardianPolicy, PolicyStore, settings
from guardian.core.exceptions import (
    AuditBufferOverflowError,
    CircuitOpenError,
    ConflictError,
    NotFoundError,
    StrategyExecutionError,
)
from guardian.core.logging import get_logger, redact_text
from guardian.healing.analyzer import IssueAnalyzer
from guardian.healing.circuit_breaker import CircuitBreakerRegistry
from guardian.healing.models import (
    ActionStatus,
    ApplyResult,
    AuditEntry,
    AuditOutcome,
    AuditQuery,
    HealingAction,
    Issue,
    PipelineResult,
    PipelineStage,
    RawEvent,
    SafetyDecision,
    TargetSnapshot,
    TestResult,
    utcnow,
)
from guardian.healing.rate_limiter import RateLimiter
from guardian.healing.registry import StrategyRegistry, build_default_registry
from guardian.healing.requeue import ThrottledQueue
from guardian.healing.safety import SafetyValidator
from guardian.healing.sandbox import SandboxExecutor
from guardian.healing.signatures import SignatureCatalog
from guardian.healing.strategies import HealingStrategy
from guardian.healing.targets import TargetStore
from guardian.services.audit import AuditLogger
from guardian.services.review_tickets import ReviewTicket, ReviewTicketStore, TicketStatus

logger = get_logger(__name__)


class AgentMetrics(BaseModel):
    issues_detected: int = 0
    issues_healed: int = 0
    review_pending: int = 0
    rejected: int = 0
    throttled: int = 0
    failed: int = 0
    approvals: int = 0


class _PolicyView(NamedTuple):
    """一次流水线使用的策略快照，整体替换。"""
    policy: GuardianPolicy
    analyzer: IssueAnalyzer
    validator: SafetyValidator


@dataclass
class _Trail:
    """单个 Issue 的审计游标。"""
    issue: Issue
    parent_id: Optional[str] = None
    stage: PipelineStage = PipelineStage.CLASSIFIED
    entry_ids: list[str] = field(default_factory=list)

    def advance(self, entry_id: str, stage: PipelineStage) -> None:
        self.parent_id = entry_id
        self.stage = stage
        self.entry_ids.append(entry_id)


class _LiveOutcome(NamedTuple):
    stage: PipelineStage
    outcome: AuditOutcome
    reason: str


def redacted_issue(issue: Issue) -> Issue:
    """审计快照和工单中保存的 Issue：上下文里的消息和堆栈先脱敏。"""
    ctx = issue.context
    clean = ctx.model_copy(update={
        "message": redact_text(ctx.message),
        "stack": redact_text(ctx.stack) if ctx.stack else ctx.stack,
    })
    return issue.model_copy(update={"context": clean})


class AgentBrain:
    """自愈 Agent。

    主流程：Event → Classify → Validate → Gate → Sandbox → Apply / Review → Audit。
    """

    def __init__(
        self,
        *,
        registry: StrategyRegistry,
        audit: AuditLogger,
        targets: TargetStore,
        tickets: ReviewTicketStore,
        policy_store: Optional[PolicyStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        sandbox: Optional[SandboxExecutor] = None,
        throttled: Optional[ThrottledQueue] = None,
        id_factory: Optional[Callable[[], str]] = None,
        live_timeout: Optional[float] = None,
    ) -> None:
        self.policy_store = policy_store or PolicyStore()
        policy = self.policy_store.current
        self.registry = registry
        self.audit = audit
        self.targets = targets
        self.tickets = tickets
        self.rate_limiter = rate_limiter or RateLimiter(policy.default_rate_limit, policy.strategy_rate_limits)
        self.breakers = breakers or CircuitBreakerRegistry(policy.breaker)
        self.sandbox = sandbox or SandboxExecutor(registry)
        self.throttled = throttled or ThrottledQueue(policy.throttled_ttl_seconds, policy.throttled_queue_size)
        self.live_timeout = live_timeout if live_timeout is not None else settings.live_apply_timeout
        self.metrics = AgentMetrics()
        self._id_factory = id_factory
        self._resolving: set[str] = set()
        self._view = self._build_view(policy)

    def _build_view(self, policy: GuardianPolicy) -> _PolicyView:
        catalog = SignatureCatalog.from_specs(policy.signatures)
        return _PolicyView(
            policy=policy,
            analyzer=IssueAnalyzer(catalog, id_factory=self._id_factory),
            validator=SafetyValidator(policy, self.registry.keys()),
        )

    @property
    def policy(self) -> GuardianPolicy:
        return self._view.policy

    @property
    def analyzer(self) -> IssueAnalyzer:
        return self._view.analyzer

    @property
    def validator(self) -> SafetyValidator:
        return self._view.validator

    # ------------------------------------------------------------------
    # 入口 (Entry points)
    # ------------------------------------------------------------------

    async def submit_issue_event(self, raw: RawEvent) -> PipelineResult:
        """主入口：端到端处理一个原始事件。永不抛出异常。"""
        view = self._view
        issue = view.analyzer.analyze(raw)
        self.metrics.issues_detected += 1
        logger.info("Handling issue: %s", issue.summary())
        return await self._process(issue, view)

    async def submit_batch(self, raws: Iterable[RawEvent]) -> list[PipelineResult]:
        """每个事件一个并发任务，互不影响。"""
        return list(await asyncio.gather(*(self.submit_issue_event(raw) for raw in raws)))

    async def resolve_approval(
        self,
        issue_id: str,
        approve: bool,
        approver_id: str,
        note: str = "",
    ) -> PipelineResult:
        """人工审批回调：通过则沙箱复测后实时执行，拒绝则记为 rejected。"""
        if issue_id in self._resolving:
            raise ConflictError(f"Issue {issue_id} is already being resolved")
        self._resolving.add(issue_id)
        try:
            ticket = await self.tickets.get_by_issue(issue_id)
            if ticket is None:
                raise NotFoundError(f"No review ticket for issue {issue_id}")
            if not ticket.is_open:
                raise ConflictError(f"Review ticket for issue {issue_id} is already {ticket.status.value}")
            return await self._resolve(ticket, approve, approver_id, note)
        finally:
            self._resolving.discard(issue_id)

    async def query_audit_log(self, query: AuditQuery) -> list[AuditEntry]:
        return await self.audit.query(query)

    async def retry_throttled(self) -> list[PipelineResult]:
        """重新分类并处理被限流挡下、仍在 TTL 内的 Issue。"""
        due, expired = self.throttled.take()
        for item in expired:
            logger.info(
                "Throttled issue %s expired after %d attempt(s), dropping",
                item.issue.id, item.attempts,
            )
        results = []
        for item in due:
            view = self._view
            issue = view.analyzer.reanalyze(item.issue)
            result = await self._process(issue, view)
            if result.outcome != AuditOutcome.THROTTLED:
                self.throttled.forget(issue.correlation_id)
            results.append(result)
        return results

    def reload_policy(self, policy: GuardianPolicy) -> GuardianPolicy:
        """整体替换运行策略，版本号必须递增。返回旧策略。"""
        previous = self.policy_store.swap(policy)
        view = self._build_view(policy)
        self.rate_limiter.update_policy(policy.default_rate_limit, policy.strategy_rate_limits)
        self.breakers.update_policy(policy.breaker)
        self.throttled.ttl_seconds = policy.throttled_ttl_seconds
        self.throttled.max_size = policy.throttled_queue_size
        self._view = view
        return previous

    def status(self) -> dict[str, Any]:
        return {
            "policy_version": self.policy.version,
            "metrics": self.metrics.model_dump(),
            "audit": self.audit.status(),
            "throttled_queue": len(self.throttled),
            "circuits": [s.as_dict() for s in self.breakers.snapshot()],
            "strategies": sorted(self.registry.keys()),
        }

    # ------------------------------------------------------------------
    # 流水线 (Pipeline)
    # ------------------------------------------------------------------

    async def _process(self, issue: Issue, view: _PolicyView) -> PipelineResult:
        trail = _Trail(issue)
        try:
            return await self._run_pipeline(trail, view)
        except AuditBufferOverflowError as e:
            logger.critical("Audit buffer overflow while handling issue %s: %s", issue.id, e.detail)
            self.metrics.failed += 1
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, reason=f"audit halted: {e.message}")
        except Exception as e:
            logger.exception("Pipeline fault for issue %s", issue.id)
            self.metrics.failed += 1
            try:
                await self._audit(trail, PipelineStage.FAILED, AuditOutcome.FAILED, detail=f"pipeline fault: {e}")
            except AuditBufferOverflowError:
                logger.critical("Could not audit pipeline fault for issue %s, audit halted", issue.id)
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, reason=f"pipeline fault: {e}")

    async def _run_pipeline(self, trail: _Trail, view: _PolicyView) -> PipelineResult:
        issue = trail.issue

        # Step 1: 分类
        await self._audit(
            trail, PipelineStage.CLASSIFIED, AuditOutcome.SUCCESS,
            detail=f"signature={issue.signature_id} severity={issue.severity.value}",
        )

        # Step 2: 安全校验
        strategy_name, decision = self._choose_strategy(issue, view.validator)
        if strategy_name is None or not decision.allowed:
            await self._audit(
                trail, PipelineStage.REJECTED, AuditOutcome.BLOCKED,
                strategy=strategy_name, decision=decision, detail=decision.reason,
            )
            self.metrics.rejected += 1
            logger.info("Issue %s rejected: %s", issue.id, decision.reason)
            return self._result(trail, PipelineStage.REJECTED, AuditOutcome.BLOCKED, strategy_name, reason=decision.reason)

        strategy = self.registry[strategy_name]
        target = await self.targets.snapshot(strategy.target_resource(issue))
        action = strategy.propose(issue, target)

        if decision.requires_approval:
            await self._audit(
                trail, PipelineStage.NEEDS_APPROVAL, AuditOutcome.PENDING,
                action=action, decision=decision, before_digest=target.digest(), detail=decision.reason,
            )
            ticket = await self._open_ticket(trail, action, decision.reason)
            return self._result(
                trail, PipelineStage.NEEDS_APPROVAL, AuditOutcome.PENDING, strategy_name,
                action=action, ticket=ticket, reason=decision.reason,
            )

        await self._audit(
            trail, PipelineStage.AUTO_ELIGIBLE, AuditOutcome.SUCCESS,
            action=action, decision=decision, detail=decision.reason,
        )

        # Step 3: 限流 + 熔断闸门
        passed, reason, gated = self._gate(strategy_name, action.payload.resource, decision)
        if not passed:
            await self._audit(
                trail, PipelineStage.GATED, AuditOutcome.THROTTLED,
                action=action, decision=gated, detail=reason,
            )
            self.throttled.push(issue)
            self.metrics.throttled += 1
            logger.info("Issue %s throttled: %s", issue.id, reason)
            return self._result(trail, PipelineStage.GATED, AuditOutcome.THROTTLED, strategy_name, action=action, reason=reason)
        await self._audit(trail, PipelineStage.GATED, AuditOutcome.SUCCESS, action=action, decision=gated, detail=reason)

        # Step 4: 沙箱
        test = await self.sandbox.test(action, target)
        if not test.passed:
            reason = "sandbox failed: " + "; ".join(test.errors)
            await self._audit_sandbox(trail, action, test)
            await self._audit(
                trail, PipelineStage.REVIEW_PENDING, AuditOutcome.PENDING,
                action=action, detail=reason,
            )
            ticket = await self._open_ticket(trail, action, reason, test)
            return self._result(
                trail, PipelineStage.REVIEW_PENDING, AuditOutcome.PENDING, strategy_name,
                action=action, ticket=ticket, reason=reason,
            )
        action.transition(ActionStatus.SANDBOX_TESTED)
        await self._audit_sandbox(trail, action, test)

        # Step 5: 实时执行
        live = await self._apply_live(trail, action, actor="agent", on_circuit_open=PipelineStage.REVIEW_PENDING)
        ticket = None
        if live.stage == PipelineStage.REVIEW_PENDING:
            ticket = await self._open_ticket(trail, action, live.reason, test)
        return self._result(trail, live.stage, live.outcome, strategy_name, action=action, ticket=ticket, reason=live.reason)

    def _choose_strategy(
        self, issue: Issue, validator: SafetyValidator
    ) -> tuple[Optional[str], SafetyDecision]:
        """按候选顺序返回第一个被允许的策略；全部被拒时返回第一个拒绝。"""
        if not issue.candidate_strategies:
            return None, SafetyDecision(
                allowed=False,
                reason=f"No healing strategy known for signature '{issue.signature_id}'",
                rule="no_candidate",
            )
        first_denial: Optional[tuple[str, SafetyDecision]] = None
        for name in issue.candidate_strategies:
            decision = validator.validate(issue, name)
            if decision.allowed:
                return name, decision
            if first_denial is None:
                first_denial = (name, decision)
        return first_denial

    def _gate(
        self, strategy: str, resource: str, decision: SafetyDecision
    ) -> tuple[bool, str, SafetyDecision]:
        breaker = self.breakers.get(f"live:{resource}")
        if not breaker.allows_call():
            snap = self.rate_limiter.snapshot(strategy)
            return False, f"circuit '{breaker.name}' is {breaker.state.value}", decision.model_copy(update={"rate_limit": snap})
        acquired = self.rate_limiter.acquire(strategy)
        snap = self.rate_limiter.snapshot(strategy)
        gated = decision.model_copy(update={"rate_limit": snap})
        if not acquired:
            return False, f"rate limit {snap.limit}/{snap.window_seconds:g}s reached for {strategy}", gated
        return True, "rate limit and circuit passed", gated

    async def _apply_live(
        self,
        trail: _Trail,
        action: HealingAction,
        actor: str,
        on_circuit_open: PipelineStage,
    ) -> _LiveOutcome:
        """通过熔断器实时执行动作；失败时按策略声明回滚。"""
        if self.audit.halted:
            raise AuditBufferOverflowError("Audit logger halted", "live healing refused until audit recovers")

        strategy = self.registry.for_action(action)
        resource = action.payload.resource
        breaker = self.breakers.get(f"live:{resource}")
        before = await self.targets.snapshot(resource)

        try:
            applied = await breaker.call(self._execute, strategy, action, before, timeout=self.live_timeout)
        except CircuitOpenError as e:
            reason = f"circuit '{e.name}' opened before live apply"
            outcome = AuditOutcome.PENDING if on_circuit_open == PipelineStage.REVIEW_PENDING else AuditOutcome.FAILED
            if on_circuit_open == PipelineStage.FAILED:
                action.transition(ActionStatus.FAILED)
                self.metrics.failed += 1
            await self._audit(trail, on_circuit_open, outcome, action=action, actor=actor, detail=reason)
            return _LiveOutcome(on_circuit_open, outcome, reason)
        except asyncio.TimeoutError:
            return await self._fail_live(trail, strategy, action, before, actor, f"live apply exceeded {self.live_timeout}s")
        except Exception as e:
            return await self._fail_live(trail, strategy, action, before, actor, f"live apply raised {type(e).__name__}: {e}")

        action.transition(ActionStatus.EXECUTED)
        detail = "; ".join(applied.notes) or "target already healthy, no change"
        await self._audit(
            trail, PipelineStage.APPLIED, AuditOutcome.SUCCESS,
            action=action, actor=actor,
            before_digest=before.digest(), after_digest=applied.target.digest(),
            detail=f"{detail}; rollback: {action.rollback.description}",
        )
        self.metrics.issues_healed += 1
        logger.info("Issue %s healed by %s (actor=%s)", trail.issue.id, action.strategy, actor)
        return _LiveOutcome(PipelineStage.APPLIED, AuditOutcome.SUCCESS, detail)

    async def _execute(
        self, strategy: HealingStrategy, action: HealingAction, before: TargetSnapshot
    ) -> ApplyResult:
        result = await asyncio.to_thread(strategy.apply, action, before)
        if result.changed:
            await self.targets.commit(result.target)
        errors = strategy.verify(action, result.target)
        if errors:
            raise StrategyExecutionError("Live verification failed", "; ".join(errors))
        return result

    async def _fail_live(
        self,
        trail: _Trail,
        strategy: HealingStrategy,
        action: HealingAction,
        before: TargetSnapshot,
        actor: str,
        reason: str,
    ) -> _LiveOutcome:
        action.transition(ActionStatus.FAILED)
        current = await self.targets.snapshot(before.resource)
        notes = [reason]
        if current.same_as(before):
            notes.append("target unchanged, no rollback needed")
        else:
            restored = strategy.rollback(action, before, current)
            if restored is None:
                notes.append(f"rollback: {action.rollback.description}")
            else:
                await self.targets.commit(restored)
                action.transition(ActionStatus.ROLLED_BACK)
                current = restored
                notes.append(f"rolled back: {action.rollback.description}")
        detail = "; ".join(notes)
        await self._audit(
            trail, PipelineStage.FAILED, AuditOutcome.FAILED,
            action=action, actor=actor,
            before_digest=before.digest(), after_digest=current.digest(), detail=detail,
        )
        self.metrics.failed += 1
        logger.error("Live apply of %s failed for issue %s: %s", action.strategy, trail.issue.id, detail)
        return _LiveOutcome(PipelineStage.FAILED, AuditOutcome.FAILED, detail)

    # ------------------------------------------------------------------
    # 审批 (Approval)
    # ------------------------------------------------------------------

    async def _resolve(self, ticket: ReviewTicket, approve: bool, approver_id: str, note: str) -> PipelineResult:
        trail = _Trail(ticket.issue, parent_id=ticket.last_entry_id)
        action = ticket.action
        if approve and self.audit.halted:
            # 不写任何阶段，工单保持 pending，运维 resume 后可重新审批
            reason = "audit halted: live healing refused until audit recovers, ticket stays pending"
            logger.critical("Approval of issue %s by %s refused, audit halted", ticket.issue_id, approver_id)
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action.strategy, action=action, ticket=ticket, reason=reason)

        try:
            return await self._run_resolution(trail, ticket, approve, approver_id, note)
        except AuditBufferOverflowError as e:
            logger.critical("Audit buffer overflow while resolving issue %s: %s", ticket.issue_id, e.detail)
            self.metrics.failed += 1
            await self._abandon_ticket(ticket, trail)
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action.strategy, action=action, ticket=ticket, reason=f"audit halted: {e.message}")
        except Exception as e:
            logger.exception("Approval fault for issue %s", ticket.issue_id)
            self.metrics.failed += 1
            try:
                await self._audit(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action=action, actor=approver_id, detail=f"approval fault: {e}")
            except AuditBufferOverflowError:
                logger.critical("Could not audit approval fault for issue %s, audit halted", ticket.issue_id)
            await self._abandon_ticket(ticket, trail)
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action.strategy, action=action, ticket=ticket, reason=f"approval fault: {e}")

    async def _run_resolution(
        self, trail: _Trail, ticket: ReviewTicket, approve: bool, approver_id: str, note: str
    ) -> PipelineResult:
        action = ticket.action
        ticket.reviewer_id = approver_id
        ticket.reviewer_note = note
        ticket.resolved_at = utcnow()

        if not approve:
            ticket.transition(TicketStatus.REJECTED)
            reason = f"rejected by {approver_id}" + (f": {note}" if note else "")
            await self._audit(trail, PipelineStage.REJECTED, AuditOutcome.BLOCKED, action=action, actor=approver_id, detail=reason)
            await self._close_ticket(ticket, trail)
            self.metrics.rejected += 1
            return self._result(trail, PipelineStage.REJECTED, AuditOutcome.BLOCKED, action.strategy, action=action, ticket=ticket, reason=reason)

        ticket.transition(TicketStatus.APPROVED)
        action.transition(ActionStatus.APPROVED)
        self.metrics.approvals += 1

        target = await self.targets.snapshot(action.payload.resource)
        test = await self.sandbox.test(action, target)
        if not test.passed:
            reason = "sandbox failed after approval: " + "; ".join(test.errors)
            await self._audit_sandbox(trail, action, test, actor=approver_id)
            action.transition(ActionStatus.FAILED)
            await self._audit(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action=action, actor=approver_id, detail=reason)
            ticket.transition(TicketStatus.FAILED)
            await self._close_ticket(ticket, trail)
            self.metrics.failed += 1
            return self._result(trail, PipelineStage.FAILED, AuditOutcome.FAILED, action.strategy, action=action, ticket=ticket, reason=reason)

        action.transition(ActionStatus.SANDBOX_TESTED)
        await self._audit_sandbox(trail, action, test, actor=approver_id)
        live = await self._apply_live(trail, action, actor=approver_id, on_circuit_open=PipelineStage.FAILED)
        ticket.transition(TicketStatus.APPLIED if live.stage == PipelineStage.APPLIED else TicketStatus.FAILED)
        await self._close_ticket(ticket, trail)
        return self._result(trail, live.stage, live.outcome, action.strategy, action=action, ticket=ticket, reason=live.reason)

    async def _open_ticket(
        self,
        trail: _Trail,
        action: HealingAction,
        reason: str,
        test: Optional[TestResult] = None,
    ) -> ReviewTicket:
        issue = trail.issue
        ticket = ReviewTicket(
            issue_id=issue.id,
            correlation_id=issue.correlation_id,
            strategy=action.strategy,
            severity=issue.severity,
            reason=reason,
            issue=redacted_issue(issue),
            action=action,
            test_result=test,
            last_entry_id=trail.parent_id,
        )
        await self.tickets.save(ticket)
        self.metrics.review_pending += 1
        logger.info("Review ticket %s opened for issue %s: %s", ticket.id, issue.id, reason)
        return ticket

    async def _close_ticket(self, ticket: ReviewTicket, trail: _Trail) -> None:
        ticket.last_entry_id = trail.parent_id
        await self.tickets.save(ticket)
        self.metrics.review_pending = max(0, self.metrics.review_pending - 1)

    async def _abandon_ticket(self, ticket: ReviewTicket, trail: _Trail) -> None:
        """审批过程出错：已批准的工单记为 failed 并关闭，尚未变更状态的工单保持 pending。"""
        if ticket.is_open:
            return
        if ticket.status == TicketStatus.APPROVED:
            ticket.transition(TicketStatus.FAILED)
        try:
            await self._close_ticket(ticket, trail)
        except Exception:
            logger.exception("Could not close review ticket %s after approval fault", ticket.id)

    # ------------------------------------------------------------------
    # 审计 (Audit)
    # ------------------------------------------------------------------

    async def _audit_sandbox(
        self, trail: _Trail, action: HealingAction, test: TestResult, actor: str = "agent"
    ) -> None:
        await self._audit(
            trail, PipelineStage.SANDBOXED,
            AuditOutcome.SUCCESS if test.passed else AuditOutcome.FAILED,
            action=action, actor=actor,
            before_digest=test.before_digest or None, after_digest=test.after_digest or None,
            detail="sandbox passed" if test.passed else "; ".join(test.errors),
        )

    async def _audit(
        self,
        trail: _Trail,
        stage: PipelineStage,
        outcome: AuditOutcome,
        *,
        strategy: Optional[str] = None,
        action: Optional[HealingAction] = None,
        decision: Optional[SafetyDecision] = None,
        before_digest: Optional[str] = None,
        after_digest: Optional[str] = None,
        actor: str = "agent",
        detail: str = "",
    ) -> AuditEntry:
        issue = trail.issue
        entry = AuditEntry(
            correlation_id=issue.correlation_id,
            issue_id=issue.id,
            parent_id=trail.parent_id,
            stage=stage,
            outcome=outcome,
            severity=issue.severity,
            category=issue.category,
            strategy=strategy or (action.strategy if action else None),
            action_id=action.id if action else None,
            issue=redacted_issue(issue).model_dump(mode="json"),
            action=action.model_dump(mode="json") if action else None,
            decision=decision.model_dump(mode="json") if decision else None,
            before_digest=before_digest,
            after_digest=after_digest,
            actor=actor,
            detail=redact_text(detail),
        )
        ack = await self.audit.record(entry)
        trail.advance(ack.entry_id, stage)
        return entry

    def _result(
        self,
        trail: _Trail,
        stage: PipelineStage,
        outcome: AuditOutcome,
        strategy: Optional[str] = None,
        *,
        action: Optional[HealingAction] = None,
        ticket: Optional[ReviewTicket] = None,
        reason: str = "",
    ) -> PipelineResult:
        return PipelineResult(
            issue=trail.issue,
            stage=stage,
            outcome=outcome,
            strategy=strategy,
            action_id=action.id if action else None,
            ticket_id=ticket.id if ticket else None,
            reason=reason,
            entry_ids=list(trail.entry_ids),
        )


def build_agent_brain(
    *,
    audit: AuditLogger,
    targets: TargetStore,
    tickets: ReviewTicketStore,
    policy: Optional[GuardianPolicy] = None,
    registry: Optional[StrategyRegistry] = None,
    **kwargs: Any,
) -> AgentBrain:
    """按策略组装 AgentBrain：注册表构造一次后显式传入。"""
    return AgentBrain(
        registry=registry or build_default_registry(),
        audit=audit,
        targets=targets,
        tickets=tickets,
        policy_store=PolicyStore(policy),
        **kwargs,
    )
