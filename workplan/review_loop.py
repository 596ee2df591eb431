"""Review/fix loop controller.

Drives one target (a task or a whole milestone) through
review -> fix -> review until the reviewer reports zero issues or the
escalation gate fires. The same controller serves every granularity; the
orchestrator decides which targets it is pointed at.

States::

    AWAITING_DISPATCH -> UNDER_REVIEW -> CLEAN -> DONE
                              |
                         HAS_ISSUES -> FIXING -> UNDER_REVIEW
                                          |
                                      ESCALATED
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opentelemetry import trace

from workplan import telemetry
from workplan.collaborators import Fixer, Reviewer, Worker
from workplan.errors import EscalationRequired, ReviewToolingMissingError, RunCancelled
from workplan.escalation import EscalationGate
from workplan.issue_ledger import IssueLedger
from workplan.models import (
    EscalationReport,
    FixAttempt,
    Issue,
    Milestone,
    Plan,
    ReviewCycle,
    ReviewReport,
    ReviewTarget,
    Severity,
    Task,
    TaskSpec,
    TaskStatus,
    WorkResult,
)
from workplan.plan_store import FixRecorded, ReviewRecorded, TaskUpdate, WorkPlanStore

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    AWAITING_DISPATCH = "awaiting_dispatch"
    UNDER_REVIEW = "under_review"
    HAS_ISSUES = "has_issues"
    FIXING = "fixing"
    CLEAN = "clean"
    DONE = "done"
    ESCALATED = "escalated"


@dataclass
class LoopOutcome:
    """Terminal result of a review/fix loop.

    Status values:
        DONE: Latest review reported zero issues
        ESCALATED: The escalation gate fired; report is set
    """

    target: str
    state: LoopState
    cycles: int
    report: EscalationReport | None = None
    evidence: dict[str, Any] = field(default_factory=dict)
    commit_id: str | None = None


class ReviewLoopController:
    """Runs the dispatch/review/fix state machine for one target at a time."""

    def __init__(
        self,
        worker: Worker,
        reviewer: Reviewer,
        fixer: Fixer,
        ledger: IssueLedger,
        gate: EscalationGate,
        store: WorkPlanStore,
        tracer: trace.Tracer | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.worker = worker
        self.reviewer = reviewer
        self.fixer = fixer
        self.ledger = ledger
        self.gate = gate
        self.store = store
        self.tracer = tracer or trace.get_tracer("workplan")
        self.cancel_event = cancel_event
        self.state = LoopState.AWAITING_DISPATCH

    def check_cancelled(self) -> None:
        """Raise RunCancelled if cancellation was requested."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled("Cancellation requested")

    async def dispatch(self, plan: Plan, task: Task) -> WorkResult:
        """Hand a task to the worker and persist its evidence.

        The task is persisted as dispatched before the call and as awaiting
        review (with evidence and commit) after it, so a crash in between
        leaves a task that resume() sends back to the worker.

        Raises:
            TaskBlockedError: If the worker cannot complete the task
        """
        self.store.persist(plan, TaskUpdate(task.id, TaskStatus.DISPATCHED))
        milestone_title = plan.milestone(task.id.milestone).title

        logger.info(f"Dispatching task {task.id}: {task.title}")
        result = await self.worker.implement(TaskSpec.from_task(task, milestone_title))

        self.store.persist(
            plan,
            TaskUpdate(
                task.id,
                TaskStatus.AWAITING_REVIEW,
                evidence=result.evidence,
                commit_id=result.commit_id,
            ),
        )
        return result

    async def run(self, plan: Plan, target: Task | Milestone) -> LoopOutcome:
        """Drive a target until it is clean or escalated.

        Args:
            plan: Plan owning the target
            target: Task (dispatched first if needed) or Milestone

        Returns:
            LoopOutcome with state DONE or ESCALATED

        Raises:
            TaskBlockedError: If the worker cannot complete the task
            RunCancelled: If cancellation is observed at a cycle boundary
        """
        key = target.key
        self.state = LoopState.AWAITING_DISPATCH

        if isinstance(target, Task) and target.status in (
            TaskStatus.PENDING,
            TaskStatus.BLOCKED,
            TaskStatus.DISPATCHED,
        ):
            await self.dispatch(plan, target)

        review_target = self._review_target(plan, target)
        self.ledger.restore(
            key,
            [copy.deepcopy(c) for c in target.reviews if c.round == target.review_round],
        )

        if self.ledger.is_clean(key):
            self.state = LoopState.CLEAN
        elif self.ledger.awaiting_fix(key):
            self.state = LoopState.FIXING
        elif self.ledger.cycle_count(key) > 0:
            # Resumed after a fix whose follow-up check never ran
            report = self.gate.check(key, self.ledger)
            if report is not None:
                return self._escalated(target, report)
            self.state = LoopState.UNDER_REVIEW
        else:
            self.state = LoopState.UNDER_REVIEW

        while True:
            if self.state == LoopState.UNDER_REVIEW:
                self.check_cancelled()
                await self._review(plan, target, review_target)
                if self.ledger.is_clean(key):
                    self.state = LoopState.CLEAN
                else:
                    self.state = LoopState.HAS_ISSUES

            elif self.state == LoopState.HAS_ISSUES:
                self.state = LoopState.FIXING

            elif self.state == LoopState.FIXING:
                await self._fix(plan, target, review_target)
                try:
                    self.gate.enforce(key, self.ledger)
                except EscalationRequired as e:
                    return self._escalated(target, e.report)
                self.state = LoopState.UNDER_REVIEW

            elif self.state == LoopState.CLEAN:
                self.state = LoopState.DONE
                cycles = self.ledger.cycle_count(key)
                logger.info(f"{key} clean after {cycles} review cycle(s)")
                return LoopOutcome(
                    target=key,
                    state=LoopState.DONE,
                    cycles=cycles,
                    evidence=copy.deepcopy(target.evidence),
                    commit_id=target.commit_id,
                )

    async def _review(
        self, plan: Plan, target: Task | Milestone, review_target: ReviewTarget
    ) -> ReviewCycle:
        key = target.key
        cycle_number = self.ledger.cycle_count(key) + 1

        with self.tracer.start_as_current_span("workplan.review_cycle") as span:
            span.set_attribute("target.key", key)
            span.set_attribute("target.kind", review_target.kind)
            span.set_attribute("review.cycle", cycle_number)

            try:
                report = await self.reviewer.review(review_target, self._evidence(target))
            except ReviewToolingMissingError as e:
                logger.warning(f"{key}: reviewer could not run ({e}); recording as critical")
                report = ReviewReport(
                    issues=[
                        Issue(
                            severity=Severity.CRITICAL,
                            location=e.tool,
                            description=f"Missing verification tooling: {e.tool}",
                        )
                    ],
                    evidence={"reviewer_error": str(e)},
                )

            cycle = self.ledger.record(
                key,
                cycle_number,
                report.issues,
                report.evidence,
                round=target.review_round,
            )
            self.store.persist(plan, ReviewRecorded(cycle))

            span.set_attribute("review.issues", len(cycle.issues))
            telemetry.record("review_cycles_counter", 1, {"target.kind": review_target.kind})
            for issue in cycle.issues:
                telemetry.record("issues_counter", 1, {"severity": issue.severity.value})

        if cycle.is_clean:
            logger.info(f"{key} review cycle {cycle_number}: clean")
        else:
            logger.info(
                f"{key} review cycle {cycle_number}: {len(cycle.issues)} issue(s) "
                f"{cycle.severity_counts()}"
            )
        return cycle

    async def _fix(
        self, plan: Plan, target: Task | Milestone, review_target: ReviewTarget
    ) -> FixAttempt:
        key = target.key
        issues = self.ledger.open_issues(key)

        logger.info(f"{key}: sending {len(issues)} issue(s) to fixer")
        result = await self.fixer.fix(review_target, copy.deepcopy(issues))

        attempt = FixAttempt(
            cycle_number=self.ledger.cycle_count(key),
            commit_id=result.commit_id,
            evidence=dict(result.evidence),
            fingerprints=list(dict.fromkeys(issue.fingerprint for issue in issues)),
        )
        self.ledger.record_fix(key, attempt)
        self.store.persist(plan, FixRecorded(key, attempt))
        return attempt

    def _escalated(self, target: Task | Milestone, report: EscalationReport) -> LoopOutcome:
        self.state = LoopState.ESCALATED
        logger.warning(
            f"{target.key} escalated: '{report.issue.description}' persisted "
            f"{report.persistence_count} cycle(s) ({report.reason})"
        )
        return LoopOutcome(
            target=target.key,
            state=LoopState.ESCALATED,
            cycles=report.cycle_count,
            report=report,
            evidence=copy.deepcopy(target.evidence),
            commit_id=target.commit_id,
        )

    @staticmethod
    def _review_target(plan: Plan, target: Task | Milestone) -> ReviewTarget:
        if isinstance(target, Milestone):
            return ReviewTarget.for_milestone(target)
        return ReviewTarget.for_task(target, plan.milestone(target.id.milestone).title)

    @staticmethod
    def _evidence(target: Task | Milestone) -> dict[str, Any]:
        if isinstance(target, Milestone):
            return {
                "milestone": copy.deepcopy(target.evidence),
                "tasks": {t.key: copy.deepcopy(t.evidence) for t in target.tasks},
            }
        return copy.deepcopy(target.evidence)
