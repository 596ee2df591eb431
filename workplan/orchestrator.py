"""Top-level scheduler for work plan execution.

Walks milestones in index order and tasks in dependency order, drives the
review/fix loop at the configured granularity, persists progress after
every step, and hands escalations to a human decision provider.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Literal

from opentelemetry import trace

from workplan import telemetry
from workplan.collaborators import Fixer, Reviewer, Worker
from workplan.config import OrchestratorConfig
from workplan.dependency_resolver import order_tasks
from workplan.errors import RunCancelled, TaskBlockedError
from workplan.escalation import DecisionProvider, EscalationGate
from workplan.issue_ledger import IssueLedger
from workplan.models import (
    EscalationReport,
    Granularity,
    HumanDecision,
    Milestone,
    MilestoneStatus,
    Plan,
    Task,
    TaskStatus,
)
from workplan.plan_store import (
    DecisionApplied,
    MilestoneUpdate,
    PlanAbandoned,
    TaskUpdate,
    WorkPlanStore,
)
from workplan.review_loop import LoopOutcome, LoopState, ReviewLoopController

logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "blocked", "needs_human", "abandoned", "cancelled"]


@dataclass
class RunResult:
    """Result of an orchestrator run.

    Status values:
        completed: Every milestone is complete
        blocked: A milestone cannot finish because tasks are blocked
        needs_human: An escalation is waiting for a human decision
        abandoned: An operator abandoned the plan
        cancelled: Cancellation was requested; the run can be resumed
    """

    status: RunStatus
    plan: Plan
    escalations: list[EscalationReport] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    completed_tasks: int = 0
    total_tasks: int = 0
    duration_seconds: float = 0.0


class Orchestrator:
    """Executes a plan with one review/fix controller parameterized by granularity.

    The orchestrator is the only writer of the plan: every state change is
    routed through WorkPlanStore.persist(). Collaborator calls are awaited
    one at a time.
    """

    def __init__(
        self,
        store: WorkPlanStore,
        worker: Worker,
        reviewer: Reviewer,
        fixer: Fixer,
        config: OrchestratorConfig | None = None,
        granularity: Granularity | None = None,
        decision_provider: DecisionProvider | None = None,
        tracer: trace.Tracer | None = None,
        cancel_event: asyncio.Event | None = None,
        on_task_complete: Callable[[Task], None] | None = None,
        on_milestone_complete: Callable[[Milestone], None] | None = None,
        on_escalation: Callable[[EscalationReport], None] | None = None,
        on_blocked: Callable[[Task, str], None] | None = None,
    ) -> None:
        self.store = store
        self.config = config or OrchestratorConfig()
        self.granularity = granularity or self.config.granularity
        self.decision_provider = decision_provider
        self.tracer = tracer or trace.get_tracer("workplan")
        self.cancel_event = cancel_event or asyncio.Event()
        self.on_task_complete = on_task_complete
        self.on_milestone_complete = on_milestone_complete
        self.on_escalation = on_escalation
        self.on_blocked = on_blocked

        self.ledger = IssueLedger()
        self.gate = EscalationGate(
            strike_threshold=self.config.strike_threshold,
            max_cycles=self.config.max_review_cycles,
        )
        self.controller = ReviewLoopController(
            worker,
            reviewer,
            fixer,
            self.ledger,
            self.gate,
            store,
            tracer=self.tracer,
            cancel_event=self.cancel_event,
        )

        self._escalations: dict[str, EscalationReport] = {}
        self._blocked: dict[str, str] = {}

    def request_cancel(self) -> None:
        """Ask the run to stop at the next cycle boundary."""
        self.cancel_event.set()

    async def run(self, plan: Plan) -> RunResult:
        """Execute the plan from its current persisted state.

        Args:
            plan: Plan from WorkPlanStore.load() or WorkPlanStore.resume()

        Returns:
            RunResult describing where execution stopped and why

        Raises:
            CycleError: If a milestone's dependencies form a cycle
        """
        start_time = time.time()
        self._escalations = {}
        self._blocked = {}
        status: RunStatus = "completed"

        with self.tracer.start_as_current_span("workplan.run") as run_span:
            run_span.set_attribute("plan.id", plan.plan_id)
            run_span.set_attribute("plan.granularity", self.granularity.value)
            run_span.set_attribute("plan.total_tasks", len(plan.all_tasks()))

            try:
                if not plan.abandoned:
                    self._apply_pending_decisions(plan)

                if plan.abandoned:
                    status = "abandoned"
                else:
                    for milestone in plan.milestones:
                        if milestone.status == MilestoneStatus.COMPLETE:
                            continue
                        status = await self._run_milestone(plan, milestone)
                        if status != "completed":
                            break
            except RunCancelled:
                logger.warning(
                    f"Run of {plan.plan_id} cancelled; progress is persisted and resumable"
                )
                status = "cancelled"

            run_span.set_attribute("plan.status", status)

        result = RunResult(
            status=status,
            plan=plan,
            escalations=list(self._escalations.values()),
            blocked=dict(self._blocked),
            completed_tasks=sum(
                1 for t in plan.all_tasks() if t.status == TaskStatus.COMPLETE
            ),
            total_tasks=len(plan.all_tasks()),
            duration_seconds=time.time() - start_time,
        )
        logger.info(
            f"Run of {plan.plan_id} finished: {status} "
            f"({result.completed_tasks}/{result.total_tasks} tasks complete)"
        )
        return result

    # -------------------------------------------------------------------------
    # Milestones
    # -------------------------------------------------------------------------

    async def _run_milestone(self, plan: Plan, milestone: Milestone) -> RunStatus:
        with self.tracer.start_as_current_span("workplan.milestone") as span:
            span.set_attribute("milestone.index", milestone.index)
            span.set_attribute("milestone.total_tasks", len(milestone.tasks))

            if milestone.status == MilestoneStatus.ESCALATED and milestone.escalation:
                # Frozen until a human decides
                self._escalations[milestone.key] = milestone.escalation
                span.set_attribute("milestone.status", "needs_human")
                return "needs_human"

            ordered = order_tasks(milestone.tasks)

            if milestone.status in (MilestoneStatus.PENDING, MilestoneStatus.ESCALATED):
                self.store.persist(
                    plan, MilestoneUpdate(milestone.index, MilestoneStatus.IN_PROGRESS)
                )
            logger.info(f"Milestone {milestone.index}: {milestone.title}")

            for task in ordered:
                self.controller.check_cancelled()
                await self._run_task(plan, task)
                if plan.abandoned:
                    span.set_attribute("milestone.status", "abandoned")
                    return "abandoned"

            status = await self._finish_milestone(plan, milestone)
            span.set_attribute("milestone.status", status)
            return status

    async def _finish_milestone(self, plan: Plan, milestone: Milestone) -> RunStatus:
        incomplete = [t for t in milestone.tasks if t.status != TaskStatus.COMPLETE]
        if incomplete:
            if any(t.status == TaskStatus.ESCALATED for t in incomplete):
                self.store.persist(
                    plan, MilestoneUpdate(milestone.index, MilestoneStatus.ESCALATED)
                )
                return "needs_human"
            return "blocked"

        if self.granularity.reviews_milestones:
            return await self._review_milestone(plan, milestone)

        self._complete_milestone(plan, milestone)
        return "completed"

    async def _review_milestone(self, plan: Plan, milestone: Milestone) -> RunStatus:
        """Second pass over the finished milestone for cross-task issues."""
        if milestone.status != MilestoneStatus.REVIEWING:
            self.store.persist(
                plan, MilestoneUpdate(milestone.index, MilestoneStatus.REVIEWING)
            )

        while True:
            self.controller.check_cancelled()
            outcome = await self.controller.run(plan, milestone)
            if outcome.state == LoopState.DONE:
                self._complete_milestone(plan, milestone)
                return "completed"

            decision = await self._escalate(plan, milestone, outcome)
            if decision is None:
                return "needs_human"
            if decision == HumanDecision.ABANDON:
                return "abandoned"
            if decision == HumanDecision.RESOLVE:
                return "completed"

    def _complete_milestone(self, plan: Plan, milestone: Milestone) -> None:
        self.ledger.clear(milestone.key)
        self.store.persist(plan, MilestoneUpdate(milestone.index, MilestoneStatus.COMPLETE))
        logger.info(f"Milestone {milestone.index} complete")
        if self.on_milestone_complete is not None:
            self.on_milestone_complete(milestone)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    async def _run_task(self, plan: Plan, task: Task) -> None:
        if task.status == TaskStatus.COMPLETE:
            return

        if task.status == TaskStatus.ESCALATED:
            if task.escalation is not None:
                self._escalations[task.key] = task.escalation
            return

        unmet = [
            str(dep) for dep in task.blocked_by if plan.task(dep).status != TaskStatus.COMPLETE
        ]
        if unmet:
            self._block(plan, task, f"waiting on {', '.join(unmet)}")
            return

        start_time = time.time()
        with self.tracer.start_as_current_span("workplan.task") as span:
            span.set_attribute("task.id", task.key)
            span.set_attribute("task.title", task.title)
            span.set_attribute("task.type", task.work_type.value)

            try:
                while True:
                    outcome = await self._execute_task(plan, task)
                    if outcome.state == LoopState.DONE:
                        self._complete_task(plan, task, start_time)
                        break

                    decision = await self._escalate(plan, task, outcome)
                    if decision != HumanDecision.OVERRIDE:
                        break
            except TaskBlockedError as e:
                self._block(plan, task, e.reason)

            span.set_attribute("task.status", task.status.value)

    async def _execute_task(self, plan: Plan, task: Task) -> LoopOutcome:
        if self.granularity.reviews_tasks:
            return await self.controller.run(plan, task)

        # Milestone-only review: the task is done once the worker succeeds
        if task.status != TaskStatus.AWAITING_REVIEW:
            await self.controller.dispatch(plan, task)
        return LoopOutcome(
            target=task.key,
            state=LoopState.DONE,
            cycles=0,
            evidence=task.evidence,
            commit_id=task.commit_id,
        )

    def _complete_task(self, plan: Plan, task: Task, start_time: float) -> None:
        self.ledger.clear(task.key)
        self.store.persist(plan, TaskUpdate(task.id, TaskStatus.COMPLETE))

        duration = time.time() - start_time
        telemetry.record("tasks_counter", 1, {"status": TaskStatus.COMPLETE.value})
        telemetry.record("task_duration", duration, {"plan": plan.plan_id})
        logger.info(f"Task {task.id} complete ({duration:.0f}s)")

        if self.on_task_complete is not None:
            self.on_task_complete(task)

    def _block(self, plan: Plan, task: Task, reason: str) -> None:
        self.store.persist(
            plan, TaskUpdate(task.id, TaskStatus.BLOCKED, blocked_reason=reason)
        )
        self._blocked[task.key] = reason
        telemetry.record("blocked_counter", 1, {"plan": plan.plan_id})
        logger.warning(f"Task {task.id} blocked: {reason}")

        if self.on_blocked is not None:
            self.on_blocked(task, reason)

    # -------------------------------------------------------------------------
    # Escalation
    # -------------------------------------------------------------------------

    async def _escalate(
        self, plan: Plan, target: Task | Milestone, outcome: LoopOutcome
    ) -> HumanDecision | None:
        """Freeze an escalated target and ask for a decision if anyone can answer.

        Returns:
            The applied decision, or None if the target stays escalated
        """
        report = outcome.report
        if report is None:
            raise ValueError(f"{target.key} escalated without a report")

        with self.tracer.start_as_current_span("workplan.escalation") as span:
            span.set_attribute("target.key", target.key)
            span.set_attribute("escalation.reason", report.reason)
            span.set_attribute("escalation.issue", report.issue.description[:200])

            if isinstance(target, Task):
                self.store.persist(
                    plan, TaskUpdate(target.id, TaskStatus.ESCALATED, escalation=report)
                )
                telemetry.record("tasks_counter", 1, {"status": TaskStatus.ESCALATED.value})
            else:
                self.store.persist(
                    plan,
                    MilestoneUpdate(
                        target.index, MilestoneStatus.ESCALATED, escalation=report
                    ),
                )
            self.ledger.clear(target.key)
            self._escalations[target.key] = report
            telemetry.record("escalations_counter", 1, {"target": target.key})

            if self.on_escalation is not None:
                self.on_escalation(report)

            if self.decision_provider is None:
                span.set_attribute("escalation.decision", "pending")
                return None

            start_time = time.time()
            decision = await self.decision_provider.decide(report)
            span.set_attribute("escalation.wait_seconds", time.time() - start_time)
            span.set_attribute("escalation.decision", decision.value)

        self._apply_decision(plan, target.key, decision)
        return decision

    def _apply_pending_decisions(self, plan: Plan) -> None:
        """Apply decisions recorded (e.g. via the CLI) since the last run."""
        for key, decision in list(plan.decisions.items()):
            target = plan.target(key)
            frozen = (
                target.status == TaskStatus.ESCALATED
                if isinstance(target, Task)
                else target.status == MilestoneStatus.ESCALATED
                and target.escalation is not None
            )
            if not frozen:
                logger.warning(f"Ignoring decision for {key}: target is not escalated")
                self.store.persist(plan, DecisionApplied(key))
                continue
            self._apply_decision(plan, key, decision)
            if plan.abandoned:
                return

    def _apply_decision(self, plan: Plan, key: str, decision: HumanDecision) -> None:
        target = plan.target(key)
        self.ledger.clear(key)
        logger.info(f"Applying decision for {key}: {decision.value}")

        if decision == HumanDecision.OVERRIDE:
            next_round = target.review_round + 1
            if isinstance(target, Task):
                self.store.persist(
                    plan,
                    TaskUpdate(
                        target.id, TaskStatus.AWAITING_REVIEW, review_round=next_round
                    ),
                )
            else:
                self.store.persist(
                    plan,
                    MilestoneUpdate(
                        target.index, MilestoneStatus.REVIEWING, review_round=next_round
                    ),
                )
            self._escalations.pop(key, None)

        elif decision == HumanDecision.RESOLVE:
            evidence = {**target.evidence, "resolved_by": "human"}
            if isinstance(target, Task):
                self.store.persist(
                    plan, TaskUpdate(target.id, TaskStatus.COMPLETE, evidence=evidence)
                )
            else:
                self.store.persist(
                    plan,
                    MilestoneUpdate(
                        target.index, MilestoneStatus.COMPLETE, evidence=evidence
                    ),
                )
                if self.on_milestone_complete is not None:
                    self.on_milestone_complete(target)
            self._escalations.pop(key, None)

        else:
            if isinstance(target, Task):
                milestone = plan.milestone(target.id.milestone)
                self.store.persist(
                    plan, MilestoneUpdate(milestone.index, MilestoneStatus.ESCALATED)
                )
            self.store.persist(plan, PlanAbandoned(f"{key} abandoned by operator"))

        if key in plan.decisions:
            self.store.persist(plan, DecisionApplied(key))
