"""Shared error types for the workplan package.

Structural errors (MalformedPlanError, CycleError) abort a run. Per-target
errors (TaskBlockedError, EscalationRequired) are contained to the affected
branch of the dependency graph and reported in the run summary.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from workplan.models import EscalationReport


class OrchestratorError(Exception):
    """Base exception for orchestrator errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class MalformedPlanError(OrchestratorError):
    """The persisted plan cannot be executed as written.

    Raised for dangling dependency references, asymmetric blocked_by/blocks
    pairs, duplicate task ids and unreadable plan documents.
    """

    pass


class CycleError(OrchestratorError):
    """The task dependency graph is not a DAG.

    Attributes:
        members: Ids of the tasks forming one concrete cycle, in the order
            the cycle is walked.
    """

    def __init__(self, members: list[str]) -> None:
        self.members = members
        chain = " -> ".join([*members, members[0]]) if members else "?"
        super().__init__(f"Dependency cycle detected: {chain}")


class TaskBlockedError(OrchestratorError):
    """The worker cannot complete a task.

    Covers prerequisites that cannot be expressed as a dependency edge
    (missing credentials, unavailable service, ...).
    """

    def __init__(self, task_id: str, reason: str) -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} blocked: {reason}")


class ReviewToolingMissingError(OrchestratorError):
    """The reviewer could not run its verification tooling.

    Never escapes the review loop: it is folded into the issue stream as a
    Critical issue.
    """

    def __init__(self, tool: str, detail: str = "") -> None:
        self.tool = tool
        self.detail = detail
        message = f"Verification tooling unavailable: {tool}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class EscalationRequired(OrchestratorError):
    """The escalation gate fired for a target."""

    def __init__(self, report: "EscalationReport") -> None:
        self.report = report
        super().__init__(
            f"{report.target}: '{report.issue.description}' persisted for "
            f"{report.persistence_count} review cycles"
        )


class PlanStateNotFoundError(OrchestratorError):
    """No persisted state exists for the requested plan."""

    pass


class RunCancelled(OrchestratorError):
    """Cancellation was requested and observed at a cycle boundary."""

    pass


class CollaboratorError(OrchestratorError):
    """A command-backed collaborator failed to produce a usable result."""

    pass


class PlanLockedError(OrchestratorError):
    """Another live process holds the lock for this plan."""

    def __init__(self, plan_id: str, holder_pid: int | None) -> None:
        self.plan_id = plan_id
        self.holder_pid = holder_pid
        super().__init__(f"Plan {plan_id} is already running (PID: {holder_pid})")
