"""Interfaces for the external collaborators the orchestrator drives.

Collaborators receive frozen snapshots (TaskSpec, ReviewTarget) and return
results; they never mutate the plan. Calls are awaited one at a time.
"""

from typing import Any, Protocol

from workplan.models import Issue, ReviewReport, ReviewTarget, TaskSpec, WorkResult


class Worker(Protocol):
    """Implements one task.

    Raises TaskBlockedError when a prerequisite that is not expressible as a
    dependency edge is missing.
    """

    async def implement(self, task: TaskSpec) -> WorkResult: ...


class Reviewer(Protocol):
    """Audits a task or milestone and returns categorized issues.

    Raises ReviewToolingMissingError when its verification tooling cannot
    run; any other outcome must be a ReviewReport.
    """

    async def review(
        self, target: ReviewTarget, evidence: dict[str, Any]
    ) -> ReviewReport: ...


class Fixer(Protocol):
    """Applies corrections for every issue passed (never a subset)."""

    async def fix(self, target: ReviewTarget, issues: list[Issue]) -> WorkResult: ...
