"""Data models for the work plan orchestrator.

Defines the plan hierarchy (Plan -> Milestone -> Task), the review
bookkeeping types (Issue, ReviewCycle, FixAttempt, EscalationReport) and
the read-only snapshots handed to external collaborators. Enums are str
enums so they serialize as their plain values.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, NamedTuple


def utcnow_iso() -> str:
    """Current UTC time as an ISO 8601 string (second precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Granularity(str, Enum):
    """Where the review/fix loop runs: after each task, each milestone, or both."""

    PER_TASK = "per_task"
    PER_MILESTONE = "per_milestone"
    BOTH = "both"

    @property
    def reviews_tasks(self) -> bool:
        return self in (Granularity.PER_TASK, Granularity.BOTH)

    @property
    def reviews_milestones(self) -> bool:
        return self in (Granularity.PER_MILESTONE, Granularity.BOTH)


class Severity(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        """Sort key: Critical first, Minor last."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.IMPORTANT: 1, Severity.MINOR: 2}


class WorkType(str, Enum):
    INFRASTRUCTURE = "infrastructure"
    FUNCTIONALITY = "functionality"
    INTEGRATION = "integration"


class TaskStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    DISPATCHED = "dispatched"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETE = "complete"
    ESCALATED = "escalated"


class MilestoneStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REVIEWING = "reviewing"
    COMPLETE = "complete"
    ESCALATED = "escalated"


class HumanDecision(str, Enum):
    """Operator response to an escalation.

    OVERRIDE resets persistence counts and continues the loop, RESOLVE
    forces the target clean, ABANDON fails the milestone and the plan.
    """

    OVERRIDE = "override"
    RESOLVE = "resolve"
    ABANDON = "abandon"


class TaskId(NamedTuple):
    """(milestone_index, task_index) pair, rendered as "M.T"."""

    milestone: int
    task: int

    def __str__(self) -> str:
        return f"{self.milestone}.{self.task}"

    @classmethod
    def parse(cls, value: "str | TaskId") -> "TaskId":
        if isinstance(value, TaskId):
            return value
        match = re.fullmatch(r"\s*(\d+)\.(\d+)\s*", str(value))
        if not match:
            raise ValueError(f"Invalid task id: {value!r} (expected 'M.T')")
        return cls(int(match.group(1)), int(match.group(2)))


def milestone_key(index: int) -> str:
    """Target key used for milestone-level review."""
    return f"M{index}"


def _normalize(text: str) -> str:
    return " ".join(text.split())


@dataclass
class Issue:
    """A problem reported by the reviewer.

    The fingerprint identifies the same logical issue across review cycles;
    it is the unit the three-strike rule counts, not raw issue totals.
    """

    severity: Severity
    location: str
    description: str
    fix_applied: bool = False

    @property
    def fingerprint(self) -> str:
        payload = "|".join(
            [
                self.severity.value,
                _normalize(self.location),
                _normalize(self.description).lower(),
            ]
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def order_by_severity(issues: list[Issue]) -> list[Issue]:
    """Critical -> Important -> Minor, preserving reviewer order within a level."""
    return sorted(issues, key=lambda issue: issue.severity.rank)


@dataclass
class FixAttempt:
    """One fixer invocation against the open issues of a review cycle."""

    cycle_number: int
    commit_id: str | None
    evidence: dict[str, Any] = field(default_factory=dict)
    fingerprints: list[str] = field(default_factory=list)
    applied_at: str = field(default_factory=utcnow_iso)


@dataclass
class ReviewCycle:
    """One reviewer pass over a target.

    Attributes:
        target: Key of the reviewed task ("1.2") or milestone ("M1")
        cycle_number: 1-based, reset per target and per review round
        issues: Issues returned by the reviewer
        evidence: Opaque verification evidence (command output, flags)
        round: Incremented when a human overrides an escalation
        fix: Fix applied after this review, if any
    """

    target: str
    cycle_number: int
    issues: list[Issue] = field(default_factory=list)
    evidence: dict[str, Any] = field(default_factory=dict)
    round: int = 1
    fix: FixAttempt | None = None
    reviewed_at: str = field(default_factory=utcnow_iso)

    @property
    def is_clean(self) -> bool:
        return not self.issues

    def severity_counts(self) -> dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for issue in self.issues:
            counts[issue.severity.value] += 1
        return counts


@dataclass
class EscalationReport:
    """Structured report produced when the escalation gate fires.

    Lists the persisting issue and every fix attempted so the operator can
    see what was already tried.

    Reason values:
        persisting_issue: a fingerprint reached the strike threshold
        cycle_limit: the target used up its review cycles without going clean
    """

    target: str
    issue: Issue
    persistence_count: int
    cycle_count: int
    fixes_attempted: list[FixAttempt] = field(default_factory=list)
    reason: Literal["persisting_issue", "cycle_limit"] = "persisting_issue"
    open_issues: list[Issue] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class Task:
    """The smallest dispatchable unit of work."""

    id: TaskId
    title: str
    job_story: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    checked_criteria: list[bool] = field(default_factory=list)
    work_type: WorkType = WorkType.FUNCTIONALITY
    blocked_by: list[TaskId] = field(default_factory=list)
    blocks: list[TaskId] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    evidence: dict[str, Any] = field(default_factory=dict)
    commit_id: str | None = None
    blocked_reason: str | None = None
    reviews: list[ReviewCycle] = field(default_factory=list)
    review_round: int = 1
    escalation: EscalationReport | None = None

    def __post_init__(self) -> None:
        if len(self.checked_criteria) != len(self.acceptance_criteria):
            self.checked_criteria = [False] * len(self.acceptance_criteria)

    @property
    def key(self) -> str:
        return str(self.id)


@dataclass
class Milestone:
    """A demoable increment containing an ordered set of tasks."""

    index: int
    title: str
    tasks: list[Task] = field(default_factory=list)
    status: MilestoneStatus = MilestoneStatus.PENDING
    evidence: dict[str, Any] = field(default_factory=dict)
    commit_id: str | None = None
    reviews: list[ReviewCycle] = field(default_factory=list)
    review_round: int = 1
    escalation: EscalationReport | None = None

    @property
    def key(self) -> str:
        return milestone_key(self.index)


@dataclass
class Plan:
    """In-memory view of a persisted work plan.

    Owned by the orchestrator; every mutation goes through
    WorkPlanStore.persist().
    """

    plan_id: str
    title: str
    milestones: list[Milestone] = field(default_factory=list)
    source: str = ""
    decisions: dict[str, HumanDecision] = field(default_factory=dict)
    abandoned: bool = False
    journal: list[dict[str, str]] = field(default_factory=list)

    def all_tasks(self) -> list[Task]:
        return [task for milestone in self.milestones for task in milestone.tasks]

    def milestone(self, index: int) -> Milestone:
        for milestone in self.milestones:
            if milestone.index == index:
                return milestone
        raise KeyError(f"Milestone {index} not in plan {self.plan_id}")

    def task(self, task_id: "TaskId | str") -> Task:
        task_id = TaskId.parse(task_id)
        for task in self.milestone(task_id.milestone).tasks:
            if task.id == task_id:
                return task
        raise KeyError(f"Task {task_id} not in plan {self.plan_id}")

    def target(self, key: str) -> "Task | Milestone":
        """Resolve a target key ("1.2" or "M1") to its task or milestone."""
        if key.upper().startswith("M"):
            return self.milestone(int(key[1:]))
        return self.task(key)


# Read-only snapshots handed to collaborators. Collaborators never see the
# mutable Plan objects.


@dataclass(frozen=True)
class TaskSpec:
    task_id: str
    title: str
    job_story: str
    description: str
    acceptance_criteria: tuple[str, ...]
    work_type: WorkType
    milestone_title: str = ""

    @classmethod
    def from_task(cls, task: Task, milestone_title: str = "") -> "TaskSpec":
        return cls(
            task_id=task.key,
            title=task.title,
            job_story=task.job_story,
            description=task.description,
            acceptance_criteria=tuple(task.acceptance_criteria),
            work_type=task.work_type,
            milestone_title=milestone_title,
        )


@dataclass(frozen=True)
class ReviewTarget:
    """What the reviewer and fixer are pointed at: one task or a whole milestone."""

    kind: Literal["task", "milestone"]
    key: str
    title: str
    tasks: tuple[TaskSpec, ...]

    @classmethod
    def for_task(cls, task: Task, milestone_title: str = "") -> "ReviewTarget":
        return cls(
            kind="task",
            key=task.key,
            title=task.title,
            tasks=(TaskSpec.from_task(task, milestone_title),),
        )

    @classmethod
    def for_milestone(cls, milestone: Milestone) -> "ReviewTarget":
        return cls(
            kind="milestone",
            key=milestone.key,
            title=milestone.title,
            tasks=tuple(TaskSpec.from_task(t, milestone.title) for t in milestone.tasks),
        )


@dataclass
class WorkResult:
    """Outcome of a worker or fixer call: evidence plus the resulting commit."""

    evidence: dict[str, Any] = field(default_factory=dict)
    commit_id: str | None = None


@dataclass
class ReviewReport:
    """What a reviewer returns; the loop controller numbers it into a ReviewCycle."""

    issues: list[Issue] = field(default_factory=list)
    evidence: dict[str, Any] = field(default_factory=dict)
