"""Work plan persistence for resumable execution.

The persisted document (``<state_dir>/<plan_id>_plan.json``) is the single
source of truth for a run. Every change goes through persist(), which
applies one mutation and rewrites the whole document atomically, so a
task's status and its evidence are always committed together. resume()
rebuilds the in-memory plan from that document alone.
"""

import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union

from workplan.dependency_resolver import validate_plan
from workplan.errors import MalformedPlanError, PlanStateNotFoundError
from workplan.models import (
    EscalationReport,
    FixAttempt,
    HumanDecision,
    Issue,
    Milestone,
    MilestoneStatus,
    Plan,
    ReviewCycle,
    Severity,
    Task,
    TaskId,
    TaskStatus,
    WorkType,
    utcnow_iso,
)
from workplan.plan_parser import parse_plan

logger = logging.getLogger(__name__)


# =============================================================================
# MUTATIONS
# =============================================================================


@dataclass
class TaskUpdate:
    """Change a task's status, optionally with evidence or an escalation report."""

    task_id: TaskId
    status: TaskStatus
    evidence: dict[str, Any] | None = None
    commit_id: str | None = None
    blocked_reason: str | None = None
    escalation: EscalationReport | None = None
    review_round: int | None = None

    def apply(self, plan: Plan) -> None:
        task = plan.task(self.task_id)
        task.status = self.status
        if self.evidence is not None:
            task.evidence = copy.deepcopy(self.evidence)
        if self.commit_id is not None:
            task.commit_id = self.commit_id
        if self.review_round is not None:
            task.review_round = self.review_round
        task.blocked_reason = (
            self.blocked_reason if self.status == TaskStatus.BLOCKED else None
        )
        task.escalation = (
            copy.deepcopy(self.escalation)
            if self.status == TaskStatus.ESCALATED
            else None
        )
        if self.status == TaskStatus.COMPLETE:
            task.checked_criteria = [True] * len(task.acceptance_criteria)

    def describe(self) -> str:
        text = f"Task {self.task_id} -> {self.status.value}"
        if self.blocked_reason:
            text += f" ({self.blocked_reason})"
        return text


@dataclass
class MilestoneUpdate:
    """Change a milestone's status, optionally with review evidence."""

    index: int
    status: MilestoneStatus
    evidence: dict[str, Any] | None = None
    commit_id: str | None = None
    escalation: EscalationReport | None = None
    review_round: int | None = None

    def apply(self, plan: Plan) -> None:
        milestone = plan.milestone(self.index)
        milestone.status = self.status
        if self.evidence is not None:
            milestone.evidence = copy.deepcopy(self.evidence)
        if self.commit_id is not None:
            milestone.commit_id = self.commit_id
        if self.review_round is not None:
            milestone.review_round = self.review_round
        milestone.escalation = (
            copy.deepcopy(self.escalation)
            if self.status == MilestoneStatus.ESCALATED
            else None
        )

    def describe(self) -> str:
        return f"Milestone {self.index} -> {self.status.value}"


@dataclass
class ReviewRecorded:
    """Append a review cycle to its target's persisted history."""

    cycle: ReviewCycle

    def apply(self, plan: Plan) -> None:
        plan.target(self.cycle.target).reviews.append(copy.deepcopy(self.cycle))

    def describe(self) -> str:
        if self.cycle.is_clean:
            outcome = "clean"
        else:
            counts = self.cycle.severity_counts()
            outcome = ", ".join(f"{n} {sev}" for sev, n in counts.items() if n)
        return f"{self.cycle.target} review cycle {self.cycle.cycle_number}: {outcome}"


@dataclass
class FixRecorded:
    """Attach a fix attempt to the review cycle it answered.

    The fixer's evidence and commit become the target's latest evidence, in
    the same write as the attempt itself.
    """

    target: str
    attempt: FixAttempt

    def apply(self, plan: Plan) -> None:
        target = plan.target(self.target)
        target.evidence.update(copy.deepcopy(self.attempt.evidence))
        if self.attempt.commit_id is not None:
            target.commit_id = self.attempt.commit_id
        for cycle in target.reviews:
            if (
                cycle.round == target.review_round
                and cycle.cycle_number == self.attempt.cycle_number
            ):
                cycle.fix = copy.deepcopy(self.attempt)
                fixed = set(self.attempt.fingerprints)
                for issue in cycle.issues:
                    if issue.fingerprint in fixed:
                        issue.fix_applied = True
                return
        raise ValueError(
            f"No review cycle {self.attempt.cycle_number} recorded for {self.target}"
        )

    def describe(self) -> str:
        commit = self.attempt.commit_id or "no commit"
        return f"{self.target} fix after cycle {self.attempt.cycle_number}: {commit}"


@dataclass
class DecisionRecorded:
    """Store a human decision for an escalated target until a run applies it."""

    target: str
    decision: HumanDecision

    def apply(self, plan: Plan) -> None:
        plan.target(self.target)
        plan.decisions[self.target] = self.decision

    def describe(self) -> str:
        return f"{self.target} decision recorded: {self.decision.value}"


@dataclass
class DecisionApplied:
    target: str

    def apply(self, plan: Plan) -> None:
        plan.decisions.pop(self.target, None)

    def describe(self) -> str:
        return f"{self.target} decision applied"


@dataclass
class PlanAbandoned:
    reason: str

    def apply(self, plan: Plan) -> None:
        plan.abandoned = True

    def describe(self) -> str:
        return f"Plan abandoned: {self.reason}"


PlanMutation = Union[
    TaskUpdate,
    MilestoneUpdate,
    ReviewRecorded,
    FixRecorded,
    DecisionRecorded,
    DecisionApplied,
    PlanAbandoned,
]


# =============================================================================
# STORE
# =============================================================================


class WorkPlanStore:
    """Reads plans and durably records execution progress.

    The orchestrator is the only writer; collaborators never touch the store.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    @staticmethod
    def plan_id_for(plan_ref: str | Path) -> str:
        return Path(plan_ref).stem

    def document_path(self, plan_ref: str | Path) -> Path:
        return self.state_dir / f"{self.plan_id_for(plan_ref)}_plan.json"

    def exists(self, plan_ref: str | Path) -> bool:
        return self.document_path(plan_ref).exists()

    def load(self, plan_ref: str | Path) -> Plan:
        """Parse a plan source and start a fresh persisted document for it.

        Args:
            plan_ref: Path to a markdown work plan or a JSON plan document

        Returns:
            Validated Plan with statuses as written in the source

        Raises:
            MalformedPlanError: If the plan is unreadable or structurally invalid
            CycleError: If a milestone's dependencies form a cycle
        """
        plan = read_plan_source(plan_ref)
        self._write(plan)
        logger.info(
            f"Loaded plan {plan.plan_id}: {len(plan.milestones)} milestone(s), "
            f"{len(plan.all_tasks())} task(s)"
        )
        return plan

    def persist(self, plan: Plan, mutation: PlanMutation) -> None:
        """Apply a mutation and write the resulting document atomically.

        The mutation is applied to a copy first; the in-memory plan only
        changes once the new document is durably on disk.
        """
        entry = {"at": utcnow_iso(), "event": mutation.describe()}

        snapshot = copy.deepcopy(plan)
        mutation.apply(snapshot)
        snapshot.journal.append(entry)
        self._write(snapshot)

        mutation.apply(plan)
        plan.journal.append(entry)
        logger.debug(f"{plan.plan_id}: {entry['event']}")

    def read(self, plan_ref: str | Path) -> Plan:
        """Read the persisted document as written, without resume normalization."""
        path = self.document_path(plan_ref)
        if not path.exists():
            raise PlanStateNotFoundError(
                f"No saved state for {self.plan_id_for(plan_ref)} in {self.state_dir}"
            )
        return plan_from_dict(_read_json(path))

    def resume(self, plan_ref: str | Path) -> Plan:
        """Rebuild in-memory state purely from the persisted document.

        Work whose evidence never reached the document is rolled back so it
        runs again: dispatched tasks return to pending. Blocked tasks are
        re-evaluated. Tasks awaiting review keep their evidence and continue
        with review.

        Raises:
            PlanStateNotFoundError: If no document exists for plan_ref
        """
        plan = self.read(plan_ref)
        validate_plan(plan)

        for task in plan.all_tasks():
            if task.status in (TaskStatus.DISPATCHED, TaskStatus.BLOCKED):
                task.status = TaskStatus.PENDING
                task.blocked_reason = None

        completed = sum(1 for t in plan.all_tasks() if t.status == TaskStatus.COMPLETE)
        logger.info(
            f"Resumed plan {plan.plan_id}: {completed}/{len(plan.all_tasks())} "
            "task(s) complete"
        )
        return plan

    def _write(self, plan: Plan) -> None:
        path = self.state_dir / f"{plan.plan_id}_plan.json"
        _atomic_write_text(path, json.dumps(plan_to_dict(plan), indent=2))


def read_plan_source(plan_ref: str | Path) -> Plan:
    """Parse and validate a markdown or JSON plan without writing anything.

    Raises:
        MalformedPlanError: If the plan is unreadable or structurally invalid
        CycleError: If a milestone's dependencies form a cycle
    """
    path = Path(plan_ref)
    if path.suffix.lower() in (".md", ".markdown"):
        plan = parse_plan(path)
    else:
        plan = plan_from_dict(_read_json(path))

    plan.plan_id = WorkPlanStore.plan_id_for(path)
    plan.source = str(path)
    validate_plan(plan)
    return plan


def _atomic_write_text(path: Path, content: str) -> None:
    """Write content to a temp file in the same directory, fsync, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _read_json(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise MalformedPlanError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedPlanError(f"{path} must contain a JSON object")
    return data


# =============================================================================
# DOCUMENT CODEC
# =============================================================================


def _issue_to_dict(issue: Issue) -> dict[str, Any]:
    return {
        "severity": issue.severity.value,
        "location": issue.location,
        "description": issue.description,
        "fix_applied": issue.fix_applied,
        "fingerprint": issue.fingerprint,
    }


def _issue_from_dict(data: dict[str, Any]) -> Issue:
    return Issue(
        severity=Severity(data["severity"]),
        location=data.get("location", ""),
        description=data["description"],
        fix_applied=bool(data.get("fix_applied", False)),
    )


def _fix_to_dict(attempt: FixAttempt) -> dict[str, Any]:
    return {
        "cycle_number": attempt.cycle_number,
        "commit_id": attempt.commit_id,
        "evidence": attempt.evidence,
        "fingerprints": list(attempt.fingerprints),
        "applied_at": attempt.applied_at,
    }


def _fix_from_dict(data: dict[str, Any]) -> FixAttempt:
    return FixAttempt(
        cycle_number=int(data["cycle_number"]),
        commit_id=data.get("commit_id"),
        evidence=dict(data.get("evidence") or {}),
        fingerprints=list(data.get("fingerprints") or []),
        applied_at=data.get("applied_at") or utcnow_iso(),
    )


def _cycle_to_dict(cycle: ReviewCycle) -> dict[str, Any]:
    return {
        "target": cycle.target,
        "cycle_number": cycle.cycle_number,
        "round": cycle.round,
        "issues": [_issue_to_dict(i) for i in cycle.issues],
        "evidence": cycle.evidence,
        "fix": _fix_to_dict(cycle.fix) if cycle.fix else None,
        "reviewed_at": cycle.reviewed_at,
    }


def _cycle_from_dict(data: dict[str, Any]) -> ReviewCycle:
    return ReviewCycle(
        target=data["target"],
        cycle_number=int(data["cycle_number"]),
        issues=[_issue_from_dict(i) for i in data.get("issues") or []],
        evidence=dict(data.get("evidence") or {}),
        round=int(data.get("round", 1)),
        fix=_fix_from_dict(data["fix"]) if data.get("fix") else None,
        reviewed_at=data.get("reviewed_at") or utcnow_iso(),
    )


def _report_to_dict(report: EscalationReport | None) -> dict[str, Any] | None:
    if report is None:
        return None
    return {
        "target": report.target,
        "issue": _issue_to_dict(report.issue),
        "persistence_count": report.persistence_count,
        "cycle_count": report.cycle_count,
        "fixes_attempted": [_fix_to_dict(f) for f in report.fixes_attempted],
        "reason": report.reason,
        "open_issues": [_issue_to_dict(i) for i in report.open_issues],
        "created_at": report.created_at,
    }


def _report_from_dict(data: dict[str, Any] | None) -> EscalationReport | None:
    if not data:
        return None
    return EscalationReport(
        target=data["target"],
        issue=_issue_from_dict(data["issue"]),
        persistence_count=int(data["persistence_count"]),
        cycle_count=int(data["cycle_count"]),
        fixes_attempted=[_fix_from_dict(f) for f in data.get("fixes_attempted") or []],
        reason=data.get("reason", "persisting_issue"),
        open_issues=[_issue_from_dict(i) for i in data.get("open_issues") or []],
        created_at=data.get("created_at") or utcnow_iso(),
    )


def _task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "index": task.id.task,
        "title": task.title,
        "job_story": task.job_story,
        "description": task.description,
        "acceptance_criteria": list(task.acceptance_criteria),
        "checked_criteria": list(task.checked_criteria),
        "type": task.work_type.value,
        "blocked_by": [str(d) for d in task.blocked_by],
        "blocks": [str(b) for b in task.blocks],
        "status": task.status.value,
        "evidence": task.evidence,
        "commit_id": task.commit_id,
        "blocked_reason": task.blocked_reason,
        "reviews": [_cycle_to_dict(c) for c in task.reviews],
        "review_round": task.review_round,
        "escalation": _report_to_dict(task.escalation),
    }


def _task_from_dict(data: dict[str, Any], milestone_index: int) -> Task:
    if "index" in data:
        task_id = TaskId(milestone_index, int(data["index"]))
    else:
        task_id = TaskId.parse(data["id"])
    return Task(
        id=task_id,
        title=data["title"],
        job_story=data.get("job_story", ""),
        description=data.get("description", ""),
        acceptance_criteria=list(data.get("acceptance_criteria") or []),
        checked_criteria=[bool(c) for c in data.get("checked_criteria") or []],
        work_type=WorkType(data.get("type", WorkType.FUNCTIONALITY.value)),
        blocked_by=[TaskId.parse(d) for d in data.get("blocked_by") or []],
        blocks=[TaskId.parse(b) for b in data.get("blocks") or []],
        status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
        evidence=dict(data.get("evidence") or {}),
        commit_id=data.get("commit_id"),
        blocked_reason=data.get("blocked_reason"),
        reviews=[_cycle_from_dict(c) for c in data.get("reviews") or []],
        review_round=int(data.get("review_round", 1)),
        escalation=_report_from_dict(data.get("escalation")),
    )


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    """Serialize a plan to the persisted document format."""
    return {
        "plan_id": plan.plan_id,
        "title": plan.title,
        "source": plan.source,
        "abandoned": plan.abandoned,
        "decisions": {key: d.value for key, d in plan.decisions.items()},
        "milestones": [
            {
                "index": m.index,
                "title": m.title,
                "status": m.status.value,
                "evidence": m.evidence,
                "commit_id": m.commit_id,
                "reviews": [_cycle_to_dict(c) for c in m.reviews],
                "review_round": m.review_round,
                "escalation": _report_to_dict(m.escalation),
                "tasks": [_task_to_dict(t) for t in m.tasks],
            }
            for m in plan.milestones
        ],
        "journal": list(plan.journal),
    }


def plan_from_dict(data: dict[str, Any]) -> Plan:
    """Build a Plan from a persisted document or a hand-written JSON plan.

    Raises:
        MalformedPlanError: If required fields are missing or values are invalid
    """
    try:
        milestones = []
        for position, m in enumerate(data.get("milestones") or [], start=1):
            index = int(m.get("index", position))
            milestones.append(
                Milestone(
                    index=index,
                    title=m.get("title", f"Milestone {index}"),
                    tasks=[_task_from_dict(t, index) for t in m.get("tasks") or []],
                    status=MilestoneStatus(
                        m.get("status", MilestoneStatus.PENDING.value)
                    ),
                    evidence=dict(m.get("evidence") or {}),
                    commit_id=m.get("commit_id"),
                    reviews=[_cycle_from_dict(c) for c in m.get("reviews") or []],
                    review_round=int(m.get("review_round", 1)),
                    escalation=_report_from_dict(m.get("escalation")),
                )
            )
        return Plan(
            plan_id=data.get("plan_id", ""),
            title=data.get("title", ""),
            milestones=milestones,
            source=data.get("source", ""),
            decisions={
                key: HumanDecision(value)
                for key, value in (data.get("decisions") or {}).items()
            },
            abandoned=bool(data.get("abandoned", False)),
            journal=list(data.get("journal") or []),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedPlanError(f"Invalid plan document: {e!r}") from e
