"""Plan parser for work plan markdown files.

Parses markdown work plans into a Plan hierarchy for orchestrator execution.
Handles various markdown formats with lenient parsing.

Expected layout::

    # Work Plan: Title

    ## Milestone 1: Title

    ### Task 1.1: Title
    **Type:** Infrastructure
    **Job Story:** When ..., I want ..., so that ...
    **Description:**
    Free text.
    **Acceptance Criteria:**
    - [ ] Criterion
    **Blocked by:** None
    **Blocks:** 1.2
"""

import re
from pathlib import Path

from workplan.errors import MalformedPlanError
from workplan.models import Milestone, Plan, Task, TaskId, TaskStatus, WorkType

_MILESTONE_PATTERN = r"^#{1,3}\s+Milestone\s+(\d+)\s*[:.\-]?\s*(.*?)\s*$"
_TASK_PATTERN = r"^#{2,4}\s+Task\s+(\d+\.\d+)\s*[:.\-]?\s*(.*?)\s*$"
_FIELD_START = r"^\s*\*\*[A-Za-z][A-Za-z ]*:\*\*"


def parse_plan(plan_path: str | Path) -> Plan:
    """Parse a work plan file into milestones and tasks.

    Args:
        plan_path: Path to the markdown plan file

    Returns:
        Plan with one Milestone per milestone header (or per task id prefix
        when the plan has no milestone headers)

    Raises:
        MalformedPlanError: If the plan contains no tasks or an unknown status
    """
    plan_path = Path(plan_path)
    content = plan_path.read_text(encoding="utf-8")

    milestone_titles = {
        int(match.group(1)): match.group(2) or f"Milestone {match.group(1)}"
        for match in re.finditer(_MILESTONE_PATTERN, content, re.MULTILINE)
    }

    milestones: dict[int, Milestone] = {}
    for section in _split_into_task_sections(content):
        task = _parse_task_section(section)
        if task is None:
            continue
        index = task.id.milestone
        if index not in milestones:
            milestones[index] = Milestone(
                index=index,
                title=milestone_titles.get(index, f"Milestone {index}"),
            )
        milestones[index].tasks.append(task)

    if not milestones:
        raise MalformedPlanError(f"No tasks found in {plan_path}")

    return Plan(
        plan_id=plan_path.stem,
        title=_extract_plan_title(content) or plan_path.stem,
        milestones=[milestones[index] for index in sorted(milestones)],
        source=str(plan_path),
    )


def _extract_plan_title(content: str) -> str | None:
    """Title from the first level-1 heading that is not a milestone header."""
    for match in re.finditer(r"^#\s+(.+?)\s*$", content, re.MULTILINE):
        title = match.group(1)
        if not re.match(r"Milestone\s+\d+", title):
            return re.sub(r"^Work\s+Plan\s*:\s*", "", title) or title
    return None


def _split_into_task_sections(content: str) -> list[str]:
    """Split content into individual task sections.

    A section runs from its task header to the next task or milestone
    header (or end of file).
    """
    task_matches = list(re.finditer(_TASK_PATTERN, content, re.MULTILINE))
    if not task_matches:
        return []

    boundaries = sorted(
        {m.start() for m in task_matches}
        | {m.start() for m in re.finditer(_MILESTONE_PATTERN, content, re.MULTILINE)}
    )

    sections = []
    for match in task_matches:
        later = [b for b in boundaries if b > match.start()]
        end = later[0] if later else len(content)
        sections.append(content[match.start() : end])
    return sections


def _parse_task_section(section: str) -> Task | None:
    """Parse a single task section into a Task object."""
    header_match = re.match(_TASK_PATTERN, section, re.MULTILINE)
    if not header_match:
        return None

    task_id = TaskId.parse(header_match.group(1))
    title = header_match.group(2) or f"Task {task_id}"

    criteria = _extract_acceptance_criteria(section)

    return Task(
        id=task_id,
        title=title,
        job_story=_extract_field(section, "Job Story") or "",
        description=_extract_description(section),
        acceptance_criteria=[text for text, _ in criteria],
        checked_criteria=[checked for _, checked in criteria],
        work_type=_parse_work_type(_extract_field(section, "Type")),
        blocked_by=_parse_task_ids(_extract_field(section, "Blocked by")),
        blocks=_parse_task_ids(_extract_field(section, "Blocks")),
        status=_parse_status(task_id, _extract_field(section, "Status")),
    )


def _extract_field(section: str, name: str) -> str | None:
    """Extract a single-line ``**Name:** value`` field (case-insensitive)."""
    match = re.search(
        rf"^\s*[-*]?\s*\*\*{re.escape(name)}:\*\*[ \t]*(.+?)\s*$",
        section,
        re.MULTILINE | re.IGNORECASE,
    )
    if match:
        return match.group(1).strip().strip("`")
    return None


def _extract_description(section: str) -> str:
    """Extract description text (inline or on the following lines)."""
    match = re.search(r"\*\*Description:\*\*[ \t]*", section)
    if not match:
        return ""

    lines = []
    for line in section[match.end() :].split("\n"):
        if re.match(_FIELD_START, line) or line.lstrip().startswith("#"):
            break
        if line.strip() == "---":
            break
        lines.append(line.strip())

    return "\n".join(lines).strip()


def _extract_acceptance_criteria(section: str) -> list[tuple[str, bool]]:
    """Extract (criterion, checked) pairs from a checkbox or bullet list."""
    criteria: list[tuple[str, bool]] = []

    ac_match = re.search(r"\*\*Acceptance Criteria:\*\*", section, re.IGNORECASE)
    if not ac_match:
        return criteria

    for line in section[ac_match.end() :].split("\n"):
        if re.match(_FIELD_START, line) or line.lstrip().startswith("#"):
            break
        if line.strip() == "---":
            break
        # Match: - [ ] item, - [x] item, or - item
        item = re.match(r"^\s*[-*]\s*(?:\[([ xX])\]\s*)?(.+?)\s*$", line)
        if item:
            criteria.append((item.group(2), (item.group(1) or " ").lower() == "x"))

    return criteria


def _parse_task_ids(value: str | None) -> list[TaskId]:
    if not value:
        return []
    return [TaskId.parse(raw) for raw in re.findall(r"\d+\.\d+", value)]


def _parse_work_type(value: str | None) -> WorkType:
    if value:
        normalized = value.strip().lower()
        for work_type in WorkType:
            if normalized.startswith(work_type.value):
                return work_type
    return WorkType.FUNCTIONALITY


def _parse_status(task_id: TaskId, value: str | None) -> TaskStatus:
    if not value:
        return TaskStatus.PENDING
    normalized = re.sub(r"[\s\-]+", "_", value.strip().lower())
    try:
        return TaskStatus(normalized)
    except ValueError:
        raise MalformedPlanError(
            f"Task {task_id} has unknown status '{value}'"
        ) from None
