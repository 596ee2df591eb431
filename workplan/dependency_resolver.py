"""Dependency resolution for tasks within a milestone.

Orders tasks topologically over their blocked_by edges with deterministic
tie-breaking (declaration order), detects cycles, and validates the
structural integrity of a plan's dependency edges at load time.
"""

import heapq
from collections import defaultdict

from workplan.errors import CycleError, MalformedPlanError
from workplan.models import Plan, Task, TaskId


def order_tasks(tasks: list[Task]) -> list[Task]:
    """Return tasks in an order where every task follows its blockers.

    Uses Kahn's algorithm with a min-heap keyed on declaration index, so
    among tasks whose dependencies are all satisfied the earliest-declared
    one always goes first. Dependencies on tasks outside ``tasks`` (earlier
    milestones) are satisfied externally and do not affect ordering.

    Args:
        tasks: Tasks of one milestone, in declaration order

    Returns:
        New list containing every task exactly once

    Raises:
        CycleError: If the dependency graph restricted to ``tasks`` has a cycle
    """
    position = {task.id: i for i, task in enumerate(tasks)}
    dependents: dict[TaskId, list[TaskId]] = defaultdict(list)
    unmet: dict[TaskId, int] = {}

    for task in tasks:
        internal = [dep for dep in dict.fromkeys(task.blocked_by) if dep in position]
        unmet[task.id] = len(internal)
        for dep in internal:
            dependents[dep].append(task.id)

    ready = [position[task_id] for task_id, count in unmet.items() if count == 0]
    heapq.heapify(ready)

    ordered: list[Task] = []
    while ready:
        task = tasks[heapq.heappop(ready)]
        ordered.append(task)
        for dependent in dependents[task.id]:
            unmet[dependent] -= 1
            if unmet[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(tasks):
        stuck = [task for task in tasks if unmet[task.id] > 0]
        raise CycleError(_find_cycle(stuck))

    return ordered


def _find_cycle(stuck: list[Task]) -> list[str]:
    """Walk blocked_by edges among stuck tasks until a task repeats.

    Every stuck task waits on at least one other stuck task, so the walk
    always closes a cycle.
    """
    by_id = {task.id: task for task in stuck}
    path: list[TaskId] = []
    seen: dict[TaskId, int] = {}
    current = stuck[0].id

    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = next(dep for dep in by_id[current].blocked_by if dep in by_id)

    return [str(task_id) for task_id in path[seen[current] :]]


def validate_plan(plan: Plan) -> None:
    """Check that every dependency edge in the plan is executable.

    Raises:
        MalformedPlanError: Duplicate ids, dangling references, self-dependencies,
            asymmetric blocked_by/blocks pairs, or a dependency on a later
            milestone
        CycleError: If any milestone's tasks form a dependency cycle
    """
    tasks: dict[TaskId, Task] = {}
    seen_milestones: set[int] = set()

    for milestone in plan.milestones:
        if milestone.index in seen_milestones:
            raise MalformedPlanError(f"Duplicate milestone index {milestone.index}")
        seen_milestones.add(milestone.index)
        for task in milestone.tasks:
            if task.id.milestone != milestone.index:
                raise MalformedPlanError(
                    f"Task {task.id} is listed under milestone {milestone.index}"
                )
            if task.id in tasks:
                raise MalformedPlanError(f"Duplicate task id {task.id}")
            tasks[task.id] = task

    for task in tasks.values():
        for dep in task.blocked_by:
            if dep == task.id:
                raise MalformedPlanError(f"Task {task.id} is blocked by itself")
            if dep not in tasks:
                raise MalformedPlanError(
                    f"Task {task.id} is blocked by unknown task {dep}"
                )
            if dep.milestone > task.id.milestone:
                raise MalformedPlanError(
                    f"Task {task.id} is blocked by {dep} from a later milestone; "
                    "milestones run strictly in order"
                )
            if task.id not in tasks[dep].blocks:
                raise MalformedPlanError(
                    f"Asymmetric dependency: {task.id} is blocked by {dep}, "
                    f"but {dep} does not list {task.id} in blocks"
                )
        for blocked in task.blocks:
            if blocked not in tasks:
                raise MalformedPlanError(f"Task {task.id} blocks unknown task {blocked}")
            if task.id not in tasks[blocked].blocked_by:
                raise MalformedPlanError(
                    f"Asymmetric dependency: {task.id} blocks {blocked}, "
                    f"but {blocked} does not list {task.id} in blocked_by"
                )

    for milestone in plan.milestones:
        order_tasks(milestone.tasks)
