"""Tests for workplan data models."""

import pytest

from workplan.models import (
    Granularity,
    Issue,
    Milestone,
    Plan,
    ReviewCycle,
    ReviewTarget,
    Severity,
    Task,
    TaskId,
    TaskSpec,
    WorkType,
    order_by_severity,
)


class TestTaskId:
    """Tests for TaskId parsing and rendering."""

    def test_renders_as_milestone_dot_task(self):
        assert str(TaskId(2, 3)) == "2.3"

    def test_parse_accepts_whitespace(self):
        assert TaskId.parse(" 1.12 ") == TaskId(1, 12)

    def test_parse_returns_existing_id_unchanged(self):
        task_id = TaskId(1, 1)
        assert TaskId.parse(task_id) is task_id

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid task id"):
            TaskId.parse("one.two")


class TestIssueFingerprint:
    """The fingerprint must identify the same logical issue across cycles."""

    def test_whitespace_and_case_in_description_do_not_matter(self):
        a = Issue(Severity.IMPORTANT, "src/app.py", "Missing  null check")
        b = Issue(Severity.IMPORTANT, "src/app.py", "missing null check\n")

        assert a.fingerprint == b.fingerprint

    def test_severity_is_part_of_identity(self):
        a = Issue(Severity.IMPORTANT, "src/app.py", "Missing null check")
        b = Issue(Severity.CRITICAL, "src/app.py", "Missing null check")

        assert a.fingerprint != b.fingerprint

    def test_location_is_part_of_identity(self):
        a = Issue(Severity.MINOR, "src/a.py", "Typo")
        b = Issue(Severity.MINOR, "src/b.py", "Typo")

        assert a.fingerprint != b.fingerprint

    def test_fix_flag_does_not_change_fingerprint(self):
        issue = Issue(Severity.MINOR, "README.md", "Typo")
        before = issue.fingerprint
        issue.fix_applied = True

        assert issue.fingerprint == before
        assert len(before) == 16


class TestSeverityOrdering:
    def test_order_by_severity_is_stable(self):
        issues = [
            Issue(Severity.MINOR, "a", "m1"),
            Issue(Severity.CRITICAL, "b", "c1"),
            Issue(Severity.IMPORTANT, "c", "i1"),
            Issue(Severity.CRITICAL, "d", "c2"),
        ]

        ordered = [i.description for i in order_by_severity(issues)]

        assert ordered == ["c1", "c2", "i1", "m1"]


class TestGranularity:
    @pytest.mark.parametrize(
        "granularity,tasks,milestones",
        [
            (Granularity.PER_TASK, True, False),
            (Granularity.PER_MILESTONE, False, True),
            (Granularity.BOTH, True, True),
        ],
    )
    def test_review_levels(self, granularity, tasks, milestones):
        assert granularity.reviews_tasks is tasks
        assert granularity.reviews_milestones is milestones


class TestReviewCycle:
    def test_minor_issue_is_not_clean(self):
        cycle = ReviewCycle("1.1", 1, issues=[Issue(Severity.MINOR, "a", "nit")])

        assert cycle.is_clean is False
        assert cycle.severity_counts() == {"critical": 0, "important": 0, "minor": 1}

    def test_no_issues_is_clean(self):
        assert ReviewCycle("1.1", 1).is_clean is True


class TestPlan:
    """Tests for plan lookups."""

    @pytest.fixture
    def plan(self) -> Plan:
        return Plan(
            plan_id="p",
            title="P",
            milestones=[
                Milestone(1, "One", tasks=[Task(TaskId(1, 1), "A"), Task(TaskId(1, 2), "B")]),
                Milestone(2, "Two", tasks=[Task(TaskId(2, 1), "C")]),
            ],
        )

    def test_task_lookup_by_string(self, plan: Plan):
        assert plan.task("1.2").title == "B"

    def test_target_resolves_milestone_keys(self, plan: Plan):
        assert plan.target("M2").title == "Two"
        assert plan.target("m1").title == "One"

    def test_target_resolves_task_keys(self, plan: Plan):
        assert plan.target("2.1").title == "C"

    def test_unknown_task_raises_key_error(self, plan: Plan):
        with pytest.raises(KeyError):
            plan.task("1.9")

    def test_all_tasks_in_declaration_order(self, plan: Plan):
        assert [t.key for t in plan.all_tasks()] == ["1.1", "1.2", "2.1"]


class TestTask:
    def test_checked_criteria_reset_when_lengths_differ(self):
        task = Task(TaskId(1, 1), "A", acceptance_criteria=["x", "y"], checked_criteria=[True])

        assert task.checked_criteria == [False, False]


class TestSnapshots:
    """Collaborators receive frozen snapshots, never plan objects."""

    def test_task_spec_is_frozen(self):
        task = Task(TaskId(1, 1), "A", acceptance_criteria=["x"], work_type=WorkType.INTEGRATION)
        spec = TaskSpec.from_task(task, "Milestone One")

        assert spec.task_id == "1.1"
        assert spec.acceptance_criteria == ("x",)
        assert spec.milestone_title == "Milestone One"
        with pytest.raises(AttributeError):
            spec.title = "changed"  # type: ignore[misc]

    def test_milestone_target_lists_all_tasks(self):
        milestone = Milestone(
            1, "One", tasks=[Task(TaskId(1, 1), "A"), Task(TaskId(1, 2), "B")]
        )

        target = ReviewTarget.for_milestone(milestone)

        assert target.kind == "milestone"
        assert target.key == "M1"
        assert [t.task_id for t in target.tasks] == ["1.1", "1.2"]
