"""Tests for command-backed collaborators."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from workplan.command_agents import (
    CommandAgent,
    CommandFixer,
    CommandReviewer,
    CommandWorker,
)
from workplan.errors import CollaboratorError, ReviewToolingMissingError, TaskBlockedError
from workplan.models import Issue, ReviewTarget, Severity, TaskSpec, WorkType


def completed(stdout: str, returncode: int = 0, stderr: str = "") -> MagicMock:
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def spec() -> TaskSpec:
    return TaskSpec(
        task_id="1.1",
        title="Create user model",
        job_story="When ..., I want ..., so that ...",
        description="Add a User model",
        acceptance_criteria=("Model exists",),
        work_type=WorkType.INFRASTRUCTURE,
        milestone_title="Login",
    )


@pytest.fixture
def target(spec: TaskSpec) -> ReviewTarget:
    return ReviewTarget(kind="task", key="1.1", title=spec.title, tasks=(spec,))


class TestCommandAgent:
    """Tests for CommandAgent.invoke()."""

    @pytest.mark.asyncio
    async def test_sends_json_on_stdin(self):
        agent = CommandAgent("my-agent --mode worker", timeout=30, cwd="/repo")

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed('{"ok": true}')
            output = await agent.invoke({"role": "worker"})

        assert output == {"ok": True}
        args, kwargs = mock_run.call_args
        assert args[0] == ["my-agent", "--mode", "worker"]
        assert json.loads(kwargs["input"]) == {"role": "worker"}
        assert kwargs["timeout"] == 30
        assert kwargs["cwd"] == "/repo"

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed("", returncode=2, stderr="boom")
            with pytest.raises(CollaboratorError, match="exited with status 2: boom"):
                await CommandAgent("agent").invoke({})

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed("not json")
            with pytest.raises(CollaboratorError, match="Failed to parse"):
                await CommandAgent("agent").invoke({})

    @pytest.mark.asyncio
    async def test_non_object_json_raises(self):
        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed("[1, 2]")
            with pytest.raises(CollaboratorError, match="JSON object"):
                await CommandAgent("agent").invoke({})

    @pytest.mark.asyncio
    async def test_timeout_raises_collaborator_error(self):
        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=subprocess.TimeoutExpired("agent", 30),
        ):
            with pytest.raises(CollaboratorError, match="agent timed out after 30s"):
                await CommandAgent("agent", timeout=30).invoke({})

    @pytest.mark.asyncio
    async def test_empty_command_raises(self):
        with pytest.raises(CollaboratorError, match="empty"):
            await CommandAgent("").invoke({})

    def test_executable(self):
        assert CommandAgent("'my tool' --flag").executable == "my tool"


class TestCommandWorker:
    @pytest.mark.asyncio
    async def test_returns_evidence_and_commit(self, spec: TaskSpec):
        worker = CommandWorker(CommandAgent("agent"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed(
                '{"status": "completed", "evidence": {"tests": "3 passed"}, "commit_id": "abc"}'
            )
            result = await worker.implement(spec)

        assert result.evidence == {"tests": "3 passed"}
        assert result.commit_id == "abc"
        request = json.loads(mock_run.call_args.kwargs["input"])
        assert request["role"] == "worker"
        assert request["task"]["work_type"] == "infrastructure"
        assert request["task"]["acceptance_criteria"] == ["Model exists"]

    @pytest.mark.asyncio
    async def test_blocked_status_raises(self, spec: TaskSpec):
        worker = CommandWorker(CommandAgent("agent"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed('{"status": "blocked", "reason": "no API key"}')
            with pytest.raises(TaskBlockedError) as exc_info:
                await worker.implement(spec)

        assert exc_info.value.task_id == "1.1"
        assert exc_info.value.reason == "no API key"

    @pytest.mark.asyncio
    async def test_missing_executable(self, spec: TaskSpec):
        worker = CommandWorker(CommandAgent("agent"))

        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=FileNotFoundError("agent"),
        ):
            with pytest.raises(TaskBlockedError, match="worker command not found"):
                await worker.implement(spec)

    @pytest.mark.asyncio
    async def test_timeout_blocks_task(self, spec: TaskSpec):
        worker = CommandWorker(CommandAgent("agent", timeout=1))

        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=subprocess.TimeoutExpired("agent", 1),
        ):
            with pytest.raises(TaskBlockedError) as exc_info:
                await worker.implement(spec)

        assert exc_info.value.task_id == "1.1"
        assert "timed out after 1s" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_nonzero_exit_blocks_task(self, spec: TaskSpec):
        worker = CommandWorker(CommandAgent("agent"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed("", returncode=1, stderr="segfault")
            with pytest.raises(TaskBlockedError) as exc_info:
                await worker.implement(spec)

        assert "exited with status 1: segfault" in exc_info.value.reason


class TestCommandReviewer:
    @pytest.mark.asyncio
    async def test_parses_issues(self, target: ReviewTarget):
        reviewer = CommandReviewer(CommandAgent("review"))
        response = {
            "issues": [
                {"severity": "Critical", "location": "app.py:3", "description": "Crash"},
                {"severity": "minor", "description": "Typo"},
            ],
            "evidence": {"pytest": "1 failed"},
        }

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed(json.dumps(response))
            report = await reviewer.review(target, {"tests": "ok"})

        assert [(i.severity, i.location) for i in report.issues] == [
            (Severity.CRITICAL, "app.py:3"),
            (Severity.MINOR, ""),
        ]
        assert report.evidence == {"pytest": "1 failed"}
        request = json.loads(mock_run.call_args.kwargs["input"])
        assert request["target"]["key"] == "1.1"
        assert request["evidence"] == {"tests": "ok"}

    @pytest.mark.asyncio
    async def test_tooling_missing_flag(self, target: ReviewTarget):
        reviewer = CommandReviewer(CommandAgent("review"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed('{"tooling_missing": "pytest"}')
            with pytest.raises(ReviewToolingMissingError) as exc_info:
                await reviewer.review(target, {})

        assert exc_info.value.tool == "pytest"

    @pytest.mark.asyncio
    async def test_missing_reviewer_executable_is_tooling_missing(self, target):
        reviewer = CommandReviewer(CommandAgent("review-bot --strict"))

        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=FileNotFoundError("review-bot"),
        ):
            with pytest.raises(ReviewToolingMissingError) as exc_info:
                await reviewer.review(target, {})

        assert exc_info.value.tool == "review-bot"

    @pytest.mark.asyncio
    async def test_invalid_issue_is_tooling_missing(self, target: ReviewTarget):
        reviewer = CommandReviewer(CommandAgent("review"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed('{"issues": [{"severity": "blocker", "description": "x"}]}')
            with pytest.raises(ReviewToolingMissingError, match="invalid issue"):
                await reviewer.review(target, {})

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_tooling_missing(self, target: ReviewTarget):
        reviewer = CommandReviewer(CommandAgent("review-bot"))

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed("", returncode=3)
            with pytest.raises(ReviewToolingMissingError) as exc_info:
                await reviewer.review(target, {})

        assert exc_info.value.tool == "review-bot"
        assert "exited with status 3" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_timeout_is_tooling_missing(self, target: ReviewTarget):
        reviewer = CommandReviewer(CommandAgent("review-bot", timeout=5))

        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=subprocess.TimeoutExpired("review-bot", 5),
        ):
            with pytest.raises(ReviewToolingMissingError, match="timed out after 5s"):
                await reviewer.review(target, {})


class TestCommandFixer:
    @pytest.mark.asyncio
    async def test_sends_every_issue(self, target: ReviewTarget):
        fixer = CommandFixer(CommandAgent("fix"))
        issues = [
            Issue(Severity.CRITICAL, "a.py", "Crash"),
            Issue(Severity.MINOR, "b.py", "Typo"),
        ]

        with patch("workplan.command_agents.subprocess.run") as mock_run:
            mock_run.return_value = completed('{"commit_id": "def"}')
            result = await fixer.fix(target, issues)

        assert result.commit_id == "def"
        assert result.evidence == {}
        request = json.loads(mock_run.call_args.kwargs["input"])
        assert request["role"] == "fixer"
        assert [i["description"] for i in request["issues"]] == ["Crash", "Typo"]
        assert request["issues"][0]["fingerprint"] == issues[0].fingerprint

    @pytest.mark.asyncio
    async def test_failure_raises_collaborator_error(self, target: ReviewTarget):
        fixer = CommandFixer(CommandAgent("fix", timeout=2))

        with patch(
            "workplan.command_agents.subprocess.run",
            side_effect=subprocess.TimeoutExpired("fix", 2),
        ):
            with pytest.raises(CollaboratorError, match="fix timed out after 2s"):
                await fixer.fix(target, [Issue(Severity.MINOR, "a.py", "Typo")])
