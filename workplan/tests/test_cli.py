"""Tests for the workplan CLI.

Collaborators are replaced with scripted stubs; everything else (store,
orchestrator, lock) runs for real against a temporary state directory.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner
from opentelemetry import trace

from workplan.cli import cli
from workplan.errors import CollaboratorError
from workplan.models import TaskStatus
from workplan.plan_store import WorkPlanStore
from workplan.tests.scripted import RecordingFixer, ScriptedReviewer, ScriptedWorker, make_issue


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def runner(state_dir: Path) -> CliRunner:
    return CliRunner(env={"WORKPLAN_STATE_DIR": str(state_dir), "DISCORD_WEBHOOK_URL": ""})


@pytest.fixture(autouse=True)
def no_telemetry():
    with patch(
        "workplan.cli.setup_telemetry",
        return_value=(trace.get_tracer("test"), MagicMock()),
    ), patch("workplan.cli.create_metrics"):
        yield


def collaborators(reviewer=None, worker=None):
    return patch(
        "workplan.cli._build_collaborators",
        return_value=(worker or ScriptedWorker(), reviewer or ScriptedReviewer(), RecordingFixer()),
    )


class TestHelp:
    def test_lists_commands(self, runner: CliRunner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "resume", "status", "validate", "decide"):
            assert command in result.output

    def test_run_help_shows_options(self, runner: CliRunner):
        result = runner.invoke(cli, ["run", "--help"])

        assert result.exit_code == 0
        assert "--granularity" in result.output
        assert "--interactive" in result.output
        assert "--notify" in result.output


class TestValidateCommand:
    def test_valid_plan_prints_order(self, runner: CliRunner, plan_file: Path, state_dir: Path):
        result = runner.invoke(cli, ["validate", str(plan_file)])

        assert result.exit_code == 0
        assert "Plan is valid" in result.output
        assert "1.1 -> 1.2" in result.output
        assert not state_dir.exists()

    def test_cycle_is_reported(self, runner: CliRunner, tmp_path: Path):
        plan = tmp_path / "cyclic.md"
        plan.write_text(
            "### Task 1.1: A\n**Blocked by:** 1.2\n**Blocks:** 1.2\n\n"
            "### Task 1.2: B\n**Blocked by:** 1.1\n**Blocks:** 1.1\n"
        )

        result = runner.invoke(cli, ["validate", str(plan)])

        assert result.exit_code == 1
        assert "Dependency cycle detected" in result.output


class TestRunCommand:
    """Tests for 'workplan run'."""

    def test_clean_run_completes(self, runner: CliRunner, plan_file: Path, state_dir: Path):
        worker = ScriptedWorker()

        with collaborators(worker=worker):
            result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 0, result.output
        assert "Plan COMPLETED" in result.output
        assert "Tasks: 3/3 complete" in result.output
        assert worker.calls == ["1.1", "1.2", "2.1"]
        assert (state_dir / "auth_plan_plan.json").exists()
        assert not (state_dir / "auth_plan.lock").exists()

    def test_granularity_option(self, runner: CliRunner, plan_file: Path):
        reviewer = ScriptedReviewer()

        with collaborators(reviewer=reviewer):
            result = runner.invoke(cli, ["run", str(plan_file), "--granularity", "per_task"])

        assert result.exit_code == 0
        assert reviewer.calls == ["1.1", "1.2", "2.1"]

    def test_missing_collaborator_commands(self, runner: CliRunner, plan_file: Path):
        result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 2
        assert "WORKPLAN_WORKER_CMD" in result.output

    def test_locked_plan(self, runner: CliRunner, plan_file: Path, state_dir: Path):
        state_dir.mkdir()
        # PID 1 is always running
        (state_dir / "auth_plan.lock").write_text("1")

        with collaborators():
            result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 2
        assert "already running" in result.output

    def test_invalid_env_config(self, plan_file: Path):
        runner = CliRunner(env={"WORKPLAN_GRANULARITY": "hourly"})

        result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 2
        assert "WORKPLAN_GRANULARITY" in result.output

    def test_collaborator_failure_is_reported(self, runner: CliRunner, plan_file: Path):
        class TimingOutFixer(RecordingFixer):
            async def fix(self, target, issues):
                raise CollaboratorError("fix-agent timed out after 600s")

        reviewer = ScriptedReviewer(script={"1.1": [[make_issue("Missing index")]]})
        with patch(
            "workplan.cli._build_collaborators",
            return_value=(ScriptedWorker(), reviewer, TimingOutFixer()),
        ):
            result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 2
        assert "fix-agent timed out after 600s" in result.output
        assert not isinstance(result.exception, CollaboratorError)

    def test_notify_without_webhook_warns(self, runner: CliRunner, plan_file: Path):
        with collaborators():
            result = runner.invoke(cli, ["run", str(plan_file), "--notify"])

        assert result.exit_code == 0
        assert "--notify ignored" in result.output

    def test_notify_sends_summary(self, plan_file: Path, state_dir: Path):
        runner = CliRunner(
            env={
                "WORKPLAN_STATE_DIR": str(state_dir),
                "DISCORD_WEBHOOK_URL": "https://discord.test/hook",
            }
        )

        with collaborators(), patch("workplan.cli.send_discord_message") as mock_send:
            result = runner.invoke(cli, ["run", str(plan_file), "--notify"])

        assert result.exit_code == 0
        titles = [call.args[1].title for call in mock_send.call_args_list]
        assert "Plan auth_plan: completed" in titles
        assert any("Milestone 1 Complete" in title for title in titles)


class TestEscalationWorkflow:
    """run -> escalation -> decide -> resume."""

    def test_decide_then_resume(self, runner: CliRunner, plan_file: Path, state_dir: Path):
        reviewer = ScriptedReviewer(always={"1.2": [make_issue("Token never expires")]})

        with collaborators(reviewer=reviewer):
            result = runner.invoke(cli, ["run", str(plan_file)])

        assert result.exit_code == 1
        assert "NEEDS HUMAN" in result.output
        assert "Escalated 1.2" in result.output

        result = runner.invoke(cli, ["decide", str(plan_file), "1.2", "resolve"])

        assert result.exit_code == 0, result.output
        assert "Recorded resolve for 1.2" in result.output

        worker = ScriptedWorker()
        with collaborators(worker=worker):
            result = runner.invoke(cli, ["resume", str(plan_file)])

        assert result.exit_code == 0, result.output
        assert worker.calls == ["2.1"]
        plan = WorkPlanStore(state_dir).read(plan_file)
        assert plan.task("1.2").status == TaskStatus.COMPLETE
        assert plan.decisions == {}

    def test_interactive_prompts_for_decision(self, runner: CliRunner, plan_file: Path):
        reviewer = ScriptedReviewer(always={"1.1": [make_issue("Password stored in plain text")]})

        with collaborators(reviewer=reviewer), patch(
            "workplan.escalation.Prompt.ask", return_value="abandon"
        ):
            result = runner.invoke(cli, ["run", str(plan_file), "--interactive"])

        assert result.exit_code == 1
        assert "NEEDS HUMAN DECISION" in result.output
        assert "Plan ABANDONED" in result.output


class TestDecideCommand:
    def test_rejects_target_that_is_not_escalated(self, runner: CliRunner, plan_file: Path):
        with collaborators():
            runner.invoke(cli, ["run", str(plan_file)])

        result = runner.invoke(cli, ["decide", str(plan_file), "1.1", "override"])

        assert result.exit_code == 1
        assert "1.1 is not escalated" in result.output

    def test_rejects_unknown_target(self, runner: CliRunner, plan_file: Path):
        with collaborators():
            runner.invoke(cli, ["run", str(plan_file)])

        result = runner.invoke(cli, ["decide", str(plan_file), "9.9", "override"])

        assert result.exit_code == 1
        assert "Unknown target 9.9" in result.output

    def test_rejects_unknown_decision(self, runner: CliRunner, plan_file: Path):
        result = runner.invoke(cli, ["decide", str(plan_file), "1.1", "ignore"])

        assert result.exit_code == 2


class TestInvalidConfig:
    """Bad environment settings are reported, not raised."""

    @pytest.mark.parametrize(
        "args",
        [["status"], ["decide", "1.1", "resolve"]],
        ids=["status", "decide"],
    )
    def test_reports_invalid_granularity(self, plan_file: Path, args: list[str]):
        runner = CliRunner(env={"WORKPLAN_GRANULARITY": "hourly"})
        command, *rest = args

        result = runner.invoke(cli, [command, str(plan_file), *rest])

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "WORKPLAN_GRANULARITY" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)


class TestStatusAndResume:
    def test_status_without_state(self, runner: CliRunner, plan_file: Path):
        result = runner.invoke(cli, ["status", str(plan_file)])

        assert result.exit_code == 1
        assert "No saved state" in result.output

    def test_status_shows_tasks(self, runner: CliRunner, plan_file: Path):
        with collaborators():
            runner.invoke(cli, ["run", str(plan_file)])

        result = runner.invoke(cli, ["status", str(plan_file)])

        assert result.exit_code == 0
        assert "Authentication" in result.output
        assert "1.2" in result.output
        assert "complete" in result.output

    def test_resume_without_state(self, runner: CliRunner, plan_file: Path):
        with collaborators():
            result = runner.invoke(cli, ["resume", str(plan_file)])

        assert result.exit_code == 2
        assert "No saved state" in result.output


class TestModuleEntryPoint:
    def test_main_is_importable(self):
        from workplan.__main__ import main

        assert callable(main)
