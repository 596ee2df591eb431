"""Command-backed collaborators.

Each collaborator runs a configured shell command, writes a JSON request to
its stdin and parses a JSON response from its stdout. This lets any coding
agent CLI (or a plain script) act as Worker, Reviewer or Fixer.

Responses:
    worker:   {"status": "completed" | "blocked", "evidence": {...},
               "commit_id": "...", "reason": "..."}
    reviewer: {"issues": [{"severity", "location", "description"}, ...],
               "evidence": {...}, "tooling_missing": "pytest"}
    fixer:    {"evidence": {...}, "commit_id": "..."}
"""

import json
import logging
import shlex
import subprocess
from dataclasses import asdict, dataclass
from typing import Any

from workplan.errors import CollaboratorError, ReviewToolingMissingError, TaskBlockedError
from workplan.models import (
    Issue,
    ReviewReport,
    ReviewTarget,
    Severity,
    TaskSpec,
    WorkResult,
)

logger = logging.getLogger(__name__)


@dataclass
class CommandAgent:
    """Runs one collaborator command with JSON in and JSON out."""

    command: str
    timeout: int = 600
    cwd: str | None = None

    @property
    def executable(self) -> str:
        args = shlex.split(self.command)
        return args[0] if args else self.command

    async def invoke(self, request: dict[str, Any]) -> dict[str, Any]:
        """Run the command with ``request`` on stdin and parse its stdout.

        Args:
            request: JSON-serializable request payload

        Returns:
            Parsed JSON object from stdout

        Raises:
            FileNotFoundError: If the executable does not exist
            CollaboratorError: If the command fails, times out or prints
                invalid JSON
        """
        args = shlex.split(self.command)
        if not args:
            raise CollaboratorError("Collaborator command is empty")

        logger.debug(f"Invoking {args[0]} for role {request.get('role')}")
        try:
            result = subprocess.run(
                args,
                input=json.dumps(request),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise CollaboratorError(
                f"{args[0]} timed out after {self.timeout}s"
            ) from e

        if result.returncode != 0:
            raise CollaboratorError(
                f"{args[0]} exited with status {result.returncode}: "
                f"{result.stderr.strip()[:500]}"
            )

        try:
            output = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise CollaboratorError(f"Failed to parse {args[0]} JSON output: {e}") from e

        if not isinstance(output, dict):
            raise CollaboratorError(f"{args[0]} must print a JSON object")
        return output


def _spec_payload(spec: TaskSpec) -> dict[str, Any]:
    payload = asdict(spec)
    payload["acceptance_criteria"] = list(spec.acceptance_criteria)
    payload["work_type"] = spec.work_type.value
    return payload


def _target_payload(target: ReviewTarget) -> dict[str, Any]:
    return {
        "kind": target.kind,
        "key": target.key,
        "title": target.title,
        "tasks": [_spec_payload(spec) for spec in target.tasks],
    }


def _issue_payload(issue: Issue) -> dict[str, Any]:
    return {
        "severity": issue.severity.value,
        "location": issue.location,
        "description": issue.description,
        "fingerprint": issue.fingerprint,
    }


def _work_result(output: dict[str, Any]) -> WorkResult:
    return WorkResult(
        evidence=dict(output.get("evidence") or {}),
        commit_id=output.get("commit_id"),
    )


@dataclass
class CommandWorker:
    """Worker backed by a command.

    A command that cannot be run or fails to answer blocks only the task it
    was given.
    """

    agent: CommandAgent

    async def implement(self, task: TaskSpec) -> WorkResult:
        try:
            output = await self.agent.invoke({"role": "worker", "task": _spec_payload(task)})
        except FileNotFoundError as e:
            raise TaskBlockedError(task.task_id, f"worker command not found: {e}") from e
        except CollaboratorError as e:
            raise TaskBlockedError(task.task_id, f"worker failed: {e}") from e

        if output.get("status") == "blocked":
            raise TaskBlockedError(
                task.task_id, output.get("reason") or "worker reported blocked"
            )
        return _work_result(output)


@dataclass
class CommandReviewer:
    """Reviewer backed by a command.

    Any failure to get a usable review out of the command is reported as
    ReviewToolingMissingError, which the review loop records as a Critical
    issue.
    """

    agent: CommandAgent

    async def review(self, target: ReviewTarget, evidence: dict[str, Any]) -> ReviewReport:
        try:
            output = await self.agent.invoke(
                {"role": "reviewer", "target": _target_payload(target), "evidence": evidence}
            )
        except (FileNotFoundError, CollaboratorError) as e:
            raise ReviewToolingMissingError(self.agent.executable, str(e)) from e

        if output.get("tooling_missing"):
            raise ReviewToolingMissingError(str(output["tooling_missing"]))

        issues = []
        for raw in output.get("issues") or []:
            try:
                issues.append(
                    Issue(
                        severity=Severity(str(raw["severity"]).lower()),
                        location=str(raw.get("location", "")),
                        description=str(raw["description"]),
                    )
                )
            except (KeyError, TypeError, ValueError) as e:
                raise ReviewToolingMissingError(
                    self.agent.executable, f"reviewer returned an invalid issue {raw!r}"
                ) from e

        return ReviewReport(issues=issues, evidence=dict(output.get("evidence") or {}))


@dataclass
class CommandFixer:
    agent: CommandAgent

    async def fix(self, target: ReviewTarget, issues: list[Issue]) -> WorkResult:
        try:
            output = await self.agent.invoke(
                {
                    "role": "fixer",
                    "target": _target_payload(target),
                    "issues": [_issue_payload(issue) for issue in issues],
                }
            )
        except FileNotFoundError as e:
            raise CollaboratorError(f"Fixer command not found: {e}") from e
        return _work_result(output)
