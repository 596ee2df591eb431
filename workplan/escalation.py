"""Escalation gate and human decision handling.

The gate is a circuit breaker: once the same issue fingerprint survives
``strike_threshold`` consecutive review cycles (or a target runs out of
review cycles), it produces an EscalationReport and the target is frozen
until a human decides what to do.
"""

import copy
from typing import Protocol

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from workplan.errors import EscalationRequired
from workplan.issue_ledger import IssueLedger
from workplan.models import EscalationReport, HumanDecision

# Console for escalation output
console = Console()


class EscalationGate:
    """Decides when a target's review/fix loop must stop and ask a human.

    Attributes:
        strike_threshold: Consecutive cycles a fingerprint may persist
        max_cycles: Review cycles a target may consume before the gate fires
            even without a single persisting fingerprint
    """

    def __init__(self, strike_threshold: int = 3, max_cycles: int = 3) -> None:
        self.strike_threshold = strike_threshold
        self.max_cycles = max(max_cycles, strike_threshold)

    def check(self, target: str, ledger: IssueLedger) -> EscalationReport | None:
        """Return an escalation report if the target has hit a limit.

        Args:
            target: Target key ("1.2" or "M1")
            ledger: Ledger holding the target's review history

        Returns:
            EscalationReport when the gate fires, None otherwise
        """
        persisting = ledger.persisting_issues(target)
        if not persisting:
            return None

        issue, count = persisting[0]
        cycles = ledger.cycle_count(target)

        if count >= self.strike_threshold:
            reason = "persisting_issue"
        elif cycles >= self.max_cycles:
            reason = "cycle_limit"
        else:
            return None

        return EscalationReport(
            target=target,
            issue=copy.deepcopy(issue),
            persistence_count=count,
            cycle_count=cycles,
            fixes_attempted=copy.deepcopy(ledger.fix_attempts(target)),
            reason=reason,
            open_issues=copy.deepcopy(ledger.open_issues(target)),
        )

    def enforce(self, target: str, ledger: IssueLedger) -> None:
        """Raise EscalationRequired if check() fires."""
        report = self.check(target, ledger)
        if report is not None:
            raise EscalationRequired(report)


class DecisionProvider(Protocol):
    """Source of human decisions for escalated targets.

    The orchestrator blocks on decide() with no timeout.
    """

    async def decide(self, report: EscalationReport) -> HumanDecision: ...


def format_escalation_report(report: EscalationReport) -> str:
    """Render an escalation report as plain text.

    Args:
        report: The report to render

    Returns:
        Multi-line text listing the issue, fix history and open issues
    """
    issue = report.issue
    lines = [
        f"Escalation for {report.target} ({report.reason.replace('_', ' ')})",
        f"Issue: [{issue.severity.value}] {issue.location} - {issue.description}",
        f"Persisted for {report.persistence_count} consecutive review cycle(s) "
        f"out of {report.cycle_count}",
        "",
        "Fixes attempted:",
    ]
    if report.fixes_attempted:
        for attempt in report.fixes_attempted:
            commit = attempt.commit_id or "no commit"
            lines.append(
                f"  cycle {attempt.cycle_number}: {commit} "
                f"({len(attempt.fingerprints)} issue(s) addressed)"
            )
    else:
        lines.append("  none")

    if report.open_issues:
        lines.append("")
        lines.append("Open issues:")
        for open_issue in report.open_issues:
            lines.append(
                f"  - [{open_issue.severity.value}] {open_issue.location}: "
                f"{open_issue.description}"
            )

    lines.append("")
    lines.append("Decisions: " + " | ".join(d.value for d in HumanDecision))
    return "\n".join(lines)


class ConsoleDecisionProvider:
    """Ask the operator at the terminal how to handle an escalation."""

    def __init__(self, prompt_console: Console | None = None) -> None:
        self.console = prompt_console or console

    async def decide(self, report: EscalationReport) -> HumanDecision:
        self.console.print()
        self.console.print(
            Panel(
                format_escalation_report(report),
                title=f"{report.target} - NEEDS HUMAN DECISION",
                border_style="yellow",
            )
        )
        self.console.print(
            "[bold]override[/bold]: reset strike counts and keep fixing\n"
            "[bold]resolve[/bold]:  accept the current state as clean\n"
            "[bold]abandon[/bold]:  fail the milestone and stop the plan"
        )
        response = Prompt.ask(
            "Decision",
            choices=[d.value for d in HumanDecision],
            console=self.console,
        )
        return HumanDecision(response)
