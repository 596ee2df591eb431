"""CLI for the work plan orchestrator.

Provides commands to run, resume, inspect and validate work plans, and to
record human decisions for escalated tasks and milestones.
"""

import asyncio
import logging
import signal
import sys
from typing import Callable

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from workplan.command_agents import (
    CommandAgent,
    CommandFixer,
    CommandReviewer,
    CommandWorker,
)
from workplan.config import OrchestratorConfig
from workplan.dependency_resolver import order_tasks
from workplan.discord_notifier import (
    DiscordEmbed,
    format_escalation,
    format_milestone_completed,
    format_run_summary,
    format_task_blocked,
    send_discord_message,
)
from workplan.errors import OrchestratorError, PlanStateNotFoundError
from workplan.escalation import ConsoleDecisionProvider
from workplan.lock import PlanLock
from workplan.models import (
    EscalationReport,
    Granularity,
    HumanDecision,
    Milestone,
    MilestoneStatus,
    Plan,
    Task,
    TaskStatus,
)
from workplan.orchestrator import Orchestrator, RunResult
from workplan.plan_store import DecisionRecorded, WorkPlanStore, read_plan_source
from workplan.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    "complete": "green",
    "completed": "green",
    "awaiting_review": "cyan",
    "reviewing": "cyan",
    "in_progress": "cyan",
    "dispatched": "cyan",
    "blocked": "red",
    "abandoned": "red",
    "escalated": "yellow",
    "needs_human": "yellow",
    "cancelled": "yellow",
    "pending": "white",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _execution_options(func: Callable) -> Callable:
    """Options shared by run and resume."""
    func = click.option(
        "--verbose", "-v", is_flag=True, default=False, help="Show debug logging"
    )(func)
    func = click.option(
        "--notify/--no-notify",
        default=False,
        help="Send Discord notifications (requires DISCORD_WEBHOOK_URL)",
    )(func)
    func = click.option(
        "--interactive/--no-interactive",
        default=False,
        help="Prompt for a decision when a target escalates",
    )(func)
    func = click.option(
        "--granularity",
        "-g",
        type=click.Choice([g.value for g in Granularity]),
        default=None,
        help="Where to run the review/fix loop (default: WORKPLAN_GRANULARITY or both)",
    )(func)
    return func


@click.group()
@click.version_option(package_name="workplan-orchestrator")
def cli() -> None:
    """Workplan - execute work plans through a review/fix loop."""
    pass


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
@_execution_options
def run(
    plan_file: str,
    granularity: str | None,
    interactive: bool,
    notify: bool,
    verbose: bool,
) -> None:
    """Start a fresh run of PLAN_FILE (markdown or JSON)."""
    _configure_logging(verbose)
    result = asyncio.run(
        _execute(plan_file, resume=False, granularity=granularity,
                 interactive=interactive, notify=notify)
    )
    sys.exit(_exit_code(result))


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
@_execution_options
def resume(
    plan_file: str,
    granularity: str | None,
    interactive: bool,
    notify: bool,
    verbose: bool,
) -> None:
    """Resume PLAN_FILE from its persisted state."""
    _configure_logging(verbose)
    result = asyncio.run(
        _execute(plan_file, resume=True, granularity=granularity,
                 interactive=interactive, notify=notify)
    )
    sys.exit(_exit_code(result))


def _exit_code(result: RunResult | None) -> int:
    if result is None:
        return 2
    return 0 if result.status == "completed" else 1


def _build_collaborators(
    config: OrchestratorConfig,
) -> tuple[CommandWorker, CommandReviewer, CommandFixer]:
    """Create command-backed collaborators from configuration.

    The fixer falls back to the worker command when none is configured.

    Raises:
        OrchestratorError: If the worker or reviewer command is not set
    """
    if not config.worker_command or not config.reviewer_command:
        raise OrchestratorError(
            "WORKPLAN_WORKER_CMD and WORKPLAN_REVIEWER_CMD must be set"
        )

    def agent(command: str) -> CommandAgent:
        return CommandAgent(command, timeout=config.command_timeout_seconds)

    return (
        CommandWorker(agent(config.worker_command)),
        CommandReviewer(agent(config.reviewer_command)),
        CommandFixer(agent(config.fixer_command or config.worker_command)),
    )


async def _execute(
    plan_file: str,
    resume: bool,
    granularity: str | None = None,
    interactive: bool = False,
    notify: bool = False,
) -> RunResult | None:
    """Internal async implementation of run and resume."""
    try:
        config = OrchestratorConfig.from_env()
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None

    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    store = WorkPlanStore(config.state_dir)
    plan_id = store.plan_id_for(plan_file)

    webhook = config.discord_webhook_url if notify else None
    if notify and not webhook:
        console.print("[yellow]--notify ignored: DISCORD_WEBHOOK_URL is not set[/yellow]")
    pending: list[asyncio.Task] = []

    def send(embed: DiscordEmbed) -> None:
        if webhook:
            pending.append(asyncio.create_task(send_discord_message(webhook, embed)))

    def on_task_complete(task: Task) -> None:
        console.print(f"Task {task.id}: [bold green]COMPLETE[/bold green] {task.title}")

    def on_milestone_complete(milestone: Milestone) -> None:
        console.print(
            f"[bold green]Milestone {milestone.index} complete:[/bold green] "
            f"{milestone.title}"
        )
        send(format_milestone_completed(milestone))

    def on_blocked(task: Task, reason: str) -> None:
        console.print(f"Task {task.id}: [bold red]BLOCKED[/bold red] {reason}")
        send(format_task_blocked(task.key, task.title, reason))

    def on_escalation(report: EscalationReport) -> None:
        console.print(
            f"{report.target}: [bold yellow]ESCALATED[/bold yellow] "
            f"{report.issue.description}"
        )
        send(format_escalation(plan_id, report))

    try:
        worker, reviewer, fixer = _build_collaborators(config)
        with PlanLock(config.state_dir, plan_id):
            if resume:
                console.print(f"[bold]Resuming plan:[/bold] {plan_id}")
                plan = store.resume(plan_file)
            else:
                if store.exists(plan_file):
                    console.print(
                        f"[yellow]Replacing saved state for {plan_id} "
                        "(use 'workplan resume' to continue it)[/yellow]"
                    )
                console.print(f"[bold]Starting plan:[/bold] {plan_id}")
                plan = store.load(plan_file)

            orchestrator = Orchestrator(
                store,
                worker,
                reviewer,
                fixer,
                config=config,
                granularity=Granularity(granularity) if granularity else None,
                decision_provider=ConsoleDecisionProvider(console) if interactive else None,
                tracer=tracer,
                on_task_complete=on_task_complete,
                on_milestone_complete=on_milestone_complete,
                on_escalation=on_escalation,
                on_blocked=on_blocked,
            )
            _install_interrupt_handler(orchestrator)
            result = await orchestrator.run(plan)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        return None
    finally:
        if pending:
            await asyncio.gather(*pending)

    _print_run_summary(result)
    if webhook:
        await send_discord_message(
            webhook,
            format_run_summary(
                plan_id,
                result.status,
                result.completed_tasks,
                result.total_tasks,
                result.duration_seconds,
                escalations=len(result.escalations),
                blocked=len(result.blocked),
            ),
        )
    return result


def _install_interrupt_handler(orchestrator: Orchestrator) -> None:
    """Turn Ctrl-C into a cooperative cancel at the next cycle boundary."""

    def handle() -> None:
        console.print(
            "\n[yellow]Cancelling after the current step "
            "(state is saved; use 'workplan resume')[/yellow]"
        )
        orchestrator.request_cancel()

    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, handle)
    except (NotImplementedError, RuntimeError):
        # Signal handlers unavailable (Windows or non-main thread)
        pass


def _print_run_summary(result: RunResult) -> None:
    color = STATUS_COLORS.get(result.status, "white")
    console.print(
        f"\n[bold {color}]Plan {result.status.replace('_', ' ').upper()}"
        f"[/bold {color}]"
    )
    console.print(f"  Tasks: {result.completed_tasks}/{result.total_tasks} complete")
    console.print(f"  Duration: {result.duration_seconds:.0f}s")

    for task_key, reason in result.blocked.items():
        console.print(f"  [red]Blocked {task_key}:[/red] {reason}")
    for report in result.escalations:
        console.print(
            f"  [yellow]Escalated {report.target}:[/yellow] {report.issue.description}"
        )
    if result.escalations:
        console.print(
            "  Record a decision with 'workplan decide PLAN_FILE TARGET "
            "{override,resolve,abandon}', then 'workplan resume PLAN_FILE'."
        )


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
def status(plan_file: str) -> None:
    """Show the persisted state of PLAN_FILE."""
    try:
        config = OrchestratorConfig.from_env()
        plan = WorkPlanStore(config.state_dir).read(plan_file)
    except PlanStateNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("Use 'workplan run' to start a new run.")
        sys.exit(1)
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(_status_table(plan))

    if plan.decisions:
        console.print("[bold]Pending decisions:[/bold]")
        for key, decision in plan.decisions.items():
            console.print(f"  {key}: {decision.value}")
    if plan.abandoned:
        console.print("[red]Plan was abandoned[/red]")


def _colored(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/{color}]"


def _status_table(plan: Plan) -> Table:
    table = Table(title=f"{plan.title or plan.plan_id}")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Reviews", justify="right")
    table.add_column("Notes")

    for milestone in plan.milestones:
        note = ""
        if milestone.escalation:
            note = milestone.escalation.issue.description
        table.add_row(
            f"[bold]{milestone.key}[/bold]",
            f"[bold]{milestone.title}[/bold]",
            _colored(milestone.status.value),
            str(len(milestone.reviews)),
            note,
        )
        for task in milestone.tasks:
            if task.status == TaskStatus.BLOCKED:
                note = task.blocked_reason or ""
            elif task.escalation is not None:
                note = task.escalation.issue.description
            else:
                note = task.commit_id or ""
            table.add_row(
                task.key,
                task.title,
                _colored(task.status.value),
                str(len(task.reviews)),
                note,
            )
    return table


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
def validate(plan_file: str) -> None:
    """Check PLAN_FILE structure and print the execution order."""
    try:
        plan = read_plan_source(plan_file)
    except OrchestratorError as e:
        console.print(f"[red]Invalid plan:[/red] {e}")
        sys.exit(1)

    console.print(f"[green]Plan is valid:[/green] {plan.title or plan.plan_id}")
    for milestone in plan.milestones:
        order = " -> ".join(t.key for t in order_tasks(milestone.tasks))
        console.print(f"  Milestone {milestone.index} ({milestone.title}): {order}")


@cli.command()
@click.argument("plan_file", type=click.Path(dir_okay=False))
@click.argument("target")
@click.argument("decision", type=click.Choice([d.value for d in HumanDecision]))
def decide(plan_file: str, target: str, decision: str) -> None:
    """Record a DECISION for an escalated TARGET (e.g. 1.2 or M1).

    The decision is applied by the next 'workplan resume'.
    """
    try:
        config = OrchestratorConfig.from_env()
        store = WorkPlanStore(config.state_dir)
        with PlanLock(config.state_dir, store.plan_id_for(plan_file)):
            plan = store.read(plan_file)
            try:
                resolved = plan.target(target)
            except (KeyError, ValueError):
                raise OrchestratorError(f"Unknown target {target}") from None

            escalated = (
                resolved.status == TaskStatus.ESCALATED
                if isinstance(resolved, Task)
                else resolved.status == MilestoneStatus.ESCALATED
                and resolved.escalation is not None
            )
            if not escalated:
                raise OrchestratorError(f"{resolved.key} is not escalated")

            store.persist(plan, DecisionRecorded(resolved.key, HumanDecision(decision)))
    except OrchestratorError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(
        f"Recorded [bold]{decision}[/bold] for {resolved.key}. "
        "Run 'workplan resume' to apply it."
    )


def main() -> None:
    """Main entry point for the workplan CLI."""
    cli()


if __name__ == "__main__":
    main()
