"""Discord webhook notifications for plan execution events.

Escalations, blocked tasks, completed milestones and run summaries are
posted as embeds. Webhook failures are logged and never raised, so a
broken webhook cannot stop a run.
"""

import logging
from dataclasses import dataclass

import httpx

from workplan.escalation import format_escalation_report
from workplan.models import EscalationReport, Milestone, TaskStatus

logger = logging.getLogger(__name__)

COLORS = {
    "completed": 0x2ECC71,  # Green
    "blocked": 0xE74C3C,  # Red
    "escalation": 0xF39C12,  # Orange
    "milestone_completed": 0x9B59B6,  # Purple
    "stopped": 0x95A5A6,  # Grey
}

# Discord rejects embed descriptions above this length
MAX_DESCRIPTION_LENGTH = 4096
TRUNCATION_SUFFIX = "... [truncated]"


@dataclass
class DiscordEmbed:
    """One embed in a webhook message.

    Attributes:
        title: Bold title line
        description: Body text, at most MAX_DESCRIPTION_LENGTH characters
        color: Sidebar color as an int (e.g. 0x2ECC71)
        fields: Optional name/value/inline dicts
        timestamp: Optional ISO 8601 timestamp
    """

    title: str
    description: str
    color: int
    fields: list[dict] | None = None
    timestamp: str | None = None

    def to_dict(self) -> dict:
        result = {
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }
        if self.fields is not None:
            result["fields"] = self.fields
        if self.timestamp is not None:
            result["timestamp"] = self.timestamp
        return result


async def send_discord_message(webhook_url: str, embed: DiscordEmbed) -> None:
    """Post an embed to a Discord webhook.

    Uses a 5 second timeout. Errors are logged as warnings, never raised.
    """
    payload = {"embeds": [embed.to_dict()]}

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    f"Discord webhook returned {response.status_code}: {response.text}"
                )
    except httpx.TimeoutException:
        logger.warning("Discord webhook request timed out")
    except httpx.ConnectError:
        logger.warning("Failed to connect to Discord webhook")
    except Exception as e:
        logger.warning(f"Discord webhook error: {e}")


def _truncate_text(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def _format_duration(seconds: float) -> str:
    """Render a duration as "45s", "2m 30s" or "1h 15m"."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        minutes, secs = int(seconds // 60), int(seconds % 60)
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, minutes = int(seconds // 3600), int((seconds % 3600) // 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def format_escalation(plan_id: str, report: EscalationReport) -> DiscordEmbed:
    """Format an escalation report, including every fix attempted.

    Args:
        plan_id: Plan the escalated target belongs to
        report: Report produced by the escalation gate

    Returns:
        DiscordEmbed ready to send
    """
    body = "\n".join(
        [
            f"Plan {plan_id}",
            "",
            "```",
            format_escalation_report(report),
            "```",
            "",
            f"Decide with: `workplan decide <plan> {report.target} <decision>`",
        ]
    )
    return DiscordEmbed(
        title=f"🚨 Human Decision Needed: {report.target}",
        description=_truncate_text(body, MAX_DESCRIPTION_LENGTH),
        color=COLORS["escalation"],
        fields=[
            {"name": "Severity", "value": report.issue.severity.value, "inline": True},
            {
                "name": "Persisted",
                "value": f"{report.persistence_count} cycles",
                "inline": True,
            },
            {
                "name": "Fixes",
                "value": str(len(report.fixes_attempted)),
                "inline": True,
            },
        ],
        timestamp=report.created_at,
    )


def format_task_blocked(task_id: str, title: str, reason: str) -> DiscordEmbed:
    description = _truncate_text(
        f"Task {task_id}: {title}\n\n**Reason:**\n{reason}", MAX_DESCRIPTION_LENGTH
    )
    return DiscordEmbed(
        title="⛔ Task Blocked",
        description=description,
        color=COLORS["blocked"],
    )


def format_milestone_completed(milestone: Milestone) -> DiscordEmbed:
    """Format a milestone that passed its final review."""
    completed = sum(1 for t in milestone.tasks if t.status == TaskStatus.COMPLETE)
    cycles = len([c for c in milestone.reviews if c.round == milestone.review_round])
    return DiscordEmbed(
        title=f"🎉 Milestone {milestone.index} Complete: {milestone.title}",
        description=f"Completed {completed}/{len(milestone.tasks)} tasks.",
        color=COLORS["milestone_completed"],
        fields=[
            {
                "name": "Tasks",
                "value": f"{completed}/{len(milestone.tasks)}",
                "inline": True,
            },
            {"name": "Milestone reviews", "value": str(cycles), "inline": True},
        ],
    )


def format_run_summary(
    plan_id: str,
    status: str,
    completed: int,
    total: int,
    duration_s: float,
    escalations: int = 0,
    blocked: int = 0,
) -> DiscordEmbed:
    """Format the end-of-run summary.

    Args:
        plan_id: Plan identifier
        status: RunResult status (completed, blocked, needs_human, ...)
        completed: Tasks complete
        total: Tasks in the plan
        duration_s: Wall-clock duration of the run
        escalations: Unresolved escalations
        blocked: Blocked tasks

    Returns:
        DiscordEmbed ready to send
    """
    color = COLORS["completed"] if status == "completed" else COLORS["stopped"]
    if status == "needs_human":
        color = COLORS["escalation"]

    return DiscordEmbed(
        title=f"Plan {plan_id}: {status.replace('_', ' ')}",
        description=(
            f"{completed}/{total} tasks complete in {_format_duration(duration_s)}."
        ),
        color=color,
        fields=[
            {"name": "Tasks", "value": f"{completed}/{total}", "inline": True},
            {"name": "Escalations", "value": str(escalations), "inline": True},
            {"name": "Blocked", "value": str(blocked), "inline": True},
        ],
    )
