"""Configuration for the work plan orchestrator.

Provides centralized configuration with sensible defaults and environment
variable overrides for review granularity, escalation thresholds,
collaborator commands, state persistence and telemetry.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from workplan.errors import OrchestratorError
from workplan.models import Granularity


@dataclass
class OrchestratorConfig:
    """Configuration for orchestrator execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Review policy
    granularity: Granularity = Granularity.BOTH
    strike_threshold: int = 3
    max_review_cycles: int = 3

    # Collaborator commands (JSON over stdin/stdout)
    worker_command: str | None = None
    reviewer_command: str | None = None
    fixer_command: str | None = None
    command_timeout_seconds: int = 600

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "workplan"

    # Notifications
    discord_webhook_url: str | None = None

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path("state"))

    def __post_init__(self) -> None:
        if self.strike_threshold < 1:
            raise OrchestratorError("strike_threshold must be at least 1")
        if self.max_review_cycles < self.strike_threshold:
            raise OrchestratorError(
                f"max_review_cycles ({self.max_review_cycles}) must be >= "
                f"strike_threshold ({self.strike_threshold})"
            )

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load config with environment variable overrides.

        Environment variables:
            WORKPLAN_GRANULARITY: per_task, per_milestone or both (default: both)
            WORKPLAN_MAX_REVIEW_CYCLES: Review cycles before escalation (default: 3)
            WORKPLAN_STATE_DIR: Directory for persisted plans (default: state)
            WORKPLAN_WORKER_CMD / WORKPLAN_REVIEWER_CMD / WORKPLAN_FIXER_CMD:
                Commands implementing the collaborators
            WORKPLAN_COMMAND_TIMEOUT: Collaborator timeout in seconds (default: 600)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
            DISCORD_WEBHOOK_URL: Webhook for escalation notifications
        """
        granularity = os.getenv("WORKPLAN_GRANULARITY", Granularity.BOTH.value)
        try:
            parsed_granularity = Granularity(granularity.lower())
        except ValueError:
            choices = ", ".join(g.value for g in Granularity)
            raise OrchestratorError(
                f"Invalid WORKPLAN_GRANULARITY '{granularity}' (choose from {choices})"
            ) from None

        try:
            max_cycles = int(os.getenv("WORKPLAN_MAX_REVIEW_CYCLES", "3"))
            timeout = int(os.getenv("WORKPLAN_COMMAND_TIMEOUT", "600"))
        except ValueError as e:
            raise OrchestratorError(f"Invalid numeric setting: {e}") from e

        return cls(
            granularity=parsed_granularity,
            max_review_cycles=max_cycles,
            worker_command=os.getenv("WORKPLAN_WORKER_CMD"),
            reviewer_command=os.getenv("WORKPLAN_REVIEWER_CMD"),
            fixer_command=os.getenv("WORKPLAN_FIXER_CMD"),
            command_timeout_seconds=timeout,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
            state_dir=Path(os.getenv("WORKPLAN_STATE_DIR", "state")),
        )
