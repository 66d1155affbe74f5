"""Configuration for fixpipe.

Provides centralized configuration with sensible defaults and environment
variable overrides for execution, merge, agent, and telemetry settings.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from fixpipe.retry import RetryConfig


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return int(value)


@dataclass
class PipelineConfig:
    """Configuration for pipeline execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Execution settings
    base_branch: str = "main"
    max_concurrent: int = 3
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_on_any_failure: bool = False

    # Merge settings
    merge_max_retries: int = 3
    skip_merge: bool = False

    # Agent settings
    agent_command: str = "claude"
    # None means agent sessions run without a deadline
    agent_timeout_seconds: int | None = None
    model: str | None = None
    max_turns: int = 50

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "fixpipe"

    # Notifications
    webhook_url: str | None = None

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path(".fixpipe"))

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Load config with environment variable overrides.

        Environment variables:
            FIXPIPE_BASE_BRANCH: Target branch for merges (default: main)
            FIXPIPE_MAX_CONCURRENT: Concurrent units of work (default: 3)
            FIXPIPE_MAX_RETRIES: Agent attempts per unit (default: 3)
            FIXPIPE_RETRY_DELAY_MS: Base retry delay (default: 1000)
            FIXPIPE_RETRY_ANY_FAILURE: Retry every agent failure (default: false)
            FIXPIPE_MERGE_MAX_RETRIES: Merge attempts per branch (default: 3)
            FIXPIPE_SKIP_MERGE: Leave branches unmerged (default: false)
            FIXPIPE_AGENT_COMMAND: Agent CLI binary (default: claude)
            FIXPIPE_AGENT_TIMEOUT: Agent session deadline in seconds (default: none)
            FIXPIPE_MODEL: Model override for agent sessions (default: none)
            FIXPIPE_MAX_TURNS: Agent turn limit (default: 50)
            FIXPIPE_STATE_DIR: State directory (default: .fixpipe)
            FIXPIPE_WEBHOOK_URL: Discord webhook for notifications (default: none)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        return cls(
            base_branch=os.getenv("FIXPIPE_BASE_BRANCH", "main"),
            max_concurrent=int(os.getenv("FIXPIPE_MAX_CONCURRENT", "3")),
            max_retries=int(os.getenv("FIXPIPE_MAX_RETRIES", "3")),
            retry_delay_ms=int(os.getenv("FIXPIPE_RETRY_DELAY_MS", "1000")),
            retry_on_any_failure=_env_bool("FIXPIPE_RETRY_ANY_FAILURE", False),
            merge_max_retries=int(os.getenv("FIXPIPE_MERGE_MAX_RETRIES", "3")),
            skip_merge=_env_bool("FIXPIPE_SKIP_MERGE", False),
            agent_command=os.getenv("FIXPIPE_AGENT_COMMAND", "claude"),
            agent_timeout_seconds=_env_optional_int("FIXPIPE_AGENT_TIMEOUT"),
            model=os.getenv("FIXPIPE_MODEL") or None,
            max_turns=int(os.getenv("FIXPIPE_MAX_TURNS", "50")),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
            webhook_url=os.getenv("FIXPIPE_WEBHOOK_URL") or None,
            state_dir=Path(os.getenv("FIXPIPE_STATE_DIR", ".fixpipe")),
        )

    def retry_config(self) -> RetryConfig:
        """Build the retry settings used for agent sessions."""
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            retry_on_any_failure=self.retry_on_any_failure,
        )
