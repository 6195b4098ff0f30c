"""Configuration for swarm sessions.

Provides centralized configuration with sensible defaults and environment
variable overrides for pool size, retry policy, timeouts, and telemetry.
"""

import os
from dataclasses import dataclass, field

DEFAULT_STUB_PATTERNS = ["Not implemented", "TODO: implement", "TODO: Implement"]


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    return value if value else None


@dataclass
class SwarmConfig:
    """Configuration for one orchestration session.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method. CLI flags are applied on
    top of the loaded config.
    """

    # Pool and retry settings
    max_agents: int = 3
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    avoid_collisions: bool = True

    # Agent settings
    agent_model: str | None = None
    reviewer_model: str | None = None
    agent_timeout_seconds: float = 1800.0

    # Validation settings
    command_timeout_seconds: float = 60.0
    build_timeout_seconds: float = 600.0
    layer_timeout_seconds: float = 900.0
    stub_patterns: list[str] = field(
        default_factory=lambda: list(DEFAULT_STUB_PATTERNS)
    )
    review_enabled: bool = True
    enrich_contracts: bool = False

    # Escalation and cancellation
    escalation_timeout_seconds: float | None = 1800.0
    cancel_grace_seconds: float = 10.0

    # Repository layout
    tag_prefix: str = "swarm"
    worktree_dir: str = ".worktrees"
    log_dir: str = ".logs"
    preserve_failed_branches: bool = False
    merge_to_base: bool = False

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "swarm"

    # Notifications
    discord_webhook_url: str | None = None

    @classmethod
    def from_env(cls) -> "SwarmConfig":
        """Load config with environment variable overrides.

        Environment variables:
            SWARM_MAX_AGENTS: Override max_agents (default: 3)
            SWARM_MAX_ATTEMPTS: Override max_attempts (default: 3)
            SWARM_RETRY_DELAY: Override retry_delay_seconds (default: 1.0)
            SWARM_AVOID_COLLISIONS: Serialise tasks sharing critical files
                (default: true)
            SWARM_MODEL: Model identifier passed to coding agents
            SWARM_REVIEW_MODEL: Model identifier passed to reviewer agents
            SWARM_AGENT_TIMEOUT: Override agent_timeout_seconds (default: 1800)
            SWARM_BUILD_TIMEOUT: Override build_timeout_seconds (default: 600)
            SWARM_ESCALATION_TIMEOUT: Seconds before an unanswered escalation
                aborts; 0 waits forever (default: 1800)
            SWARM_REVIEW: Enable reviewer layers (default: true)
            SWARM_ENRICH_CONTRACTS: Enable pattern enrichment (default: false)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
            DISCORD_WEBHOOK_URL: Webhook for failure and escalation notices
        """
        escalation_timeout = float(os.getenv("SWARM_ESCALATION_TIMEOUT", "1800"))
        return cls(
            max_agents=int(os.getenv("SWARM_MAX_AGENTS", "3")),
            max_attempts=int(os.getenv("SWARM_MAX_ATTEMPTS", "3")),
            retry_delay_seconds=float(os.getenv("SWARM_RETRY_DELAY", "1.0")),
            avoid_collisions=_env_bool("SWARM_AVOID_COLLISIONS", True),
            agent_model=_env_optional("SWARM_MODEL"),
            reviewer_model=_env_optional("SWARM_REVIEW_MODEL"),
            agent_timeout_seconds=float(os.getenv("SWARM_AGENT_TIMEOUT", "1800")),
            build_timeout_seconds=float(os.getenv("SWARM_BUILD_TIMEOUT", "600")),
            escalation_timeout_seconds=escalation_timeout or None,
            review_enabled=_env_bool("SWARM_REVIEW", True),
            enrich_contracts=_env_bool("SWARM_ENRICH_CONTRACTS", False),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
            discord_webhook_url=_env_optional("DISCORD_WEBHOOK_URL"),
        )
