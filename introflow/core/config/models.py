"""Pydantic configuration models for IntroFlow.

This module defines all configuration models used throughout IntroFlow.
For loading logic, see loader.py.
"""

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

from introflow.core.timezone import parse_time_window


def _validate_timezone(v: str) -> str:
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        raise ValueError(
            f"Invalid timezone '{v}'. Use IANA timezone identifiers "
            f"(e.g., 'America/Denver', 'Europe/London', 'UTC')."
        )
    return v


class PollingConfig(BaseModel):
    """Shared settings for a fixed-interval polling loop."""

    poll_interval_seconds: float = Field(default=30.0, description="Seconds between polls")
    jitter_seconds: float = Field(default=2.0, description="Random jitter added to each poll interval")
    batch_size: int = Field(default=10, description="Maximum rows handled per poll")


class EventProcessorConfig(PollingConfig):
    """Configuration for event delivery to registered handlers."""

    poll_interval_seconds: float = Field(default=10.0, description="Seconds between event polls")
    batch_size: int = Field(default=20, description="Maximum events delivered per poll")
    max_retries: int = Field(default=5, description="Delivery attempts before dead-lettering")


class TaskQueueConfig(PollingConfig):
    """Configuration for the leased task queue."""

    poll_interval_seconds: float = Field(default=30.0, description="Seconds between task polls")
    batch_size: int = Field(default=10, description="Maximum tasks claimed per poll")
    max_retries: int = Field(default=3, description="Default retry budget for new tasks")
    initial_backoff_seconds: int = Field(default=60, description="Backoff before the first retry")
    max_backoff_seconds: int = Field(default=3600, description="Upper bound on retry backoff")
    dead_letter_failed: bool = Field(default=True, description="Copy exhausted tasks to the dead-letter store")
    lease_timeout_seconds: int = Field(
        default=900, description="A processing task not finished within this time counts as a failed attempt"
    )


class RateLimitConfig(BaseModel):
    """Default per-user outbound message budget."""

    daily_limit: int = Field(default=10, description="Delivery units per local day")
    hourly_limit: int = Field(default=2, description="Delivery units per rolling hour")
    quiet_hours: str | None = Field(
        default="22:00-08:00",
        description="Local quiet window 'HH:MM-HH:MM' (may span midnight). None disables quiet hours",
    )
    default_timezone: str = Field(default="America/New_York", description="Timezone for users without one")
    active_window_minutes: int = Field(
        default=10, description="Inbound activity within this window waives quiet hours"
    )

    @field_validator("quiet_hours")
    @classmethod
    def validate_quiet_hours(cls, v: str | None) -> str | None:
        """Validate quiet hours format."""
        if v is not None:
            parse_time_window(v)
        return v

    @field_validator("default_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Validate timezone is a valid IANA timezone identifier."""
        return _validate_timezone(v)


class MessagingConfig(PollingConfig):
    """Configuration for the outbound message orchestrator."""

    poll_interval_seconds: float = Field(default=30.0, description="Seconds between delivery polls")
    batch_size: int = Field(default=50, description="Maximum due messages considered per poll")
    default_send_hour: int = Field(default=10, description="Local hour used when no best hour is known")
    reformulate_stale: bool = Field(
        default=True, description="Enqueue a reformulate_message task when a message goes stale"
    )


class PriorityConfig(BaseModel):
    """Configuration for the per-user priority ledger."""

    dormancy_threshold: int = Field(
        default=2, description="Presentations without action before an item turns dormant"
    )


class SagaConfig(BaseModel):
    """Defaults for introduction saga variants."""

    opportunity_bounty: int = Field(default=50, description="Default bounty for intro opportunities")
    offer_bounty: int = Field(default=25, description="Default bounty for intro offers")
    connection_request_bounty: int = Field(default=0, description="Default bounty for connection requests")
    opportunity_expiry_days: int = Field(default=30, description="Days before an open opportunity expires")
    connection_request_expiry_days: int = Field(default=30, description="Days before a connection request expires")
    offer_expiry_days: int = Field(default=14, description="Days before an unanswered offer expires")
    confirmation_grace_days: int = Field(
        default=3, description="Days after acceptance before the connector reminder"
    )
    confirmation_final_grace_days: int = Field(
        default=3, description="Days after the reminder before an unconfirmed offer expires"
    )
    notifying_agent: str = Field(default="agent_of_humans", description="Source agent for close-loop messages")
    expiry_sweep_interval_minutes: int = Field(
        default=60, description="Minutes between saga_expiry_sweep tasks enqueued by the worker"
    )


class ApiConfig(BaseModel):
    """Configuration for the operator API."""

    host: str = Field(default="127.0.0.1", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")


class LoggingConfig(BaseModel):
    """Configuration for logging system."""

    level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    directory: str = Field(default="logs", description="Directory for log files")
    max_size_mb: int = Field(default=10, description="Maximum log file size in MB before rotation")
    backup_count: int = Field(default=5, description="Number of backup log files to keep")


class Config(BaseModel):
    """Root configuration for IntroFlow."""

    db_path: str = Field(default="introflow.db", description="Path to SQLite database")
    logging: LoggingConfig = Field(default_factory=LoggingConfig, description="Logging configuration")
    events: EventProcessorConfig = Field(default_factory=EventProcessorConfig)
    tasks: TaskQueueConfig = Field(default_factory=TaskQueueConfig)
    messaging: MessagingConfig = Field(default_factory=MessagingConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    priorities: PriorityConfig = Field(default_factory=PriorityConfig)
    sagas: SagaConfig = Field(default_factory=SagaConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    model_config = {"extra": "allow"}
