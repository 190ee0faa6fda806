"""Configuration package for IntroFlow.

This package provides Pydantic configuration models and loading utilities.
"""

from introflow.core.config.loader import (
    check_unexpanded_vars,
    expand_env_vars,
    expand_env_vars_recursive,
    load_config,
)
from introflow.core.config.models import (
    ApiConfig,
    Config,
    EventProcessorConfig,
    LoggingConfig,
    MessagingConfig,
    PollingConfig,
    PriorityConfig,
    RateLimitConfig,
    SagaConfig,
    TaskQueueConfig,
)

__all__ = [
    # Models
    "ApiConfig",
    "Config",
    "EventProcessorConfig",
    "LoggingConfig",
    "MessagingConfig",
    "PollingConfig",
    "PriorityConfig",
    "RateLimitConfig",
    "SagaConfig",
    "TaskQueueConfig",
    # Loaders
    "check_unexpanded_vars",
    "expand_env_vars",
    "expand_env_vars_recursive",
    "load_config",
]
