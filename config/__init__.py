"""Configuration for the video maker pipeline."""

from .settings import (
    AppConfig,
    PredictionServiceConfig,
    PollingConfig,
    BatchConfig,
    TemporalConfig,
    LoggingConfig,
    ApiServerConfig,
    get_config,
    reload_config,
    setup_logging
)
from .retry_policies import PollingPolicy, create_polling_policy

__all__ = [
    "AppConfig",
    "PredictionServiceConfig",
    "PollingConfig",
    "BatchConfig",
    "TemporalConfig",
    "LoggingConfig",
    "ApiServerConfig",
    "PollingPolicy",
    "create_polling_policy",
    "get_config",
    "reload_config",
    "setup_logging"
]
