"""Configuration package for the agency admin backend."""

from agencybrain.config.app_config import (
    AppConfig,
    CallAnalysisConfig,
    ChallengeConfig,
    DatabaseConfig,
    ProviderConfig,
    clear_config_cache,
    get_provider_config,
    load_app_config,
)

__all__ = [
    "AppConfig",
    "CallAnalysisConfig",
    "ChallengeConfig",
    "DatabaseConfig",
    "ProviderConfig",
    "clear_config_cache",
    "get_provider_config",
    "load_app_config",
]
