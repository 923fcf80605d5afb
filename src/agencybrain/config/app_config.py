"""Application configuration loader.

Loads centralized configuration from data/config/app_config_v1.yaml
(or the file named by AGENCYBRAIN_CONFIG) with built-in defaults.

Usage:
    from agencybrain.config.app_config import load_app_config

    config = load_app_config()
    model = config.call_analysis.model
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

# Config file path (relative to project root)
CONFIG_FILE = Path("data/config/app_config_v1.yaml")
CONFIG_ENV_VAR = "AGENCYBRAIN_CONFIG"


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""

    base_url: str | None
    default_model: str
    api_key_env: str | None = None
    supports_json_object: bool = True

    def get_api_key(self) -> str | None:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class CallAnalysisConfig:
    """Settings for transcript scoring."""

    provider: str = "openai"
    model: str = "gpt-4o"
    temperature: float = 0.3
    max_tokens: int = 4096


@dataclass
class ChallengeConfig:
    """Settings for the Challenge product."""

    default_timezone: str = "America/New_York"
    start_cutoff_hour: int = 17
    monday_options: int = 8


@dataclass
class DatabaseConfig:
    """SQLite location."""

    path: str = "db/agencybrain.db"


@dataclass
class AppConfig:
    """Application-wide configuration."""

    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    call_analysis: CallAnalysisConfig = field(default_factory=CallAnalysisConfig)
    challenge: ChallengeConfig = field(default_factory=ChallengeConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


# Module-level cache
_cached_config: AppConfig | None = None


def _get_defaults() -> dict[str, Any]:
    """Get default configuration values."""
    return {
        "providers": {
            "openai": {
                "base_url": "https://api.openai.com/v1",
                "default_model": "gpt-4o",
                "api_key_env": "OPENAI_API_KEY",
            },
            "lmstudio": {
                "base_url": "http://localhost:1234/v1",
                "default_model": "llama-3.2-3b-instruct",
                "api_key_env": None,
                "supports_json_object": False,
            },
        },
        "call_analysis": {
            "provider": "openai",
            "model": "gpt-4o",
            "temperature": 0.3,
            "max_tokens": 4096,
        },
        "challenge": {
            "default_timezone": "America/New_York",
            "start_cutoff_hour": 17,
            "monday_options": 8,
        },
        "database": {
            "path": "db/agencybrain.db",
        },
    }


def _parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse configuration dictionary into AppConfig object."""
    defaults = _get_defaults()

    providers = {}
    for name, pconfig in (data.get("providers") or defaults["providers"]).items():
        providers[name] = ProviderConfig(
            base_url=pconfig.get("base_url"),
            default_model=pconfig.get("default_model", "default"),
            api_key_env=pconfig.get("api_key_env"),
            supports_json_object=bool(pconfig.get("supports_json_object", True)),
        )

    ca_data = {**defaults["call_analysis"], **(data.get("call_analysis") or {})}
    call_analysis = CallAnalysisConfig(
        provider=ca_data["provider"],
        model=ca_data["model"],
        temperature=float(ca_data["temperature"]),
        max_tokens=int(ca_data["max_tokens"]),
    )

    ch_data = {**defaults["challenge"], **(data.get("challenge") or {})}
    challenge = ChallengeConfig(
        default_timezone=ch_data["default_timezone"],
        start_cutoff_hour=int(ch_data["start_cutoff_hour"]),
        monday_options=int(ch_data["monday_options"]),
    )

    db_data = {**defaults["database"], **(data.get("database") or {})}
    database = DatabaseConfig(path=db_data["path"])

    return AppConfig(
        providers=providers,
        call_analysis=call_analysis,
        challenge=challenge,
        database=database,
    )


def _config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    return Path(env_path) if env_path else CONFIG_FILE


def load_app_config(force_reload: bool = False) -> AppConfig:
    """Load application config, falling back to defaults.

    Args:
        force_reload: If True, ignore cached config and reload from file.

    Returns:
        AppConfig object with all settings.
    """
    global _cached_config

    if _cached_config is not None and not force_reload:
        return _cached_config

    path = _config_path()
    data: dict[str, Any]

    if path.exists():
        logger.debug("loading_app_config", source=str(path))
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    else:
        logger.info("using_default_config")
        data = _get_defaults()

    _cached_config = _parse_config(data)
    return _cached_config


def get_provider_config(provider: str) -> ProviderConfig | None:
    """Get configuration for a specific provider.

    Args:
        provider: Provider name (e.g., "openai", "lmstudio")

    Returns:
        ProviderConfig or None if provider not found.
    """
    config = load_app_config()
    return config.providers.get(provider)


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when config is modified at runtime.
    """
    global _cached_config
    _cached_config = None
