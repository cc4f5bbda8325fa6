"""
Configuration loading and validation.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


PROVIDERS = ("binance", "yahoo")


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/coinwatch.db"


@dataclass
class MarketDataConfig:
    """Candle data source configuration."""

    provider: str = "binance"
    base_url: str = "https://api.binance.com"
    request_timeout_seconds: float = 10
    cache_ttl_seconds: float = 5


@dataclass
class UniverseConfig:
    """Coin universe used for filtered monitors."""

    base_url: str = "https://api.coingecko.com/api/v3"
    per_page: int = 250
    pages: int = 2


@dataclass
class MonitorConfig:
    """New-entrant monitor settings."""

    default_cooldown_seconds: int = 600
    seed_on_first_evaluation: bool = True


@dataclass
class SpikeConfig:
    """Volume spike rule settings."""

    default_baseline_window: int = 20
    default_cooldown_seconds: int = 300
    fetch_workers: int = 8
    fetch_timeout_seconds: float = 15


@dataclass
class TelegramNotificationConfig:
    """Telegram notification settings."""

    bot_token: str = ""
    parse_mode: str = "Markdown"


@dataclass
class DiscordNotificationConfig:
    """Discord notification settings."""

    username: str = "coinwatch"
    include_chart_link: bool = True


@dataclass
class InAppNotificationConfig:
    """In-app inbox settings."""

    max_per_user: int = 50


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    telegram: TelegramNotificationConfig = field(
        default_factory=TelegramNotificationConfig
    )
    discord: DiscordNotificationConfig = field(
        default_factory=DiscordNotificationConfig
    )
    in_app: InAppNotificationConfig = field(default_factory=InAppNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"
    event_limit_cap: int = 500
    max_retries: int = 3
    retry_backoff_seconds: float = 0.5


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    market_data: MarketDataConfig = field(default_factory=MarketDataConfig)
    universe: UniverseConfig = field(default_factory=UniverseConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    spike: SpikeConfig = field(default_factory=SpikeConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        return re.sub(
            r"\$\{([^}]+)\}",
            lambda match: os.environ.get(match.group(1), ""),
            value,
        )
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _require_positive(section: dict[str, Any], name: str, label: str) -> None:
    value = section.get(name)
    if value is not None and value <= 0:
        raise ConfigValidationError(f"{label} must be positive, got {value}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path", DatabaseConfig.path)
    if not db_path:
        raise ConfigValidationError("Database path is required")

    if db_path != ":memory:":
        parent = Path(db_path).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            raise ConfigValidationError(f"Database path not writable: {parent}")

    market = config_dict.get("market_data") or {}
    provider = market.get("provider", MarketDataConfig.provider)
    if provider not in PROVIDERS:
        raise ConfigValidationError(
            f"Unknown market data provider: {provider} (expected one of {', '.join(PROVIDERS)})"
        )
    _require_positive(market, "request_timeout_seconds", "market_data.request_timeout_seconds")

    spike = config_dict.get("spike") or {}
    _require_positive(spike, "fetch_workers", "spike.fetch_workers")
    _require_positive(spike, "fetch_timeout_seconds", "spike.fetch_timeout_seconds")

    advanced = config_dict.get("advanced") or {}
    _require_positive(advanced, "event_limit_cap", "advanced.event_limit_cap")
    log_level = str(advanced.get("log_level", AdvancedConfig.log_level)).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigValidationError(f"Unknown log level: {log_level}")


def config_from_dict(config_dict: dict[str, Any]) -> AppConfig:
    """
    Build configuration from an already parsed mapping.

    Raises:
        ConfigValidationError: If configuration is invalid
    """
    config_dict = _substitute_env_vars(config_dict)
    _validate_config(config_dict)

    notif_dict = config_dict.get("notifications") or {}
    try:
        notifications = NotificationsConfig(
            telegram=TelegramNotificationConfig(**(notif_dict.get("telegram") or {})),
            discord=DiscordNotificationConfig(**(notif_dict.get("discord") or {})),
            in_app=InAppNotificationConfig(**(notif_dict.get("in_app") or {})),
        )

        advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
        advanced.log_level = str(advanced.log_level).upper()

        return AppConfig(
            database=DatabaseConfig(**(config_dict.get("database") or {})),
            market_data=MarketDataConfig(**(config_dict.get("market_data") or {})),
            universe=UniverseConfig(**(config_dict.get("universe") or {})),
            monitor=MonitorConfig(**(config_dict.get("monitor") or {})),
            spike=SpikeConfig(**(config_dict.get("spike") or {})),
            notifications=notifications,
            advanced=advanced,
        )
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return config_from_dict(raw_config)
