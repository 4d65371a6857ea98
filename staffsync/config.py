"""Configuration loading for staffsync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class StoreConfig:
    db_path: str = "~/.staffsync/records.db"


@dataclass
class RemoteConfig:
    base_url: str = "https://dummy.restapiexample.com/api/v1"
    timeout_seconds: float = 5.0
    max_retries: int = 1  # Total attempts; 1 disables transport retries
    retry_backoff_seconds: float = 1.0


@dataclass
class SyncConfig:
    """Configuration for background refresh."""

    refresh_on_watch: bool = True
    refresh_interval_seconds: int = 300
    max_backoff_seconds: int = 3600


@dataclass
class Config:
    store: StoreConfig = field(default_factory=StoreConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with STAFFSYNC_ prefix."""
    return os.environ.get(f"STAFFSYNC_{key}", default)


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    if db_path := _get_env("DB_PATH"):
        config.store.db_path = db_path

    # Remote overrides
    if base_url := _get_env("REMOTE_URL"):
        config.remote.base_url = base_url
    if timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(timeout)
    if max_retries := _get_env("REMOTE_MAX_RETRIES"):
        config.remote.max_retries = int(max_retries)

    # Sync overrides
    if refresh_on_watch := _get_env("REFRESH_ON_WATCH"):
        config.sync.refresh_on_watch = _parse_bool(refresh_on_watch)
    if interval := _get_env("REFRESH_INTERVAL"):
        config.sync.refresh_interval_seconds = int(interval)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "store" in data:
                config.store = StoreConfig(
                    db_path=data["store"].get("db_path", config.store.db_path)
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                    retry_backoff_seconds=remote_data.get(
                        "retry_backoff_seconds", config.remote.retry_backoff_seconds
                    ),
                )

            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    refresh_on_watch=sync_data.get(
                        "refresh_on_watch", config.sync.refresh_on_watch
                    ),
                    refresh_interval_seconds=sync_data.get(
                        "refresh_interval_seconds",
                        config.sync.refresh_interval_seconds,
                    ),
                    max_backoff_seconds=sync_data.get(
                        "max_backoff_seconds", config.sync.max_backoff_seconds
                    ),
                )

    return _apply_env_overrides(config)
