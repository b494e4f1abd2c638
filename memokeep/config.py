"""
Configuration management for memokeep stores.

The configuration is stored as a TOML file in the store directory.
It holds the retry policy for background jobs and the address of the
enrichment API. Environment variables override the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .jobs import MAX_RETRIES, RETRY_BACKOFF_BASE, RETRY_BACKOFF_MAX, RetryPolicy


CONFIG_FILENAME = "memokeep.toml"
CONFIG_VERSION = 1
DATABASE_FILENAME = "memokeep.db"

DEFAULT_POLL_INTERVAL = 5.0


@dataclass
class RetryConfig:
    """Retry policy for background jobs."""
    max_retries: int = MAX_RETRIES
    backoff_base: float = RETRY_BACKOFF_BASE
    backoff_max: float = RETRY_BACKOFF_MAX
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
        )


@dataclass
class RemoteConfig:
    """Enrichment API endpoint. Disabled when api_url is empty."""
    api_url: str = ""
    api_key: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)


@dataclass
class PipelineConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    retry: RetryConfig = field(default_factory=RetryConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite record store."""
        return self.path / DATABASE_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_default_store_path() -> Path:
    """Store directory: MEMOKEEP_STORE_PATH, else ~/.memokeep."""
    env_path = os.environ.get("MEMOKEEP_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path.home() / ".memokeep"


def load_config(store_path: Path) -> PipelineConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    retry = data.get("retry", {})
    remote = data.get("remote", {})
    try:
        retry_config = RetryConfig(
            max_retries=int(retry.get("max_retries", MAX_RETRIES)),
            backoff_base=float(retry.get("backoff_base", RETRY_BACKOFF_BASE)),
            backoff_max=float(retry.get("backoff_max", RETRY_BACKOFF_MAX)),
            poll_interval=float(retry.get("poll_interval", DEFAULT_POLL_INTERVAL)),
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid [retry] section in {config_path}: {e}") from e
    if retry_config.max_retries < 1:
        raise ValueError(f"retry.max_retries must be at least 1 (got {retry_config.max_retries})")

    return PipelineConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        retry=retry_config,
        remote=RemoteConfig(
            api_url=str(remote.get("api_url", "")),
            api_key=str(remote.get("api_key", "")),
        ),
    )


def save_config(config: PipelineConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "retry": {
            "max_retries": config.retry.max_retries,
            "backoff_base": config.retry.backoff_base,
            "backoff_max": config.retry.backoff_max,
            "poll_interval": config.retry.poll_interval,
        },
    }
    if config.remote.api_url:
        # The API key stays in the environment unless it was put in the file
        data["remote"] = {"api_url": config.remote.api_url}
        if config.remote.api_key:
            data["remote"]["api_key"] = config.remote.api_key

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def apply_env_overrides(config: PipelineConfig) -> PipelineConfig:
    """Apply MEMOKEEP_API_URL / MEMOKEEP_API_KEY on top of the file."""
    api_url = os.environ.get("MEMOKEEP_API_URL")
    api_key = os.environ.get("MEMOKEEP_API_KEY")
    if api_url:
        config.remote.api_url = api_url
    if api_key:
        config.remote.api_key = api_key
    return config


def load_or_create_config(store_path: Optional[Path] = None) -> PipelineConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = Path(store_path) if store_path else get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = PipelineConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config)
