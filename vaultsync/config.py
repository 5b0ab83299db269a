"""
Configuration management for vaultsync.

The configuration is stored as a TOML file in the state directory
(``~/.vaultsync`` unless VAULTSYNC_HOME says otherwise). It names the
default node and the timing knobs of the sync layer. Environment variables
override the file so a one-off run can point somewhere else.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import tomli_w

from .errors import ConfigError


CONFIG_FILENAME = "vaultsync.toml"
CONFIG_VERSION = 1
JOURNAL_FILENAME = "pending_refs.db"


def get_home_dir() -> Path:
    """State directory: VAULTSYNC_HOME or ~/.vaultsync."""
    home = os.environ.get("VAULTSYNC_HOME")
    if home:
        return Path(home).expanduser()
    return Path.home() / ".vaultsync"


@dataclass
class SyncSettings:
    """Timing and retry knobs for the sync layer."""
    timeout_ms: int = 30000
    request_timeout: float = 30.0
    ref_save_retries: int = 3
    retry_backoff: float = 1.0
    page_size: int = 25


@dataclass
class VaultConfig:
    """Complete client configuration."""
    path: Path
    default_node: str = ""
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    sync: SyncSettings = field(default_factory=SyncSettings)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def journal_path(self) -> Path:
        return self.path / JOURNAL_FILENAME

    def exists(self) -> bool:
        return self.config_path.exists()


def _apply_env(config: VaultConfig) -> VaultConfig:
    node = os.environ.get("VAULTSYNC_NODE_URL")
    if node:
        config.default_node = node
    timeout = os.environ.get("VAULTSYNC_TIMEOUT_MS")
    if timeout:
        try:
            config.sync.timeout_ms = int(timeout)
        except ValueError:
            raise ConfigError(f"VAULTSYNC_TIMEOUT_MS must be an integer, got {timeout!r}")
    return config


def load_config(home: Path) -> VaultConfig:
    """
    Load configuration from a state directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ConfigError: If config is invalid
    """
    config_path = home / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}") from e

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ConfigError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    sync_section = data.get("sync", {})
    defaults = SyncSettings()
    try:
        sync = SyncSettings(
            timeout_ms=int(sync_section.get("timeout_ms", defaults.timeout_ms)),
            request_timeout=float(sync_section.get("request_timeout", defaults.request_timeout)),
            ref_save_retries=int(sync_section.get("ref_save_retries", defaults.ref_save_retries)),
            retry_backoff=float(sync_section.get("retry_backoff", defaults.retry_backoff)),
            page_size=int(sync_section.get("page_size", defaults.page_size)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid [sync] section in {config_path}: {e}") from e

    if sync.timeout_ms <= 0:
        raise ConfigError("[sync] timeout_ms must be positive")

    config = VaultConfig(
        path=home,
        default_node=data.get("remote", {}).get("default_node", ""),
        version=version,
        created=data.get("store", {}).get("created", ""),
        sync=sync,
    )
    return _apply_env(config)


def save_config(config: VaultConfig) -> None:
    """
    Save configuration to the state directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "remote": {
            "default_node": config.default_node,
        },
        "sync": {
            "timeout_ms": config.sync.timeout_ms,
            "request_timeout": config.sync.request_timeout,
            "ref_save_retries": config.sync.ref_save_retries,
            "retry_backoff": config.sync.retry_backoff,
            "page_size": config.sync.page_size,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(home: Optional[Path] = None) -> VaultConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    home = home or get_home_dir()
    if (home / CONFIG_FILENAME).exists():
        return load_config(home)
    config = VaultConfig(path=home)
    save_config(config)
    return _apply_env(config)
