"""Configuration file management for tally."""

import os
import tomllib
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import tomli_w


@dataclass(frozen=True)
class Settings:
    """Engine and CLI settings.

    Attributes:
        timezone: IANA zone used for budget period boundaries.
        week_start: First day of weekly budget periods (0=Monday).
        import_tolerance_days: Date slack when matching imported rows.
        lookahead_days: How far past "now" recurring templates may materialize.
        event_queue_size: Bound of each event subscriber's queue.
        log_level: Logging level name for the CLI.
        currency_symbol: Symbol used when displaying amounts.
    """

    timezone: str = "UTC"
    week_start: int = 0
    import_tolerance_days: int = 2
    lookahead_days: int = 0
    event_queue_size: int = 1000
    log_level: str = "WARNING"
    currency_symbol: str = "$"


def get_xdg_config_home() -> Path:
    """Get XDG config directory, with fallback to ~/.config."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        return Path(xdg_config)
    return Path.home() / ".config"


def get_config_path() -> Path:
    """Get the config file path (XDG compliant).

    Returns:
        Path to the config file.
    """
    return get_xdg_config_home() / "tally" / "config.toml"


def create_default_config(config_path: Path | None = None) -> None:
    """Create default config file with secure permissions.

    Args:
        config_path: Path to config file. If None, uses default location.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)
    save_config(asdict(Settings()), config_path)


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load configuration from TOML file.

    Args:
        config_path: Path to config file. If None, uses default location.

    Returns:
        Configuration dictionary.

    Raises:
        FileNotFoundError: If config file doesn't exist.
    """
    if config_path is None:
        config_path = get_config_path()

    with open(config_path, "rb") as f:
        return tomllib.load(f)


def save_config(config: dict[str, Any], config_path: Path | None = None) -> None:
    """Save configuration to TOML file.

    Args:
        config: Configuration dictionary.
        config_path: Path to config file. If None, uses default location.
    """
    if config_path is None:
        config_path = get_config_path()

    with open(config_path, "wb") as f:
        tomli_w.dump(config, f)

    os.chmod(config_path, 0o600)


def settings_from_config(config: dict[str, Any]) -> Settings:
    """Build settings from a config dictionary, ignoring unknown keys.

    Raises:
        ValueError: If a known key has the wrong type.
    """
    values: dict[str, Any] = {}
    for f in fields(Settings):
        if f.name not in config:
            continue
        value = config[f.name]
        expected = type(getattr(Settings(), f.name))
        if not isinstance(value, expected) or isinstance(value, bool):
            raise ValueError(f"Config key '{f.name}' must be {expected.__name__}, got {value!r}")
        values[f.name] = value
    return Settings(**values)


def load_settings(config_path: Path | None = None) -> Settings:
    """Load settings, falling back to defaults when no config file exists."""
    try:
        return settings_from_config(load_config(config_path))
    except FileNotFoundError:
        return Settings()
