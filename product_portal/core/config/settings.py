from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml


DEFAULT_SETTINGS: dict[str, Any] = {
    "store_path": "portal-store.json",
    "store_key": "productPortalConfig",
    # Period shown when none is given on the command line.
    "default_month": 4,
    "default_year": 2025,
    "poll_interval_seconds": 2.0,
    "log_level": "WARNING",
}

STORE_PATH_ENV = "PORTAL_STORE_PATH"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class SettingsError(ValueError):
    pass


def load_settings_file(path: str | Path) -> dict[str, Any]:
    """Load settings overrides from a YAML file.

    Format:
      store_path: data/store.json
      default_month: 6
      ...

    Unknown keys are rejected so typos do not silently fall back to defaults.
    """
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise SettingsError(f"invalid YAML: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SettingsError("settings file must be a mapping of name -> value")

    out: dict[str, Any] = {}
    for k, v in raw.items():
        if not isinstance(k, str) or k not in DEFAULT_SETTINGS:
            raise SettingsError(f"unknown setting: {k}")
        out[k] = _check(k, v)
    return out


def _check(key: str, value: Any) -> Any:
    if key in ("store_path", "store_key"):
        if not isinstance(value, str) or not value.strip():
            raise SettingsError(f"{key} must be a non-empty string")
        return value.strip()
    if key == "default_month":
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 12:
            raise SettingsError("default_month must be an integer between 1 and 12")
        return value
    if key == "default_year":
        if isinstance(value, bool) or not isinstance(value, int):
            raise SettingsError("default_year must be an integer")
        return value
    if key == "poll_interval_seconds":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise SettingsError("poll_interval_seconds must be a positive number")
        return float(value)
    if key == "log_level":
        if not isinstance(value, str) or value.upper() not in _LOG_LEVELS:
            raise SettingsError(f"log_level must be one of {sorted(_LOG_LEVELS)}")
        return value.upper()
    return value


def merged_settings(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return DEFAULT_SETTINGS merged with optional overrides, then the environment."""
    merged = dict(DEFAULT_SETTINGS)
    if overrides:
        merged.update(overrides)
    env_path = (os.getenv(STORE_PATH_ENV, "") or "").strip()
    if env_path:
        merged["store_path"] = env_path
    return merged


def load_and_merge(settings_file: str | None) -> dict[str, Any]:
    if not settings_file:
        return merged_settings()
    overrides = load_settings_file(settings_file)
    return merged_settings(overrides)
