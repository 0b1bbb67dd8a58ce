"""Settings storage for installer defaults."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "NIXOS_PROVISIONER_SETTINGS_PATH",
        Path.home() / ".config" / "nixos-provisioner" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_REPO_URL = "https://github.com/ex1tium/nix-configurations.git"
DEFAULT_BRANCH = "main"
DEFAULT_STAGING_DIR = str(Path(tempfile.gettempdir()) / "nix-config")
DEFAULT_ESP_SIZE_MIB = 512
DEFAULT_MIN_FREE_GB = 20
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_SETTLE_SECONDS = 2.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "repo_url": DEFAULT_REPO_URL,
    "branch": DEFAULT_BRANCH,
    "staging_dir": DEFAULT_STAGING_DIR,
    "esp_size_mib": DEFAULT_ESP_SIZE_MIB,
    "min_free_gb": DEFAULT_MIN_FREE_GB,
    "probe_timeout_seconds": DEFAULT_PROBE_TIMEOUT_SECONDS,
    "settle_seconds": DEFAULT_SETTLE_SECONDS,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
