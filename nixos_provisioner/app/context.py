from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

ENV_PREFIX = "NIXOS_PROVISIONER_"
TRUTHY_VALUES = {"1", "true", "yes", "on"}


def default_log_path() -> Path:
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return Path(tempfile.gettempdir()) / f"nixos-install-{stamp}.log"


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return environ.get(f"{ENV_PREFIX}{name}", "").strip().lower() in TRUTHY_VALUES


@dataclass(frozen=True)
class ExecutionContext:
    """Run-mode configuration shared by every pipeline stage.

    Built once at startup and passed explicitly; never mutated afterwards.
    """

    dry_run: bool = False
    non_interactive: bool = False
    force_yes: bool = False
    quiet: bool = False
    debug: bool = False
    log_path: Path = field(default_factory=default_log_path)
    no_color: bool = False

    @classmethod
    def from_environment(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> ExecutionContext:
        """Read run flags from the environment once, then apply CLI overrides.

        Overrides whose value is None are ignored so unset CLI flags keep the
        environment-derived value.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {
            "dry_run": _env_flag(env, "DRY_RUN"),
            "non_interactive": _env_flag(env, "NON_INTERACTIVE"),
            "force_yes": _env_flag(env, "FORCE_YES"),
            "quiet": _env_flag(env, "QUIET"),
            "debug": _env_flag(env, "DEBUG"),
            "no_color": bool(env.get("NO_COLOR")) or _env_flag(env, "NO_COLOR"),
        }
        log_path = env.get(f"{ENV_PREFIX}LOG_PATH")
        values["log_path"] = Path(log_path) if log_path else default_log_path()
        for key, value in overrides.items():
            if value is None:
                continue
            if key == "log_path":
                value = Path(value)
            values[key] = value
        return cls(**values)
