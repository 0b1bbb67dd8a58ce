"""Default account detection and per-machine user overrides."""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.services.build import nix_command
from nixos_provisioner.storage.commands import run_command, run_or_simulate

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_catalog()

FALLBACK_USER = "nixos"
MAX_USERNAME_LENGTH = 32
USERNAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
RESERVED_USERNAMES = frozenset(
    {
        "root",
        "bin",
        "daemon",
        "adm",
        "lp",
        "sync",
        "shutdown",
        "halt",
        "mail",
        "nobody",
        "nixbld",
        "nixos",
    }
)
DEFAULT_USER_PATTERN = re.compile(r'defaultUser\s*=\s*"([^"]+)"')
OVERRIDE_FILENAME = "_user-override.nix"


def evaluate_default_user(staged_dir: Union[str, Path]) -> Optional[str]:
    """Ask nix for ``globalConfig.defaultUser``; None when nix is unavailable or fails."""
    if shutil.which("nix") is None:
        log.debug("nix not available, skipping evaluation of defaultUser")
        return None
    command = nix_command("eval", "--raw", f"{staged_dir}#globalConfig.defaultUser")
    try:
        result = run_command(command, check=False, log_output=False)
    except OSError as error:
        log.debug(f"nix eval failed to start: {error}")
        return None
    if result.returncode != 0:
        log.debug("nix eval of defaultUser failed")
        return None
    value = (result.stdout or "").strip()
    return value or None


def parse_default_user(flake_file: Union[str, Path]) -> Optional[str]:
    try:
        text = Path(flake_file).read_text(encoding="utf-8")
    except OSError:
        return None
    match = DEFAULT_USER_PATTERN.search(text)
    return match.group(1) if match else None


def resolve_default_user(staged_dir: Union[str, Path]) -> str:
    """Detect the configuration's default account name. Never raises.

    Tries nix evaluation first, then a text match over ``flake.nix``, then
    falls back to ``nixos``.
    """
    user = evaluate_default_user(staged_dir)
    if user:
        log.info(f"Detected default user from configuration: {user}")
        return user
    user = parse_default_user(Path(staged_dir) / "flake.nix")
    if user:
        log.info(f"Detected default user from flake.nix: {user}")
        return user
    log.warning(f"Could not detect default user, using '{FALLBACK_USER}'")
    return FALLBACK_USER


def validate_username(name: str) -> bool:
    if not name or len(name) > MAX_USERNAME_LENGTH:
        return False
    if not USERNAME_PATTERN.match(name):
        return False
    return name not in RESERVED_USERNAMES


def render_override(username: str) -> str:
    return "{ ... }: {\n" f'  mySystem.user = "{username}";\n' "}\n"


def override_path(machines_dir: Union[str, Path], machine: str) -> Path:
    return Path(machines_dir) / machine / OVERRIDE_FILENAME


def read_existing_override(path: Path) -> Optional[str]:
    """Content of an override shipped with the repository, or None."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None


def write_user_override(
    ctx: ExecutionContext,
    machines_dir: Union[str, Path],
    machine: str,
    requested_user: str,
    detected_user: str,
) -> Optional[Path]:
    """Write ``machines/<machine>/_user-override.nix`` when the names differ.

    Returns:
        Path of the override (also under dry-run, where the write is only
        logged), or None when no override is needed.

    Raises:
        ValueError: If ``requested_user`` is not a valid username
    """
    if requested_user == detected_user:
        log.debug(f"User {requested_user} matches configuration default, no override")
        return None
    if not validate_username(requested_user):
        raise ValueError(f"Invalid username: {requested_user}")

    path = override_path(machines_dir, machine)
    content = render_override(requested_user)
    run_or_simulate(
        ctx,
        f"write {path} (mySystem.user = {requested_user})",
        lambda: path.write_text(content, encoding="utf-8"),
    )
    log.info(f"User override for {machine}: {detected_user} -> {requested_user}")
    return path


def remove_user_override(
    ctx: ExecutionContext, path: Optional[Path], previous_content: Optional[str] = None
) -> None:
    """Undo ``write_user_override``.

    A file this run created is deleted; a file the repository already
    shipped gets its previous content back.
    """
    if path is None:
        return
    if previous_content is not None:
        run_or_simulate(
            ctx,
            f"restore {path}",
            lambda: path.write_text(previous_content, encoding="utf-8"),
        )
        log.debug(f"Restored user override {path}")
        return
    if not path.exists():
        return
    run_or_simulate(ctx, f"remove {path}", path.unlink)
    log.debug(f"Removed user override {path}")
