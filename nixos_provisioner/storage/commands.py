"""Subprocess helpers and the dry-run gate for mutating commands.

Every command that changes a device, the filesystem or remote state goes
through :func:`run_or_simulate`. Under dry-run it logs a single
``DRY-RUN: would perform: ...`` line and returns a successful result without
calling the action.
"""

from __future__ import annotations

import os
import shlex
import subprocess
from typing import TYPE_CHECKING, Any, Callable, Optional, Sequence

from nixos_provisioner.logging import LoggerFactory

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_system()

DRY_RUN_PREFIX = "DRY-RUN: would perform:"
SUDO = "sudo"


def display_command(command: Sequence[str]) -> str:
    return shlex.join(str(part) for part in command)


def needs_privilege_escalation() -> bool:
    return os.geteuid() != 0


def privileged(command: Sequence[str]) -> list[str]:
    """Prefix ``command`` with sudo unless already running as root."""
    command = [str(part) for part in command]
    if needs_privilege_escalation() and command[:1] != [SUDO]:
        return [SUDO, *command]
    return command


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    cwd: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """Run a command and capture its output as text.

    Raises:
        subprocess.CalledProcessError: If ``check`` is set and the command fails
        OSError: If the executable cannot be started
    """
    command = [str(part) for part in command]
    if log_command:
        log.debug(f"Running command: {display_command(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, cwd=cwd
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {display_command(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def simulated_result(description: str) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=description, returncode=0, stdout="", stderr="")


def run_or_simulate(
    ctx: ExecutionContext, description: str, action: Callable[[], Any]
) -> Any:
    """Execute ``action`` unless the run is a dry-run.

    Args:
        ctx: Execution context
        description: Human-readable description of the mutation
        action: Zero-argument callable performing the mutation

    Returns:
        The action's return value, or a successful CompletedProcess under
        dry-run.
    """
    if ctx.dry_run:
        log.info(f"{DRY_RUN_PREFIX} {description}")
        return simulated_result(description)
    log.debug(f"Performing: {description}")
    return action()


def run_mutating(
    ctx: ExecutionContext,
    command: Sequence[str],
    cwd: Optional[str] = None,
    *,
    escalate: bool = True,
) -> subprocess.CompletedProcess:
    """Run a mutating command through the dry-run gate without raising on failure.

    Device commands need root; ``escalate`` runs them through sudo when the
    process is unprivileged.
    """
    if escalate:
        command = privileged(command)
    return run_or_simulate(
        ctx,
        display_command(command),
        lambda: run_command(command, check=False, cwd=cwd),
    )


def combined_output(result: subprocess.CompletedProcess) -> str:
    parts = [result.stdout or "", result.stderr or ""]
    return "\n".join(part.rstrip("\n") for part in parts if part)


def tail_lines(text: str, count: int) -> list[str]:
    """Return the last ``count`` non-empty lines of ``text``."""
    lines = [line.rstrip() for line in (text or "").splitlines() if line.strip()]
    return lines[-count:] if count > 0 else []


def format_command_failure(
    summary: str,
    command: Sequence[str],
    result: subprocess.CompletedProcess,
) -> str:
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    details = [f"command: {display_command(command)}", f"exit code: {result.returncode}"]
    if stderr:
        details.append(f"stderr: {stderr}")
    if stdout:
        details.append(f"stdout: {stdout}")
    return f"{summary} ({'; '.join(details)})"
