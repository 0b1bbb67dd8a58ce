"""Build validation through ``nix build --dry-run``.

Evaluation runs against the staged flake with installer-friendly flags
(flakes enabled, dirty-tree warnings off). Under dry-run the evaluator is
not invoked and validation reports success.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from nixos_provisioner.domain.models import FailureKind, ValidationResult
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import (
    combined_output,
    display_command,
    run_command,
    run_or_simulate,
    tail_lines,
)

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_build()

NIX_FLAGS = (
    "--extra-experimental-features",
    "nix-command",
    "--extra-experimental-features",
    "flakes",
    "--option",
    "warn-dirty",
    "false",
)
BUILD_TAIL_LINES = 20


def nix_command(*args: str) -> list[str]:
    return ["nix", *NIX_FLAGS, *args]


def target_ref_for(machine: str, flake_dir: Union[str, Path] = ".") -> str:
    return f"{flake_dir}#nixosConfigurations.{machine}.config.system.build.toplevel"


def _run_evaluator(
    ctx: ExecutionContext,
    command: list[str],
    cwd: Optional[Union[str, Path]],
    failure_message: str,
) -> ValidationResult:
    try:
        result = run_or_simulate(
            ctx,
            display_command(command),
            lambda: run_command(
                command, check=False, log_output=False, cwd=str(cwd) if cwd else None
            ),
        )
    except OSError as error:
        log.error(f"Unable to run nix: {error}")
        return ValidationResult.failure(
            FailureKind.BUILD_VALIDATION, f"Unable to run nix: {error}"
        )
    if result.returncode == 0:
        return ValidationResult.success()
    tail = tail_lines(combined_output(result), BUILD_TAIL_LINES)
    log.error(failure_message)
    return ValidationResult.failure(FailureKind.BUILD_VALIDATION, failure_message, tail)


def validate_build(
    ctx: ExecutionContext,
    target_ref: str,
    cwd: Optional[Union[str, Path]] = None,
) -> ValidationResult:
    """Simulate building ``target_ref`` without realising anything.

    Returns:
        Success, or BUILD_VALIDATION carrying the last 20 lines of nix output.
    """
    log.info(f"Validating build of {target_ref}")
    command = nix_command("build", "--dry-run", "--no-link", target_ref)
    result = _run_evaluator(ctx, command, cwd, f"Build validation failed for {target_ref}")
    if result.ok:
        log.success(f"Build validation passed for {target_ref}")
        return ValidationResult.success(f"Build validation passed for {target_ref}")
    return result


def check_flake(ctx: ExecutionContext, flake_dir: Union[str, Path]) -> ValidationResult:
    """Run ``nix flake check --no-build`` on the staged repository."""
    log.info(f"Checking flake in {flake_dir}")
    command = nix_command("flake", "check", "--no-build", str(flake_dir))
    return _run_evaluator(ctx, command, None, f"Flake check failed for {flake_dir}")


def collect_warnings(flake_dir: Union[str, Path], machine: str) -> list[str]:
    """Evaluate the machine's ``config.warnings``; empty when unavailable."""
    command = nix_command(
        "eval", "--json", f"{flake_dir}#nixosConfigurations.{machine}.config.warnings"
    )
    try:
        result = run_command(command, check=False, log_output=False)
    except OSError as error:
        log.debug(f"Skipping warning collection: {error}")
        return []
    if result.returncode != 0:
        log.debug("Could not evaluate configuration warnings")
        return []
    try:
        warnings = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return []
    if not isinstance(warnings, list):
        return []
    for warning in warnings:
        log.warning(f"Configuration warning: {warning}")
    return [str(warning) for warning in warnings]
