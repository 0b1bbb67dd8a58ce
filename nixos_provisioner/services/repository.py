"""Stage a fresh shallow clone of the configuration repository.

The target directory is always replaced, never updated in place. A failed
clone removes whatever git left behind so the directory is either a clean
checkout or absent.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from nixos_provisioner.domain.models import (
    FailureKind,
    RepositoryStaging,
    StagingStatus,
    ValidationResult,
)
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import display_command, run_or_simulate, tail_lines
from nixos_provisioner.ui.progress import BackgroundTask, TaskStatus, track_progress

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_repo()

CLONE_TAIL_LINES = 10
PLACEHOLDER_MACHINE = "example"


def build_clone_command(url: str, branch: str, target_dir: Path) -> list[str]:
    return [
        "git",
        "clone",
        "--depth",
        "1",
        "--single-branch",
        "--branch",
        branch,
        url,
        str(target_dir),
    ]


def _remove_tree(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _create_placeholder(target_dir: Path) -> Path:
    """Lay down a minimal machine tree so later stages can run under dry-run."""
    machine_dir = target_dir / "machines" / PLACEHOLDER_MACHINE
    machine_dir.mkdir(parents=True, exist_ok=True)
    config = machine_dir / "configuration.nix"
    if not config.exists():
        config.write_text("{ }\n", encoding="utf-8")
    return config


def stage_repository(
    ctx: ExecutionContext,
    url: str,
    branch: str,
    target_dir: Path,
    *,
    progress: Callable[..., TaskStatus] = track_progress,
) -> ValidationResult:
    """Clone ``branch`` of ``url`` into ``target_dir``, replacing any old copy.

    Returns:
        ValidationResult whose value is the RepositoryStaging record. A
        REPOSITORY failure carries the last lines of git's output.
    """
    target_dir = Path(target_dir)
    staging = RepositoryStaging(remote_url=url, branch=branch, target_dir=target_dir)
    command = build_clone_command(url, branch, target_dir)

    if target_dir.exists() or target_dir.is_symlink():
        log.info(f"Removing stale staging directory {target_dir}")
        try:
            run_or_simulate(
                ctx, f"remove {target_dir}", lambda: _remove_tree(target_dir)
            )
        except OSError as error:
            staging.status = StagingStatus.FAILED
            return ValidationResult.failure(
                FailureKind.REPOSITORY,
                f"Could not remove stale staging directory {target_dir}: {error}",
                value=staging,
            )

    if ctx.dry_run:
        run_or_simulate(ctx, display_command(command), lambda: None)
        if target_dir.exists():
            log.info(f"DRY-RUN: reusing existing tree at {target_dir} for later stages")
        else:
            placeholder = _create_placeholder(target_dir)
            log.debug(f"Created placeholder configuration {placeholder}")
        staging.status = StagingStatus.READY
        return ValidationResult.success(f"Simulated clone of {url}", value=staging)

    target_dir.parent.mkdir(parents=True, exist_ok=True)
    staging.status = StagingStatus.CLONING
    log.info(f"Cloning {url} (branch {branch}) into {target_dir}")
    task = BackgroundTask(command)
    try:
        try:
            task.start()
        except OSError as error:
            staging.status = StagingStatus.FAILED
            return ValidationResult.failure(
                FailureKind.REPOSITORY, f"Unable to start git: {error}", value=staging
            )

        status = progress(ctx, task, f"Cloning {branch} from {url}")
        if status is TaskStatus.SUCCEEDED:
            staging.status = StagingStatus.READY
            log.success(f"Repository staged at {target_dir}")
            return ValidationResult.success(
                f"Repository staged at {target_dir}", value=staging
            )
        staging.diagnostic_tail = tail_lines(task.output(), CLONE_TAIL_LINES)
    finally:
        task.close()

    staging.status = StagingStatus.FAILED
    log.error(f"git clone failed with exit code {task.returncode}")
    if target_dir.exists():
        log.debug(f"Removing partial clone at {target_dir}")
        shutil.rmtree(target_dir, ignore_errors=True)
    return ValidationResult.failure(
        FailureKind.REPOSITORY,
        f"Failed to clone {url} (branch {branch})",
        staging.diagnostic_tail,
        value=staging,
    )
