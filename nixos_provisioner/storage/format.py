"""Filesystem creation and partition-table rescans.

Boot partitions always receive FAT32 labelled ``boot``. Root partitions are
formatted only when the caller names a filesystem; without one the root is
left untouched for the configuration being installed to decide.

Formatting destroys whatever was on the partition. Outside dry-run an
existing filesystem signature triggers a confirmation prompt unless the
partition was created in the same run.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import time
from typing import TYPE_CHECKING, Optional

from nixos_provisioner.domain.models import FailureKind, PartitionRole, ValidationResult
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import (
    combined_output,
    format_command_failure,
    run_mutating,
    tail_lines,
)
from nixos_provisioner.storage.devices import get_filesystem_type
from nixos_provisioner.ui.console import confirm

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_disk()

ESP_LABEL = "boot"
ROOT_LABEL = "nixos"
FORMAT_TAIL_LINES = 10

ROOT_FILESYSTEM_COMMANDS = {
    "ext4": ["mkfs.ext4", "-F", "-L", ROOT_LABEL],
    "btrfs": ["mkfs.btrfs", "-f", "-L", ROOT_LABEL],
    "xfs": ["mkfs.xfs", "-f", "-L", ROOT_LABEL],
}
SUPPORTED_ROOT_FILESYSTEMS = tuple(ROOT_FILESYSTEM_COMMANDS)


def _validate_device_path(device_path: str) -> bool:
    """Validate that device path starts with /dev/."""
    return device_path.startswith("/dev/")


def build_format_command(
    partition_path: str, role: PartitionRole, filesystem: Optional[str] = None
) -> Optional[list[str]]:
    """Return the mkfs command for a role, or None when no policy applies."""
    if role is PartitionRole.ESP:
        return ["mkfs.fat", "-F", "32", "-n", ESP_LABEL, partition_path]
    if role is PartitionRole.ROOT and filesystem:
        base = ROOT_FILESYSTEM_COMMANDS.get(filesystem.lower())
        if base is None:
            raise ValueError(
                f"Unsupported root filesystem: {filesystem} "
                f"(supported: {', '.join(SUPPORTED_ROOT_FILESYSTEMS)})"
            )
        return [*base, partition_path]
    return None


def format_partition(
    ctx: ExecutionContext,
    partition_path: str,
    role: PartitionRole,
    filesystem: Optional[str] = None,
    *,
    confirm_existing: bool = True,
) -> ValidationResult:
    """Create the filesystem appropriate to ``role`` on ``partition_path``.

    Args:
        ctx: Execution context
        partition_path: Partition device node (e.g., /dev/sda1)
        role: ESP or ROOT
        filesystem: Root filesystem (ext4, btrfs, xfs); ignored for ESP
        confirm_existing: Ask before overwriting an existing filesystem

    Returns:
        ValidationResult; DISK failures carry the formatter's output tail.
    """
    if not _validate_device_path(partition_path):
        return ValidationResult.failure(
            FailureKind.DISK, f"Invalid partition path: {partition_path}"
        )
    try:
        command = build_format_command(partition_path, role, filesystem)
    except ValueError as error:
        return ValidationResult.failure(FailureKind.DISK, str(error))
    if command is None:
        return ValidationResult.failure(
            FailureKind.DISK,
            f"No formatting policy for {role.value} partition {partition_path}; "
            "choose a root filesystem explicitly or format it yourself",
        )

    if confirm_existing and not ctx.dry_run:
        existing = get_filesystem_type(partition_path)
        if existing:
            log.warning(f"{partition_path} already contains a {existing} filesystem")
            if not confirm(ctx, f"Erase the {existing} filesystem on {partition_path}?"):
                return ValidationResult.failure(
                    FailureKind.DISK, f"Formatting of {partition_path} declined"
                )

    log.info(f"Formatting {partition_path} as {command[0]}")
    try:
        result = run_mutating(ctx, command)
    except OSError as error:
        return ValidationResult.failure(
            FailureKind.DISK, f"Unable to run {command[0]}: {error}"
        )
    if result.returncode != 0:
        message = format_command_failure(
            f"Formatting {partition_path} failed", command, result
        )
        log.error(message)
        return ValidationResult.failure(
            FailureKind.DISK,
            f"Formatting {partition_path} failed",
            tail_lines(combined_output(result), FORMAT_TAIL_LINES),
        )
    log.success(f"Formatted {partition_path}")
    return ValidationResult.success(f"Formatted {partition_path}", value=partition_path)


def rescan_partitions(
    ctx: ExecutionContext, device_path: str, settle_seconds: float = 2.0
) -> None:
    """Ask the kernel to re-read the partition table and wait for udev.

    Best effort: missing tools and failures are logged, not raised. Under
    dry-run every command is reported whether or not the tool is installed.
    """
    for cmd in (
        ["sync"],
        ["partprobe", device_path],
        ["udevadm", "settle", "--timeout=10"],
    ):
        if not ctx.dry_run and shutil.which(cmd[0]) is None:
            log.debug(f"{cmd[0]} not available, skipping")
            continue
        with contextlib.suppress(subprocess.CalledProcessError, OSError):
            run_mutating(ctx, cmd)
    if not ctx.dry_run and settle_seconds > 0:
        time.sleep(settle_seconds)


def wait_for_partition(
    partition_path: str, timeout: float = 30.0, interval: float = 0.5
) -> bool:
    """Wait for a partition device node to appear."""
    deadline = time.monotonic() + timeout
    while True:
        if os.path.exists(partition_path):  # noqa: PTH110
            log.debug(f"Partition node found: {partition_path}")
            return True
        if time.monotonic() >= deadline:
            log.error(f"Partition node {partition_path} did not appear after {timeout:.0f}s")
            return False
        time.sleep(interval)


def format_root(
    ctx: ExecutionContext, partition_path: str, filesystem: Optional[str]
) -> ValidationResult:
    """Format the root partition when a filesystem was chosen, otherwise skip."""
    if not filesystem:
        log.info(f"Leaving root partition {partition_path} unformatted")
        return ValidationResult.success(f"Root partition {partition_path} left unformatted")
    return format_partition(ctx, partition_path, PartitionRole.ROOT, filesystem)

