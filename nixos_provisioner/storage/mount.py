"""Release partitions of the target disk that are still in use.

An interrupted earlier attempt, or a live session that automounted a volume,
leaves partitions mounted or swap enabled on the target disk. parted then
refuses to rewrite the table ("Partition(s) ... are being used"), so the
disk is released before planning:

    umount /mnt/boot
    umount /mnt
    swapoff /dev/sda3

Mountpoints are released deepest first. Every command goes through the
dry-run gate and runs with root privileges.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable

from nixos_provisioner.domain.models import Disk, FailureKind, Partition, ValidationResult
from nixos_provisioner.exceptions import DiskError
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import (
    combined_output,
    format_command_failure,
    run_mutating,
    tail_lines,
)
from nixos_provisioner.storage.devices import probe_disk
from nixos_provisioner.ui.console import confirm

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_disk()

SWAP_MOUNTPOINT = "[SWAP]"
RELEASE_TAIL_LINES = 10


def mounted_partitions(disk: Disk) -> list[Partition]:
    return [partition for partition in disk.partitions if partition.is_mounted]


def release_commands(partitions: Iterable[Partition]) -> list[list[str]]:
    """Commands that unmount every mountpoint and disable swap, in order."""
    mountpoints = []
    swap_devices = []
    for partition in partitions:
        for mountpoint in partition.mountpoints:
            if mountpoint == SWAP_MOUNTPOINT:
                swap_devices.append(partition.device_path)
            else:
                mountpoints.append(mountpoint)
    commands = [["umount", mountpoint] for mountpoint in sorted(mountpoints, reverse=True)]
    commands.extend(["swapoff", device] for device in swap_devices)
    return commands


def _describe(partitions: Iterable[Partition]) -> str:
    return ", ".join(
        f"{partition.device_path} ({', '.join(partition.mountpoints)})"
        for partition in partitions
    )


def release_disk(
    ctx: ExecutionContext,
    device_path: str,
    *,
    probe: Callable[[str], Disk] = probe_disk,
    input_func: Callable[[str], str] = input,
) -> ValidationResult:
    """Unmount partitions and disable swap on ``device_path`` after confirmation.

    Returns:
        Success when nothing is in use or everything was released; a DISK
        failure when the operator declines or a command fails.
    """
    try:
        disk = probe(device_path)
    except DiskError as error:
        return ValidationResult.failure(FailureKind.DISK, str(error), error.diagnostic_tail)

    busy = mounted_partitions(disk)
    if not busy:
        log.debug(f"No partitions in use on {device_path}")
        return ValidationResult.success(f"{device_path} is not in use")

    in_use = _describe(busy)
    log.warning(f"Partitions on {device_path} are in use: {in_use}")
    if not ctx.dry_run and not confirm(
        ctx, f"Unmount {in_use}?", input_func=input_func
    ):
        return ValidationResult.failure(
            FailureKind.DISK,
            f"{device_path}: partitions in use: {in_use}; "
            "unmount them first or confirm the release",
        )

    for command in release_commands(busy):
        try:
            result = run_mutating(ctx, command)
        except OSError as error:
            return ValidationResult.failure(
                FailureKind.DISK, f"Unable to run {command[0]}: {error}"
            )
        if result.returncode != 0:
            summary = f"Could not release {command[-1]}"
            log.error(format_command_failure(summary, command, result))
            return ValidationResult.failure(
                FailureKind.DISK,
                summary,
                tail_lines(combined_output(result), RELEASE_TAIL_LINES),
            )

    log.info(f"Released {len(busy)} partition(s) on {device_path}")
    return ValidationResult.success(f"Released {in_use}", value=busy)
