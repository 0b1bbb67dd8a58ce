"""Block device probing using lsblk and parted.

Disk state is read from structured tool output only:

    lsblk -J -b -o NAME,PATH,SIZE,TYPE,FSTYPE,PARTTYPE,LABEL,MODEL,RO,MOUNTPOINTS
        JSON device tree; partition type GUIDs, filesystems and mountpoints.

    parted -m -s <disk> unit B print free
        Machine-readable partition table with explicit free-space rows:

            BYT;
            /dev/sda:42949672960B:scsi:512:512:gpt:ATA DISK:;
            1:1048576B:536870911B:535822336B:fat32:ESP:boot, esp;
            1:536870912B:42949655551B:42412784640B:free;

Probing never mutates the device and therefore also runs under dry-run.
The result is an immutable :class:`Disk`; callers re-probe after every
partition-table change.
"""

from __future__ import annotations

import json
import os
import re
import stat
import subprocess
from dataclasses import replace
from typing import Any, Optional

from nixos_provisioner.domain.models import (
    Disk,
    FailureKind,
    FreeRegion,
    Partition,
    PartitionRole,
    ValidationResult,
    partition_device_path,
)
from nixos_provisioner.exceptions import DiskError
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import privileged, run_command, tail_lines


log = LoggerFactory.for_disk()

LSBLK_COLUMNS = "NAME,PATH,SIZE,TYPE,FSTYPE,PARTTYPE,LABEL,MODEL,RO,MOUNTPOINTS"

# Whole-disk nodes only: sda, vdb, hdc, nvme0n1, mmcblk0
DISK_PATH_PATTERN = re.compile(
    r"^/dev/(sd[a-z]+|vd[a-z]+|hd[a-z]+|xvd[a-z]+|nvme\d+n\d+|mmcblk\d+)$"
)

PARTED_UNLABELED_MARKERS = ("unrecognised disk label", "unrecognized disk label")


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(size)}{unit}"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


def get_block_devices(device_path: Optional[str] = None) -> list[dict[str, Any]]:
    """Return the lsblk device tree, optionally for a single device.

    Raises:
        DiskError: If lsblk fails or returns unparsable output
    """
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device_path:
        command.append(device_path)
    try:
        result = run_command(command, check=False, log_output=False)
    except OSError as error:
        raise DiskError(f"Unable to run lsblk: {error}", device_path=device_path) from error
    if result.returncode != 0:
        raise DiskError(
            "lsblk failed",
            tail_lines(result.stderr, 5),
            device_path=device_path,
        )
    try:
        data = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as error:
        raise DiskError(f"Invalid lsblk output: {error}", device_path=device_path) from error
    return data.get("blockdevices", [])


def get_children(device: dict[str, Any]) -> list[dict[str, Any]]:
    return device.get("children", []) or []


def list_disks() -> list[Disk]:
    """List writable whole disks (no partition probing)."""
    disks = []
    for device in get_block_devices():
        if device.get("type") != "disk":
            continue
        if str(device.get("ro")) in ("1", "True", "true"):
            continue
        path = device.get("path") or f"/dev/{device.get('name')}"
        if not DISK_PATH_PATTERN.match(path):
            continue
        disks.append(
            Disk(
                device_path=path,
                size_bytes=int(device.get("size") or 0),
                model=(device.get("model") or "").strip() or None,
            )
        )
    return disks


def validate_disk_device(device_path: str) -> ValidationResult:
    """Check that ``device_path`` names an existing whole-disk block device."""
    if not DISK_PATH_PATTERN.match(device_path or ""):
        return ValidationResult.failure(
            FailureKind.DISK,
            f"{device_path!r} is not a whole-disk device path "
            "(expected e.g. /dev/sda or /dev/nvme0n1)",
        )
    try:
        mode = os.stat(device_path).st_mode
    except OSError:
        return ValidationResult.failure(
            FailureKind.DISK, f"Device {device_path} does not exist"
        )
    if not stat.S_ISBLK(mode):
        return ValidationResult.failure(
            FailureKind.DISK, f"{device_path} is not a block device"
        )
    return ValidationResult.success(f"{device_path} is a block device")


def get_filesystem_type(path: str) -> Optional[str]:
    """Filesystem signature currently on ``path``, or None."""
    try:
        devices = get_block_devices(path)
    except DiskError:
        return None
    if not devices:
        return None
    return devices[0].get("fstype") or None


def _parse_bytes(value: str) -> int:
    return int(value.strip().rstrip("B"))


def parse_parted_machine_output(output: str) -> dict[str, Any]:
    """Parse ``parted -m ... unit B print free`` output.

    Returns:
        Dict with keys ``size_bytes``, ``table_type``, ``model``,
        ``partitions`` (list of dicts with number/start/end/size/filesystem/
        name/flags) and ``free_regions`` (list of FreeRegion).
    """
    info: dict[str, Any] = {
        "size_bytes": None,
        "table_type": None,
        "model": None,
        "partitions": [],
        "free_regions": [],
    }
    for raw_line in output.splitlines():
        line = raw_line.strip().rstrip(";")
        if not line or line == "BYT" or line in ("CHS", "CYL"):
            continue
        fields = line.split(":")
        if fields[0].startswith("/dev/"):
            if len(fields) >= 6:
                info["size_bytes"] = _parse_bytes(fields[1])
                label = fields[5].strip()
                info["table_type"] = None if label in ("", "unknown") else label
                info["model"] = fields[6].strip() if len(fields) > 6 else None
            continue
        if len(fields) < 5 or not fields[0].isdigit():
            continue
        start, end, size = (_parse_bytes(value) for value in fields[1:4])
        if fields[4] == "free":
            info["free_regions"].append(FreeRegion(start_bytes=start, end_bytes=end))
            continue
        info["partitions"].append(
            {
                "number": int(fields[0]),
                "start": start,
                "end": end,
                "size": size,
                "filesystem": fields[4] or None,
                "name": fields[5] if len(fields) > 5 else "",
                "flags": [flag.strip() for flag in fields[6].split(",")]
                if len(fields) > 6 and fields[6].strip()
                else [],
            }
        )
    return info


def _run_parted_print(device_path: str) -> subprocess.CompletedProcess:
    command = privileged(["parted", "-m", "-s", device_path, "unit", "B", "print", "free"])
    try:
        return run_command(command, check=False, log_output=False)
    except OSError as error:
        raise DiskError(f"Unable to run parted: {error}", device_path=device_path) from error


def probe_disk(device_path: str) -> Disk:
    """Build a Disk snapshot from lsblk and parted.

    Partitions are taken from parted's table; lsblk supplies partition type
    GUIDs and filesystem signatures. An unlabeled disk has no partitions and
    a single free region spanning the device.

    Raises:
        DiskError: If the device cannot be probed
    """
    devices = get_block_devices(device_path)
    if not devices:
        raise DiskError("Device not reported by lsblk", device_path=device_path)
    device = devices[0]
    size_bytes = int(device.get("size") or 0)
    children = {
        child.get("path") or f"/dev/{child.get('name')}": child
        for child in get_children(device)
    }

    result = _run_parted_print(device_path)
    error_text = (result.stderr or "").lower()
    if result.returncode != 0 and not any(m in error_text for m in PARTED_UNLABELED_MARKERS):
        raise DiskError(
            "parted could not read the partition table",
            tail_lines(result.stderr or result.stdout, 10),
            device_path=device_path,
        )
    info = parse_parted_machine_output(result.stdout or "")

    partitions = []
    for entry in info["partitions"]:
        path = partition_device_path(device_path, entry["number"])
        child = children.get(path)
        if child is not None:
            partition = Partition.from_lsblk_dict({**child, "path": path})
        else:
            partition = Partition(device_path=path, number=entry["number"], size_bytes=0)
        role = partition.role
        if role is PartitionRole.OTHER and "esp" in entry["flags"]:
            role = PartitionRole.ESP
        # parted's table is authoritative for numbering and geometry
        partitions.append(
            replace(
                partition,
                number=entry["number"],
                size_bytes=entry["size"],
                start_bytes=entry["start"],
                role=role,
                filesystem=partition.filesystem or entry["filesystem"],
                label=partition.label or entry["name"] or None,
            )
        )

    free_regions = list(info["free_regions"])
    if info["table_type"] is None and not partitions and not free_regions:
        free_regions = [FreeRegion(start_bytes=0, end_bytes=size_bytes - 1)]

    disk = Disk(
        device_path=device_path,
        size_bytes=info["size_bytes"] or size_bytes,
        partitions=tuple(sorted(partitions, key=lambda part: part.number)),
        free_regions=tuple(free_regions),
        table_type=info["table_type"],
        model=(device.get("model") or info["model"] or "").strip() or None,
    )
    log.debug(
        f"Probed {device_path}: {len(disk.partitions)} partitions, "
        f"{len(disk.free_regions)} free regions, table={disk.table_type}"
    )
    return disk
