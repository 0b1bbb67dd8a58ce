"""Domain model for provisioning runs.

Type-safe objects exchanged between pipeline stages: probed disks and
partitions, machine descriptors, repository staging records and the
ValidationResult every stage returns.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional

from nixos_provisioner.exceptions import error_for_kind


MIB = 1024 * 1024
GIB = 1024 * MIB

ESP_TYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
LINUX_SWAP_TYPE_GUID = "0657fd6d-a4ab-43c4-84e5-0933c84b4f4f"
LINUX_ROOT_TYPE_GUIDS = frozenset(
    {
        "4f68bce3-e8cd-4db1-96e7-fbcaf984b709",  # x86-64 root
        "b921b045-1df0-41c3-af44-4c6f280d3fae",  # aarch64 root
    }
)
# MBR type codes as reported by lsblk
ESP_MBR_TYPE = "0xef"
SWAP_MBR_TYPE = "0x82"


def partition_device_path(device_path: str, number: int) -> str:
    """Device node of partition ``number`` on ``device_path``.

    Devices whose name ends in a digit (nvme0n1, mmcblk0) take a ``p``
    separator: /dev/nvme0n1p2, /dev/sda2.
    """
    separator = "p" if device_path[-1:].isdigit() else ""
    return f"{device_path}{separator}{number}"


# ==============================================================================
# Run Mode
# ==============================================================================


class InstallationMode(Enum):
    """How the target disk is prepared."""

    FRESH = "fresh"  # Wipe the partition table and repartition the whole disk
    DUAL_BOOT = "dual-boot"  # Keep existing partitions, install into free space

    @classmethod
    def from_string(cls, value: str) -> InstallationMode:
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "dualboot":
            normalized = "dual-boot"
        return cls(normalized)


class FailureKind(Enum):
    """Which stage a failed ValidationResult came from."""

    ENVIRONMENT = "environment"
    DEPENDENCY = "dependency"
    REPOSITORY = "repository"
    DISCOVERY = "discovery"
    DISK = "disk"
    BUILD_VALIDATION = "build_validation"


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a validator or pipeline stage.

    Consumed by the pipeline driver, which aborts on the first failure.
    ``value`` carries the stage's payload (a staging record, a partition
    layout) on success.
    """

    ok: bool
    failure_kind: Optional[FailureKind] = None
    message: str = ""
    diagnostic_tail: tuple[str, ...] = ()
    value: Any = None

    def __bool__(self) -> bool:
        return self.ok

    @classmethod
    def success(cls, message: str = "", value: Any = None) -> ValidationResult:
        return cls(ok=True, message=message, value=value)

    @classmethod
    def failure(
        cls,
        kind: FailureKind,
        message: str,
        diagnostic_tail: Iterable[str] = (),
        value: Any = None,
    ) -> ValidationResult:
        return cls(
            ok=False,
            failure_kind=kind,
            message=message,
            diagnostic_tail=tuple(diagnostic_tail),
            value=value,
        )

    def raise_for_failure(self) -> None:
        """Raise the ProvisionerError subclass matching ``failure_kind``."""
        if self.ok:
            return
        kind = self.failure_kind.value if self.failure_kind else ""
        raise error_for_kind(kind, self.message, self.diagnostic_tail)


# ==============================================================================
# Disk Domain
# ==============================================================================


class PartitionRole(Enum):
    """Purpose of a partition within the install layout."""

    ESP = "esp"
    ROOT = "root"
    SWAP = "swap"
    OTHER = "other"

    @classmethod
    def from_type(
        cls, partition_type: Optional[str], filesystem: Optional[str] = None
    ) -> PartitionRole:
        """Derive a role from a GPT type GUID or MBR type code."""
        part_type = (partition_type or "").strip().lower()
        if part_type in (ESP_TYPE_GUID, ESP_MBR_TYPE):
            return cls.ESP
        if part_type in (LINUX_SWAP_TYPE_GUID, SWAP_MBR_TYPE) or filesystem == "swap":
            return cls.SWAP
        if part_type in LINUX_ROOT_TYPE_GUIDS:
            return cls.ROOT
        return cls.OTHER


@dataclass(frozen=True)
class Partition:
    """A partition on a probed (or predicted) disk."""

    device_path: str  # e.g., "/dev/sda1"
    number: int
    size_bytes: int
    role: PartitionRole = PartitionRole.OTHER
    filesystem: Optional[str] = None  # e.g., "vfat", "ntfs"
    start_bytes: Optional[int] = None
    partition_type_guid: Optional[str] = None
    label: Optional[str] = None
    mountpoints: tuple[str, ...] = ()  # e.g., ("/mnt/boot",) or ("[SWAP]",)

    @property
    def is_esp(self) -> bool:
        return self.role is PartitionRole.ESP

    @property
    def size_mib(self) -> float:
        return self.size_bytes / MIB

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoints)

    @classmethod
    def from_lsblk_dict(cls, entry: dict[str, Any]) -> Partition:
        """Convert an lsblk child entry to a Partition.

        Args:
            entry: Child dict from ``lsblk -J -b`` with keys path/name, size,
                fstype, parttype, label, mountpoints (or mountpoint on older
                util-linux)

        Raises:
            ValueError: If no partition number can be derived from the path
        """
        path = entry.get("path") or f"/dev/{entry['name']}"
        number = entry.get("partn")
        if number is None:
            match = re.search(r"(\d+)$", path)
            if not match:
                raise ValueError(f"Cannot derive partition number from {path}")
            number = match.group(1)
        part_type = entry.get("parttype")
        filesystem = entry.get("fstype")
        mountpoints = entry.get("mountpoints")
        if mountpoints is None:
            mountpoints = [entry.get("mountpoint")]
        return cls(
            device_path=path,
            number=int(number),
            size_bytes=int(entry.get("size") or 0),
            role=PartitionRole.from_type(part_type, filesystem),
            filesystem=filesystem,
            start_bytes=int(entry["start"]) if entry.get("start") is not None else None,
            partition_type_guid=part_type.lower() if part_type else None,
            label=entry.get("label"),
            mountpoints=tuple(point for point in mountpoints if point),
        )


@dataclass(frozen=True)
class FreeRegion:
    """A contiguous unallocated byte range; ``end_bytes`` is inclusive."""

    start_bytes: int
    end_bytes: int

    @property
    def size_bytes(self) -> int:
        return self.end_bytes - self.start_bytes + 1


@dataclass(frozen=True)
class Disk:
    """Snapshot of a block device produced by probing.

    Never updated in place: callers re-probe after every mutation.
    """

    device_path: str
    size_bytes: int
    partitions: tuple[Partition, ...] = ()
    free_regions: tuple[FreeRegion, ...] = ()
    table_type: Optional[str] = None  # "gpt", "msdos" or None when unlabeled
    model: Optional[str] = None

    @property
    def size_gb(self) -> float:
        return self.size_bytes / GIB

    def largest_free_region(self) -> Optional[FreeRegion]:
        if not self.free_regions:
            return None
        # First region wins ties so the choice is stable across probes
        return max(self.free_regions, key=lambda region: region.size_bytes)

    def find_esp(self) -> Optional[Partition]:
        for partition in self.partitions:
            if partition.is_esp:
                return partition
        return None

    def get_partition(self, number: int) -> Optional[Partition]:
        for partition in self.partitions:
            if partition.number == number:
                return partition
        return None

    def partition_path(self, number: int) -> str:
        return partition_device_path(self.device_path, number)

    def format_label(self) -> str:
        """Human-readable label, e.g. "/dev/sda Samsung SSD (465.8GB)"."""
        size_str = f"{self.size_gb:.1f}GB"
        if self.model:
            return f"{self.device_path} {self.model.strip()} ({size_str})"
        return f"{self.device_path} ({size_str})"


class PlannerState(Enum):
    """Progress of a DiskPlanner run; transitions only move forward."""

    UNPLANNED = "unplanned"
    ESP_RESOLVED = "esp_resolved"
    ROOT_REGION_CHOSEN = "root_region_chosen"
    PARTITIONS_CREATED = "partitions_created"


@dataclass(frozen=True)
class PartitionLayout:
    """Result of disk planning: exactly one boot and one root partition."""

    disk: Disk
    mode: InstallationMode
    esp: Partition
    root: Partition
    esp_reused: bool = False
    state: PlannerState = PlannerState.PARTITIONS_CREATED
    predicted: bool = False  # True under dry-run, where nothing was created


# ==============================================================================
# Configuration Repository Domain
# ==============================================================================


@dataclass(frozen=True)
class MachineDescriptor:
    """An installable machine definition under the catalog root."""

    name: str  # e.g., "elara"
    config_path: Path  # e.g., /tmp/nix-config/machines/elara


class StagingStatus(Enum):
    PENDING = "pending"
    CLONING = "cloning"
    READY = "ready"
    FAILED = "failed"


@dataclass
class RepositoryStaging:
    """A fresh local copy of the remote configuration repository."""

    remote_url: str
    branch: str
    target_dir: Path
    status: StagingStatus = StagingStatus.PENDING
    diagnostic_tail: list[str] = field(default_factory=list)

    @property
    def machines_dir(self) -> Path:
        return self.target_dir / "machines"
