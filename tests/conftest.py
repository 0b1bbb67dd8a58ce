"""
Pytest configuration and shared fixtures for nixos-provisioner tests.

This module provides common fixtures and utilities used across all test modules.
"""

import subprocess
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest
from loguru import logger

from nixos_provisioner.app.context import ExecutionContext
from nixos_provisioner.domain.models import (
    ESP_TYPE_GUID,
    GIB,
    MIB,
    Disk,
    FreeRegion,
    Partition,
    PartitionRole,
)


MICROSOFT_RESERVED_GUID = "e3c9e316-0b5c-4db8-817d-f92df00215ae"
MICROSOFT_BASIC_DATA_GUID = "ebd0a0a2-b9e5-4433-87c0-68b6b72699c7"
WINDOWS_RECOVERY_GUID = "de94bba4-06d1-4d40-a16a-bfd50179d6ac"


# ==============================================================================
# Logging Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_loguru():
    """Drop sinks added during a test so they do not leak into the next one."""
    yield
    logger.remove()


@pytest.fixture
def log_records() -> List[Dict[str, Any]]:
    """
    Fixture capturing loguru records emitted during the test.

    Returns:
        List that receives each record dict as it is logged.
    """
    records: List[Dict[str, Any]] = []
    logger.remove()
    logger.add(lambda message: records.append(message.record), level="DEBUG", enqueue=False)
    return records


@pytest.fixture
def dry_run_messages(log_records):
    """Callable returning the DRY-RUN lines captured so far."""

    def collect() -> List[str]:
        return [
            record["message"]
            for record in log_records
            if record["message"].startswith("DRY-RUN: would perform:")
        ]

    return collect


# ==============================================================================
# Execution Context Fixtures
# ==============================================================================


@pytest.fixture
def ctx(tmp_path) -> ExecutionContext:
    """Non-interactive context that performs real (mocked) commands."""
    return ExecutionContext(non_interactive=True, log_path=tmp_path / "install.log")


@pytest.fixture
def dry_ctx(tmp_path) -> ExecutionContext:
    """Non-interactive dry-run context."""
    return ExecutionContext(
        dry_run=True, non_interactive=True, log_path=tmp_path / "install.log"
    )


@pytest.fixture
def interactive_ctx(tmp_path) -> ExecutionContext:
    """Interactive context; prompts read from an injected input function."""
    return ExecutionContext(log_path=tmp_path / "install.log")


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def run_as_root(mocker):
    """Pretend the tests run as root so device commands are not prefixed with sudo.

    Tests covering escalation patch ``needs_privilege_escalation`` to return True.
    """
    return mocker.patch(
        "nixos_provisioner.storage.commands.needs_privilege_escalation", return_value=False
    )


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
    return Mock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always succeeds.

    Returns:
        Mock object for subprocess.run.
    """
    return mocker.patch("subprocess.run", return_value=completed())


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """
    Fixture providing a mock subprocess.run that always fails.

    Returns:
        Mock object for subprocess.run that raises CalledProcessError.
    """

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=raise_error)


# ==============================================================================
# Disk Fixtures
# ==============================================================================


@pytest.fixture
def blank_disk() -> Disk:
    """A 40 GiB disk without a partition table."""
    size = 40 * GIB
    return Disk(
        device_path="/dev/sda",
        size_bytes=size,
        free_regions=(FreeRegion(0, size - 1),),
        table_type=None,
    )


@pytest.fixture
def fresh_disk_after() -> Disk:
    """The 40 GiB disk as probed after fresh partitioning."""
    size = 40 * GIB
    return Disk(
        device_path="/dev/sda",
        size_bytes=size,
        partitions=(
            Partition(
                device_path="/dev/sda1",
                number=1,
                size_bytes=511 * MIB,
                role=PartitionRole.ESP,
                filesystem="vfat",
                start_bytes=MIB,
                partition_type_guid=ESP_TYPE_GUID,
            ),
            Partition(
                device_path="/dev/sda2",
                number=2,
                size_bytes=size - 513 * MIB,
                role=PartitionRole.OTHER,
                start_bytes=512 * MIB,
                partition_type_guid="0fc63daf-8483-4772-8e79-3d69d8477de4",
            ),
        ),
        free_regions=(FreeRegion(size - MIB, size - 1),),
        table_type="gpt",
    )


def _windows_partitions(device: str = "/dev/sda", with_esp: bool = True) -> List[Partition]:
    partitions = []
    if with_esp:
        partitions.append(
            Partition(
                device_path=f"{device}1",
                number=1,
                size_bytes=300 * MIB,
                role=PartitionRole.ESP,
                filesystem="vfat",
                start_bytes=1 * MIB,
                partition_type_guid=ESP_TYPE_GUID,
            )
        )
    partitions.extend(
        [
            Partition(
                device_path=f"{device}2",
                number=2,
                size_bytes=16 * MIB,
                start_bytes=301 * MIB,
                partition_type_guid=MICROSOFT_RESERVED_GUID,
            ),
            Partition(
                device_path=f"{device}3",
                number=3,
                size_bytes=80 * GIB,
                filesystem="ntfs",
                start_bytes=317 * MIB,
                partition_type_guid=MICROSOFT_BASIC_DATA_GUID,
            ),
            Partition(
                device_path=f"{device}4",
                number=4,
                size_bytes=512 * MIB,
                filesystem="ntfs",
                start_bytes=107837 * MIB,
                partition_type_guid=WINDOWS_RECOVERY_GUID,
            ),
        ]
    )
    return partitions


# 300 MiB ESP, MSR, 80 GiB Windows, 25 GiB free, 512 MiB recovery
DUAL_BOOT_DISK_SIZE = 108350 * MIB
DUAL_BOOT_FREE_REGIONS = (
    FreeRegion(17408, MIB - 1),
    FreeRegion(82237 * MIB, 107837 * MIB - 1),
    FreeRegion(108349 * MIB, DUAL_BOOT_DISK_SIZE - 16897),
)


@pytest.fixture
def dual_boot_disk() -> Disk:
    """Windows disk with a 300 MiB ESP and a 25 GiB free region."""
    return Disk(
        device_path="/dev/sda",
        size_bytes=DUAL_BOOT_DISK_SIZE,
        partitions=tuple(_windows_partitions()),
        free_regions=DUAL_BOOT_FREE_REGIONS,
        table_type="gpt",
    )


@pytest.fixture
def dual_boot_disk_without_esp() -> Disk:
    """Same layout with the ESP slot unallocated (legacy-boot Windows)."""
    return Disk(
        device_path="/dev/sda",
        size_bytes=DUAL_BOOT_DISK_SIZE,
        partitions=tuple(_windows_partitions(with_esp=False)),
        free_regions=DUAL_BOOT_FREE_REGIONS,
        table_type="gpt",
    )


@pytest.fixture
def add_partition():
    """Return a function building the re-probed disk after a partition was created."""

    def build(disk: Disk, partition: Partition) -> Disk:
        return Disk(
            device_path=disk.device_path,
            size_bytes=disk.size_bytes,
            partitions=tuple(sorted(disk.partitions + (partition,), key=lambda p: p.number)),
            free_regions=disk.free_regions,
            table_type=disk.table_type,
        )

    return build


# ==============================================================================
# Tool Output Fixtures
# ==============================================================================


@pytest.fixture
def parted_dual_boot_output() -> str:
    """``parted -m -s /dev/sda unit B print free`` for the dual-boot disk."""
    return (
        "BYT;\n"
        "/dev/sda:113613209600B:scsi:512:512:gpt:ATA Samsung SSD:;\n"
        "1:17408B:1048575B:1031168B:free;\n"
        "1:1048576B:315621375B:314572800B:fat32:EFI system partition:boot, esp;\n"
        "2:315621376B:332398591B:16777216B::Microsoft reserved partition:msftres;\n"
        "3:332398592B:86231744511B:85899345920B:ntfs:Basic data partition:msftdata;\n"
        "1:86231744512B:113075290111B:26843545600B:free;\n"
        "4:113075290112B:113612161023B:536870912B:ntfs::hidden, diag;\n"
        "1:113612161024B:113613192703B:1031680B:free;\n"
    )


@pytest.fixture
def lsblk_dual_boot_output() -> str:
    """``lsblk -J -b`` output matching ``parted_dual_boot_output``."""
    return """{
   "blockdevices": [
      {"name":"sda", "path":"/dev/sda", "size":113613209600, "type":"disk",
       "fstype":null, "parttype":null, "label":null, "model":"Samsung SSD", "ro":false,
       "children": [
          {"name":"sda1", "path":"/dev/sda1", "size":314572800, "type":"part",
           "fstype":"vfat", "parttype":"c12a7328-f81f-11d2-ba4b-00a0c93ec93b",
           "label":"SYSTEM", "model":null, "ro":false},
          {"name":"sda2", "path":"/dev/sda2", "size":16777216, "type":"part",
           "fstype":null, "parttype":"e3c9e316-0b5c-4db8-817d-f92df00215ae",
           "label":null, "model":null, "ro":false},
          {"name":"sda3", "path":"/dev/sda3", "size":85899345920, "type":"part",
           "fstype":"ntfs", "parttype":"ebd0a0a2-b9e5-4433-87c0-68b6b72699c7",
           "label":"Windows", "model":null, "ro":false},
          {"name":"sda4", "path":"/dev/sda4", "size":536870912, "type":"part",
           "fstype":"ntfs", "parttype":"de94bba4-06d1-4d40-a16a-bfd50179d6ac",
           "label":"Recovery", "model":null, "ro":false}
       ]
      }
   ]
}"""


@pytest.fixture
def machines_root(tmp_path) -> Path:
    """A staged repository with two machines and a templates directory."""
    root = tmp_path / "nix-config"
    machines = root / "machines"
    for name in ("magos", "elara", "templates"):
        (machines / name).mkdir(parents=True)
        (machines / name / "configuration.nix").write_text("{ }\n")
    (root / "flake.nix").write_text(
        '{\n  outputs = { self, ... }: {\n    globalConfig = {\n'
        '      defaultUser = "ex1tium";\n    };\n  };\n}\n'
    )
    return root
