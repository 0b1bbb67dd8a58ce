"""Disk planning: compute and apply the boot + root partition layout.

Fresh mode:
    Wipe the partition table and create a GPT label with an ESP from 1MiB to
    the configured boot size, then a root partition spanning the remainder.

        parted -s /dev/sda mklabel gpt \\
            mkpart ESP fat32 1MiB 512MiB set 1 esp on \\
            mkpart primary 512MiB 100%

Dual-boot mode:
    Require the largest contiguous free region to meet the minimum size.
    Reuse an existing EFI System partition unmodified; otherwise carve a new
    ESP from the start of that region. Then create exactly one root partition
    over the rest of the region. Smaller free regions are never touched.

The planner walks UNPLANNED -> ESP_RESOLVED -> ROOT_REGION_CHOSEN ->
PARTITIONS_CREATED. Every partition-table command goes through the dry-run
gate; under dry-run the layout is predicted from the probed disk instead of
re-probed.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Optional

from nixos_provisioner.domain.models import (
    ESP_TYPE_GUID,
    MIB,
    Disk,
    FailureKind,
    FreeRegion,
    InstallationMode,
    Partition,
    PartitionLayout,
    PartitionRole,
    PlannerState,
    ValidationResult,
)
from nixos_provisioner.exceptions import DiskError
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import (
    combined_output,
    format_command_failure,
    run_mutating,
    tail_lines,
)
from nixos_provisioner.storage.devices import human_size, probe_disk
from nixos_provisioner.storage.format import (
    format_partition,
    rescan_partitions,
    wait_for_partition,
)

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_disk()

DEFAULT_ESP_SIZE_MIB = 512
DEFAULT_MIN_FREE_BYTES = 20 * 1024**3
# GPT keeps a backup header in the last 1MiB once parted aligns partitions
GPT_TAIL_RESERVE_BYTES = MIB
PARTED_TAIL_LINES = 10

_STATE_ORDER = [
    PlannerState.UNPLANNED,
    PlannerState.ESP_RESOLVED,
    PlannerState.ROOT_REGION_CHOSEN,
    PlannerState.PARTITIONS_CREATED,
]


def check_free_space(
    disk: Disk, threshold_bytes: int = DEFAULT_MIN_FREE_BYTES
) -> ValidationResult:
    """Succeed iff a free region exists and the largest is at least ``threshold_bytes``."""
    region = disk.largest_free_region()
    largest = region.size_bytes if region else 0
    if region is not None and largest >= threshold_bytes:
        return ValidationResult.success(
            f"Largest free region on {disk.device_path} is {human_size(largest)}",
            value=region,
        )
    return ValidationResult.failure(
        FailureKind.DISK,
        f"Insufficient free space on {disk.device_path}: largest free region is "
        f"{human_size(largest)}, need {human_size(threshold_bytes)}",
    )


def _mib_ceil(value: int) -> int:
    return math.ceil(value / MIB)


def _mib_floor(value: int) -> int:
    return value // MIB


def next_partition_number(disk: Disk) -> int:
    """Lowest unused partition number, which is what parted assigns on GPT."""
    used = {partition.number for partition in disk.partitions}
    number = 1
    while number in used:
        number += 1
    return number


class DiskPlanner:
    """Plans and applies the partition layout for one block device.

    Args:
        ctx: Execution context
        device_path: Whole-disk device node (e.g., /dev/nvme0n1)
        esp_size_mib: Size of a newly created boot partition
        min_free_bytes: Dual-boot free-space requirement
        settle_seconds: Pause after each rescan
        probe: Disk probing function
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        device_path: str,
        *,
        esp_size_mib: int = DEFAULT_ESP_SIZE_MIB,
        min_free_bytes: int = DEFAULT_MIN_FREE_BYTES,
        settle_seconds: float = 2.0,
        probe: Callable[[str], Disk] = probe_disk,
    ):
        self.ctx = ctx
        self.device_path = device_path
        self.esp_size_mib = esp_size_mib
        self.min_free_bytes = min_free_bytes
        self.settle_seconds = settle_seconds
        self._probe = probe
        self.state = PlannerState.UNPLANNED
        self.disk: Optional[Disk] = None

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def _transition(self, new_state: PlannerState) -> None:
        current = _STATE_ORDER.index(self.state)
        if _STATE_ORDER.index(new_state) != current + 1:
            raise RuntimeError(
                f"Invalid planner transition {self.state.value} -> {new_state.value}"
            )
        log.debug(f"Planner {self.device_path}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def probe(self) -> Disk:
        self.disk = self._probe(self.device_path)
        return self.disk

    # ------------------------------------------------------------------
    # Command helpers
    # ------------------------------------------------------------------

    def _parted(self, *args: str, summary: str) -> None:
        command = ["parted", "-s", self.device_path, *args]
        try:
            result = run_mutating(self.ctx, command)
        except OSError as error:
            raise DiskError(
                f"{summary}: unable to run parted: {error}", device_path=self.device_path
            ) from error
        if result.returncode != 0:
            log.error(format_command_failure(summary, command, result))
            raise DiskError(
                summary,
                tail_lines(combined_output(result), PARTED_TAIL_LINES),
                device_path=self.device_path,
            )

    def _rescan(self) -> None:
        rescan_partitions(self.ctx, self.device_path, self.settle_seconds)

    def _await_partition(self, partition: Partition) -> None:
        if self.ctx.dry_run:
            return
        if not wait_for_partition(partition.device_path):
            raise DiskError(
                f"Partition node {partition.device_path} did not appear",
                device_path=self.device_path,
            )

    def _format_esp(self, partition: Partition) -> None:
        result = format_partition(
            self.ctx, partition.device_path, PartitionRole.ESP, confirm_existing=False
        )
        if not result.ok:
            raise DiskError(
                result.message, result.diagnostic_tail, device_path=self.device_path
            )

    def _reprobe_new_partition(self, before: Disk, role: PartitionRole) -> Partition:
        """Re-probe and return the one partition that was not present before."""
        after = self.probe()
        known = {partition.number for partition in before.partitions}
        created = [p for p in after.partitions if p.number not in known]
        if len(created) != 1:
            raise DiskError(
                f"Expected one new partition after creation, found {len(created)}",
                device_path=self.device_path,
            )
        return replace(created[0], role=role)

    # ------------------------------------------------------------------
    # Fresh mode
    # ------------------------------------------------------------------

    def create_fresh_partitions(self) -> PartitionLayout:
        """Wipe the partition table and create ESP + root.

        Raises:
            DiskError: If probing, partitioning or ESP formatting fails
        """
        disk = self.probe()
        log.info(f"Fresh layout on {disk.format_label()}: the partition table will be replaced")
        if disk.partitions:
            log.warning(
                f"Existing partitions on {disk.device_path} will be destroyed: "
                + ", ".join(p.device_path for p in disk.partitions)
            )

        esp = Partition(
            device_path=disk.partition_path(1),
            number=1,
            size_bytes=(self.esp_size_mib - 1) * MIB,
            role=PartitionRole.ESP,
            filesystem="vfat",
            start_bytes=MIB,
            partition_type_guid=ESP_TYPE_GUID,
        )
        self._transition(PlannerState.ESP_RESOLVED)

        root_start = self.esp_size_mib * MIB
        root = Partition(
            device_path=disk.partition_path(2),
            number=2,
            size_bytes=max(disk.size_bytes - root_start - GPT_TAIL_RESERVE_BYTES, 0),
            role=PartitionRole.ROOT,
            start_bytes=root_start,
        )
        self._transition(PlannerState.ROOT_REGION_CHOSEN)

        self._parted(
            "mklabel", "gpt",
            "mkpart", "ESP", "fat32", "1MiB", f"{self.esp_size_mib}MiB",
            "set", "1", "esp", "on",
            "mkpart", "primary", f"{self.esp_size_mib}MiB", "100%",
            summary=f"Creating partition table on {disk.device_path} failed",
        )
        self._rescan()
        self._await_partition(esp)
        self._format_esp(esp)
        self._rescan()

        if not self.ctx.dry_run:
            disk = self.probe()
            probed_esp = disk.get_partition(1)
            probed_root = disk.get_partition(2)
            if probed_esp is None or probed_root is None or len(disk.partitions) != 2:
                raise DiskError(
                    f"Expected partitions 1 and 2 after repartitioning, found "
                    f"{[p.number for p in disk.partitions]}",
                    device_path=self.device_path,
                )
            esp = replace(probed_esp, role=PartitionRole.ESP)
            root = replace(probed_root, role=PartitionRole.ROOT)

        return self._finish(disk, InstallationMode.FRESH, esp, root, esp_reused=False)

    # ------------------------------------------------------------------
    # Dual-boot mode
    # ------------------------------------------------------------------

    def create_dual_boot_partitions(self) -> PartitionLayout:
        """Add a root partition (and an ESP if missing) in the largest free region.

        Raises:
            DiskError: If free space is insufficient or a partition operation fails
        """
        disk = self.probe()
        if disk.table_type is None:
            raise DiskError(
                "No partition table found; dual-boot needs an existing OS installation",
                device_path=self.device_path,
            )

        space = check_free_space(disk, self.min_free_bytes)
        if not space.ok:
            raise DiskError(space.message, device_path=self.device_path)
        region: FreeRegion = space.value
        for other in disk.free_regions:
            if other is not region:
                log.info(
                    f"Leaving smaller free region untouched: {human_size(other.size_bytes)} "
                    f"at byte {other.start_bytes}"
                )

        start_mib = _mib_ceil(region.start_bytes)
        end_mib = _mib_floor(region.end_bytes + 1)

        existing_esp = disk.find_esp()
        if existing_esp is not None:
            log.info(
                f"Reusing existing EFI System partition {existing_esp.device_path} "
                f"({human_size(existing_esp.size_bytes)})"
            )
            esp = existing_esp
            esp_reused = True
            self._transition(PlannerState.ESP_RESOLVED)
        else:
            esp_end_mib = start_mib + self.esp_size_mib
            if end_mib - esp_end_mib <= 0:
                raise DiskError(
                    "Free region too small for a new boot partition",
                    device_path=self.device_path,
                )
            number = next_partition_number(disk)
            log.info(f"No EFI System partition found, creating {self.esp_size_mib}MiB ESP")
            self._parted(
                "mkpart", "ESP", "fat32", f"{start_mib}MiB", f"{esp_end_mib}MiB",
                summary=f"Creating boot partition on {disk.device_path} failed",
            )
            self._rescan()
            esp = Partition(
                device_path=disk.partition_path(number),
                number=number,
                size_bytes=self.esp_size_mib * MIB,
                role=PartitionRole.ESP,
                filesystem="vfat",
                start_bytes=start_mib * MIB,
                partition_type_guid=ESP_TYPE_GUID,
            )
            if not self.ctx.dry_run:
                esp = self._reprobe_new_partition(disk, PartitionRole.ESP)
            self._parted(
                "set", str(esp.number), "esp", "on",
                summary=f"Flagging {esp.device_path} as ESP failed",
            )
            self._await_partition(esp)
            self._format_esp(esp)
            esp_reused = False
            start_mib = esp_end_mib
            self._transition(PlannerState.ESP_RESOLVED)
            if not self.ctx.dry_run:
                disk = self.probe()

        root_number = next_partition_number(disk)
        if self.ctx.dry_run and not esp_reused:
            # The predicted ESP occupies the first free slot
            root_number = next_partition_number(
                Disk(disk.device_path, disk.size_bytes, disk.partitions + (esp,))
            )
        root = Partition(
            device_path=disk.partition_path(root_number),
            number=root_number,
            size_bytes=(end_mib - start_mib) * MIB,
            role=PartitionRole.ROOT,
            start_bytes=start_mib * MIB,
        )
        self._transition(PlannerState.ROOT_REGION_CHOSEN)
        log.info(
            f"Creating root partition in free region {start_mib}MiB-{end_mib}MiB "
            f"({human_size(root.size_bytes)})"
        )

        self._parted(
            "mkpart", "primary", f"{start_mib}MiB", f"{end_mib}MiB",
            summary=f"Creating root partition on {disk.device_path} failed",
        )
        self._rescan()
        if not self.ctx.dry_run:
            root = self._reprobe_new_partition(disk, PartitionRole.ROOT)
            self._await_partition(root)
            disk = self.disk

        return self._finish(disk, InstallationMode.DUAL_BOOT, esp, root, esp_reused=esp_reused)

    def plan(self, mode: InstallationMode) -> PartitionLayout:
        if mode is InstallationMode.FRESH:
            return self.create_fresh_partitions()
        return self.create_dual_boot_partitions()

    def _finish(
        self,
        disk: Disk,
        mode: InstallationMode,
        esp: Partition,
        root: Partition,
        esp_reused: bool,
    ) -> PartitionLayout:
        self._transition(PlannerState.PARTITIONS_CREATED)
        layout = PartitionLayout(
            disk=disk,
            mode=mode,
            esp=esp,
            root=root,
            esp_reused=esp_reused,
            state=self.state,
            predicted=self.ctx.dry_run,
        )
        prefix = "Predicted" if self.ctx.dry_run else "Created"
        log.success(
            f"{prefix} layout on {disk.device_path}: boot {esp.device_path} "
            f"({human_size(esp.size_bytes)}{', reused' if esp_reused else ''}), "
            f"root {root.device_path} ({human_size(root.size_bytes)})"
        )
        return layout


def create_fresh_partitions(
    ctx: ExecutionContext, device_path: str, **planner_options
) -> PartitionLayout:
    return DiskPlanner(ctx, device_path, **planner_options).create_fresh_partitions()


def create_dual_boot_partitions(
    ctx: ExecutionContext, device_path: str, **planner_options
) -> PartitionLayout:
    return DiskPlanner(ctx, device_path, **planner_options).create_dual_boot_partitions()


def prepare_disk(
    ctx: ExecutionContext,
    device_path: str,
    mode: InstallationMode,
    **planner_options,
) -> ValidationResult:
    """Run the planner for ``mode`` and report the outcome as a ValidationResult."""
    planner = DiskPlanner(ctx, device_path, **planner_options)
    try:
        layout = planner.plan(mode)
    except DiskError as error:
        log.error(str(error))
        return ValidationResult.failure(FailureKind.DISK, str(error), error.diagnostic_tail)
    return ValidationResult.success(
        f"Partitioned {device_path} ({mode.value})", value=layout
    )
