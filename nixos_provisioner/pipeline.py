"""Fail-fast provisioning pipeline.

Stages run strictly in order and each returns a ValidationResult. The
driver here is the only place that turns a failed result into an abort: it
raises the matching ProvisionerError and the CLI maps that to an exit code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional, TextIO

from nixos_provisioner.config.settings import (
    DEFAULT_BRANCH,
    DEFAULT_ESP_SIZE_MIB,
    DEFAULT_PROBE_TIMEOUT_SECONDS,
    DEFAULT_REPO_URL,
    DEFAULT_SETTLE_SECONDS,
    DEFAULT_STAGING_DIR,
)
from nixos_provisioner.domain.models import (
    InstallationMode,
    MachineDescriptor,
    PartitionLayout,
    RepositoryStaging,
    ValidationResult,
)
from nixos_provisioner.exceptions import DiscoveryError, DiskError, ProvisionerError
from nixos_provisioner.logging import get_logger, operation_context
from nixos_provisioner.services.build import (
    check_flake,
    collect_warnings,
    target_ref_for,
    validate_build,
)
from nixos_provisioner.services.dependencies import (
    required_capabilities,
    resolve_dependencies,
)
from nixos_provisioner.services.environment import validate_environment
from nixos_provisioner.services.machines import discover_machines_result, find_machine
from nixos_provisioner.services.repository import stage_repository
from nixos_provisioner.services.users import (
    override_path,
    read_existing_override,
    remove_user_override,
    resolve_default_user,
    validate_username,
    write_user_override,
)
from nixos_provisioner.storage.devices import list_disks, validate_disk_device
from nixos_provisioner.storage.format import format_root
from nixos_provisioner.storage.mount import release_disk
from nixos_provisioner.storage.partitioning import DEFAULT_MIN_FREE_BYTES, prepare_disk
from nixos_provisioner.ui.console import StepCounter, confirm, prompt_choice, prompt_text

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = get_logger(source="pipeline", tags=["pipeline"])


@dataclass
class InstallRequest:
    """Operator choices for one run; unset fields are asked for interactively."""

    machine: Optional[str] = None
    disk: Optional[str] = None
    mode: Optional[InstallationMode] = None
    user: Optional[str] = None
    repo_url: str = DEFAULT_REPO_URL
    branch: str = DEFAULT_BRANCH
    target_dir: Path = field(default_factory=lambda: Path(DEFAULT_STAGING_DIR))
    filesystem: Optional[str] = None
    min_free_bytes: int = DEFAULT_MIN_FREE_BYTES
    esp_size_mib: int = DEFAULT_ESP_SIZE_MIB
    settle_seconds: float = DEFAULT_SETTLE_SECONDS
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS

    def missing_non_interactive_options(self) -> list[str]:
        missing = []
        if not self.machine:
            missing.append("--machine")
        if not self.disk:
            missing.append("--disk")
        if self.mode is None:
            missing.append("--mode")
        return missing


@dataclass
class PipelineOutcome:
    staging: Optional[RepositoryStaging] = None
    machine: Optional[MachineDescriptor] = None
    user: Optional[str] = None
    override_path: Optional[Path] = None
    previous_override: Optional[str] = None
    layout: Optional[PartitionLayout] = None
    warnings: list[str] = field(default_factory=list)


def _check(result: ValidationResult) -> ValidationResult:
    result.raise_for_failure()
    return result


class InstallPipeline:
    """Runs every stage for one InstallRequest."""

    TOTAL_STEPS = 8

    def __init__(
        self,
        ctx: ExecutionContext,
        request: InstallRequest,
        *,
        input_func: Callable[[str], str] = input,
        stream: Optional[TextIO] = None,
    ):
        self.ctx = ctx
        self.request = request
        self.input_func = input_func
        self.stream = stream
        self.steps = StepCounter(self.TOTAL_STEPS)
        self.outcome = PipelineOutcome()

    def run(self) -> PipelineOutcome:
        """Run all stages.

        Raises:
            ProvisionerError: On the first failing stage
        """
        try:
            self._validate_environment()
            self._resolve_dependencies()
            self._stage_repository()
            self._select_machine()
            self._resolve_user()
            self._prepare_disk()
            self._format_root()
            self._validate_build()
        except ProvisionerError:
            remove_user_override(
                self.ctx, self.outcome.override_path, self.outcome.previous_override
            )
            raise
        log.success("Target is ready for installation")
        return self.outcome

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _validate_environment(self) -> None:
        self.steps.advance("Validating environment")
        _check(validate_environment(self.ctx, probe_timeout=self.request.probe_timeout))

    def _resolve_dependencies(self) -> None:
        self.steps.advance("Checking required tools")
        _check(resolve_dependencies(required_capabilities(self.request.filesystem)))

    def _stage_repository(self) -> None:
        self.steps.advance("Staging configuration repository")
        request = self.request
        with operation_context("clone", url=request.repo_url, branch=request.branch):
            result = _check(
                stage_repository(
                    self.ctx, request.repo_url, request.branch, request.target_dir
                )
            )
        self.outcome.staging = result.value

    def _select_machine(self) -> None:
        self.steps.advance("Selecting machine configuration")
        machines = _check(discover_machines_result(self.outcome.staging.machines_dir)).value
        if self.request.machine:
            machine = find_machine(machines, self.request.machine)
        else:
            machine = prompt_choice(
                "Available machine configurations:",
                machines,
                label=lambda m: m.name,
                input_func=self.input_func,
                stream=self.stream,
            )
            if machine is None:
                raise DiscoveryError("No machine selected")
        log.info(f"Selected machine: {machine.name}")
        self.outcome.machine = machine

    def _resolve_user(self) -> None:
        self.steps.advance("Resolving primary user")
        detected = resolve_default_user(self.outcome.staging.target_dir)
        requested = self.request.user
        if requested is None and not self.ctx.non_interactive:
            requested = self._ask_username(detected)
        requested = requested or detected
        self.outcome.user = requested
        machines_dir = self.outcome.staging.machines_dir
        machine = self.outcome.machine.name
        previous = read_existing_override(override_path(machines_dir, machine))
        self.outcome.override_path = write_user_override(
            self.ctx,
            machines_dir,
            machine,
            requested,
            detected,
        )
        if self.outcome.override_path is not None:
            self.outcome.previous_override = previous

    def _ask_username(self, detected: str) -> str:
        for _ in range(3):
            name = prompt_text("Primary username", detected, input_func=self.input_func)
            if name == detected or validate_username(name):
                return name
            log.warning(
                f"Invalid username '{name}': use lowercase letters, digits, '-' or '_', "
                "start with a letter, avoid system names"
            )
        return detected

    def _select_disk(self) -> str:
        if self.request.disk:
            return self.request.disk
        disk = prompt_choice(
            "Available disks:",
            list_disks(),
            label=lambda d: d.format_label(),
            input_func=self.input_func,
            stream=self.stream,
        )
        if disk is None:
            raise DiskError("No disk selected")
        return disk.device_path

    def _select_mode(self) -> InstallationMode:
        if self.request.mode is not None:
            return self.request.mode
        mode = prompt_choice(
            "Installation mode:",
            list(InstallationMode),
            label=lambda m: m.value,
            input_func=self.input_func,
            stream=self.stream,
        )
        if mode is None:
            raise DiskError("No installation mode selected")
        return mode

    def _prepare_disk(self) -> None:
        self.steps.advance("Preparing disk")
        device_path = self._select_disk()
        _check(validate_disk_device(device_path))
        mode = self._select_mode()

        if not self.ctx.dry_run:
            if mode is InstallationMode.FRESH:
                prompt = f"ALL DATA on {device_path} will be destroyed. Continue?"
            else:
                prompt = f"Create new partitions in free space on {device_path}?"
            if not confirm(self.ctx, prompt, input_func=self.input_func):
                raise DiskError("Disk preparation declined", device_path=device_path)

        request = self.request
        with operation_context("partition", disk=device_path, mode=mode.value):
            _check(release_disk(self.ctx, device_path, input_func=self.input_func))
            result = _check(
                prepare_disk(
                    self.ctx,
                    device_path,
                    mode,
                    esp_size_mib=request.esp_size_mib,
                    min_free_bytes=request.min_free_bytes,
                    settle_seconds=request.settle_seconds,
                )
            )
        self.outcome.layout = result.value

    def _format_root(self) -> None:
        self.steps.advance("Formatting root partition")
        root = self.outcome.layout.root
        _check(format_root(self.ctx, root.device_path, self.request.filesystem))

    def _validate_build(self) -> None:
        self.steps.advance("Validating build")
        flake_dir = self.outcome.staging.target_dir
        machine = self.outcome.machine.name
        _check(check_flake(self.ctx, flake_dir))
        if not self.ctx.dry_run:
            self.outcome.warnings = collect_warnings(flake_dir, machine)
        _check(validate_build(self.ctx, target_ref_for(machine, flake_dir), cwd=flake_dir))
