"""Map required capabilities to binaries and report what is missing.

Nothing is installed here. A failed check returns a remediation command the
operator can run to get a shell with the missing tools.
"""

from __future__ import annotations

import shutil
from typing import Callable, Iterable, NamedTuple, Optional

from nixos_provisioner.domain.models import FailureKind, ValidationResult
from nixos_provisioner.logging import LoggerFactory


log = LoggerFactory.for_deps()


class ToolRequirement(NamedTuple):
    binary: str  # Executable looked up on PATH
    package: str  # Nix package that provides it


CAPABILITIES: dict[str, ToolRequirement] = {
    # Abstract capabilities used by the pipeline
    "version-control": ToolRequirement("git", "git"),
    "partition-table-editor": ToolRequirement("parted", "parted"),
    "block-device-lister": ToolRequirement("lsblk", "util-linux"),
    "filesystem-formatter": ToolRequirement("mkfs.fat", "dosfstools"),
    "build-evaluator": ToolRequirement("nix", "nix"),
    "device-settler": ToolRequirement("udevadm", "systemd"),
    # Package names accepted directly
    "git": ToolRequirement("git", "git"),
    "parted": ToolRequirement("parted", "parted"),
    "util-linux": ToolRequirement("lsblk", "util-linux"),
    "gptfdisk": ToolRequirement("sgdisk", "gptfdisk"),
    "dosfstools": ToolRequirement("mkfs.fat", "dosfstools"),
    "e2fsprogs": ToolRequirement("mkfs.ext4", "e2fsprogs"),
    "btrfs-progs": ToolRequirement("mkfs.btrfs", "btrfs-progs"),
    "xfsprogs": ToolRequirement("mkfs.xfs", "xfsprogs"),
    "nix": ToolRequirement("nix", "nix"),
    "cryptsetup": ToolRequirement("cryptsetup", "cryptsetup"),
    "rsync": ToolRequirement("rsync", "rsync"),
    "jq": ToolRequirement("jq", "jq"),
}

DEFAULT_REQUIRED = (
    "version-control",
    "partition-table-editor",
    "block-device-lister",
    "filesystem-formatter",
    "build-evaluator",
)

FILESYSTEM_CAPABILITIES = {
    "ext4": "e2fsprogs",
    "btrfs": "btrfs-progs",
    "xfs": "xfsprogs",
}

DEFAULT_RERUN_COMMAND = "nixos-provisioner"


def requirement_for(capability: str) -> ToolRequirement:
    """Unknown capabilities are treated as a binary and package of the same name."""
    return CAPABILITIES.get(capability, ToolRequirement(capability, capability))


def required_capabilities(filesystem: Optional[str] = None) -> list[str]:
    required = list(DEFAULT_REQUIRED)
    if filesystem and filesystem in FILESYSTEM_CAPABILITIES:
        required.append(FILESYSTEM_CAPABILITIES[filesystem])
    return required


def find_missing(
    required: Iterable[str],
    which: Callable[[str], Optional[str]] = shutil.which,
) -> list[str]:
    missing = []
    for capability in required:
        requirement = requirement_for(capability)
        if which(requirement.binary) is None:
            log.debug(f"{capability}: {requirement.binary} not found on PATH")
            missing.append(capability)
        else:
            log.debug(f"{capability}: found {requirement.binary}")
    return missing


def remediation_command(
    missing: Iterable[str], rerun_command: str = DEFAULT_RERUN_COMMAND
) -> str:
    packages = []
    for capability in missing:
        package = requirement_for(capability).package
        if package not in packages:
            packages.append(package)
    return f"nix-shell -p {' '.join(packages)} --run '{rerun_command}'"


def resolve_dependencies(
    required: Iterable[str] = DEFAULT_REQUIRED,
    *,
    rerun_command: str = DEFAULT_RERUN_COMMAND,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> ValidationResult:
    """Check that every required capability's binary is on PATH.

    Returns:
        Success, or a DEPENDENCY failure whose message lists every missing
        capability and whose diagnostic tail holds the remediation command.
    """
    required = list(dict.fromkeys(required))
    missing = find_missing(required, which=which)
    if not missing:
        log.success(f"All {len(required)} required tools are available")
        return ValidationResult.success("All required tools are available")

    remediation = remediation_command(missing, rerun_command)
    binaries = ", ".join(f"{cap} ({requirement_for(cap).binary})" for cap in missing)
    log.error(f"Missing required tools: {binaries}")
    log.info(f"Install them with: {remediation}")
    return ValidationResult.failure(
        FailureKind.DEPENDENCY,
        f"Missing required tools: {binaries}",
        [f"Run: {remediation}"],
        value=missing,
    )
