"""Discover installable machine definitions in a staged repository."""

from __future__ import annotations

from pathlib import Path
from typing import Union

from nixos_provisioner.domain.models import FailureKind, MachineDescriptor, ValidationResult
from nixos_provisioner.exceptions import DiscoveryError
from nixos_provisioner.logging import LoggerFactory


log = LoggerFactory.for_catalog()

EXCLUDED_ENTRIES = frozenset({"templates"})


def discover_machines(root_dir: Union[str, Path]) -> list[MachineDescriptor]:
    """List immediate subdirectories of ``root_dir`` except ``templates``, sorted.

    Raises:
        DiscoveryError: If ``root_dir`` is missing or holds no machines
    """
    root = Path(root_dir)
    if not root.is_dir():
        raise DiscoveryError(
            f"Machine catalog {root} does not exist", root_dir=str(root)
        )
    machines = [
        MachineDescriptor(name=entry.name, config_path=entry)
        for entry in root.iterdir()
        if entry.is_dir() and entry.name not in EXCLUDED_ENTRIES
    ]
    if not machines:
        raise DiscoveryError(
            f"No machine configurations found in {root}", root_dir=str(root)
        )
    machines.sort(key=lambda machine: machine.name)
    log.debug(f"Discovered machines: {', '.join(m.name for m in machines)}")
    return machines


def discover_machines_result(root_dir: Union[str, Path]) -> ValidationResult:
    try:
        machines = discover_machines(root_dir)
    except DiscoveryError as error:
        log.error(str(error))
        return ValidationResult.failure(FailureKind.DISCOVERY, str(error))
    log.info(f"Found {len(machines)} machine configuration(s)")
    return ValidationResult.success(f"Found {len(machines)} machines", value=machines)


def find_machine(machines: list[MachineDescriptor], name: str) -> MachineDescriptor:
    for machine in machines:
        if machine.name == name:
            return machine
    available = ", ".join(machine.name for machine in machines)
    raise DiscoveryError(f"Machine '{name}' not found (available: {available})")
