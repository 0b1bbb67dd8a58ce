"""Domain models for provisioning runs."""

from __future__ import annotations

from .models import (
    Disk,
    FailureKind,
    FreeRegion,
    InstallationMode,
    MachineDescriptor,
    Partition,
    PartitionLayout,
    PartitionRole,
    PlannerState,
    RepositoryStaging,
    StagingStatus,
    ValidationResult,
)


__all__ = [
    "Disk",
    "FailureKind",
    "FreeRegion",
    "InstallationMode",
    "MachineDescriptor",
    "Partition",
    "PartitionLayout",
    "PartitionRole",
    "PlannerState",
    "RepositoryStaging",
    "StagingStatus",
    "ValidationResult",
]
