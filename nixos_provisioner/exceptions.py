"""Custom exceptions for provisioning stages.

Each pipeline stage reports problems as a ValidationResult; the pipeline
driver converts the first failing result into one of these exceptions and
aborts the run.

Exception Hierarchy:
    ProvisionerError (base)
        ├── EnvironmentValidationError
        ├── DependencyError
        ├── RepositoryError
        ├── DiscoveryError
        ├── DiskError
        └── BuildValidationError

Usage:
    from nixos_provisioner.exceptions import DiskError

    if region is None:
        raise DiskError("No free space left", device_path="/dev/sda")
"""

from __future__ import annotations

from typing import Iterable, Optional


class ProvisionerError(Exception):
    """Base exception for all provisioning failures."""

    def __init__(self, message: str, diagnostic_tail: Optional[Iterable[str]] = None):
        self.message = message
        self.diagnostic_tail = list(diagnostic_tail or [])
        super().__init__(message)


class EnvironmentValidationError(ProvisionerError):
    """Privilege, connectivity or boot-environment precondition unmet."""


class DependencyError(ProvisionerError):
    """One or more required external tools are missing."""


class RepositoryError(ProvisionerError):
    """Fetching the configuration repository failed."""


class DiscoveryError(ProvisionerError):
    """No installable machine definitions were found."""

    def __init__(
        self,
        message: str,
        diagnostic_tail: Optional[Iterable[str]] = None,
        *,
        root_dir: Optional[str] = None,
    ):
        self.root_dir = root_dir
        super().__init__(message, diagnostic_tail)


class DiskError(ProvisionerError):
    """Insufficient space, invalid device or partition-table failure."""

    def __init__(
        self,
        message: str,
        diagnostic_tail: Optional[Iterable[str]] = None,
        *,
        device_path: Optional[str] = None,
    ):
        self.device_path = device_path
        if device_path and device_path not in message:
            message = f"{device_path}: {message}"
        super().__init__(message, diagnostic_tail)


class BuildValidationError(ProvisionerError):
    """The simulated build of the target configuration failed."""


# Keyed by FailureKind.value so this module stays free of domain imports
EXCEPTIONS_BY_KIND: dict[str, type[ProvisionerError]] = {
    "environment": EnvironmentValidationError,
    "dependency": DependencyError,
    "repository": RepositoryError,
    "discovery": DiscoveryError,
    "disk": DiskError,
    "build_validation": BuildValidationError,
}


def error_for_kind(
    kind: str, message: str, diagnostic_tail: Optional[Iterable[str]] = None
) -> ProvisionerError:
    """Build the exception matching a failure kind."""
    error_class = EXCEPTIONS_BY_KIND.get(kind, ProvisionerError)
    return error_class(message, diagnostic_tail)
