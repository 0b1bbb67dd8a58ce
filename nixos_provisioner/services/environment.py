"""Pre-flight checks for the installation environment.

Checks run in order and stop at the first hard failure:

1. Not running as root (commands escalate with sudo individually)
2. sudo usable (skipped under dry-run)
3. Live installer marker present, otherwise warn and ask
4. At least one network probe answers (HTTP HEAD via aiohttp, or ICMP ping)
5. Boot firmware mode reported for information only
6. Scratch space in the temp directory, otherwise warn and ask
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

import aiohttp
import psutil

from nixos_provisioner.domain.models import FailureKind, ValidationResult
from nixos_provisioner.logging import LoggerFactory
from nixos_provisioner.storage.commands import run_command, tail_lines
from nixos_provisioner.storage.devices import human_size
from nixos_provisioner.ui.console import confirm

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_env()

LIVE_INSTALLER_MARKER = Path("/etc/NIXOS")
EFI_VARS_PATH = Path("/sys/firmware/efi/efivars")
HTTP_PROBES = ("https://nixos.org", "https://cache.nixos.org", "https://github.com")
ICMP_PROBES = ("8.8.8.8",)
DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
PING_TIMEOUT_SECONDS = 3
SCRATCH_MIN_FREE_BYTES = 5 * 1024**3


def detect_boot_mode(efi_path: Path = EFI_VARS_PATH) -> str:
    return "uefi" if efi_path.exists() else "bios"


async def _probe_http(session: aiohttp.ClientSession, url: str) -> bool:
    try:
        async with session.head(url, allow_redirects=True) as response:
            log.debug(f"HTTP probe {url}: {response.status}")
            return True
    except (aiohttp.ClientError, asyncio.TimeoutError) as error:
        log.debug(f"HTTP probe {url} failed: {error!r}")
        return False


async def _probe_http_all(urls: Iterable[str], timeout_seconds: float) -> bool:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds, connect=timeout_seconds)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        results = await asyncio.gather(*(_probe_http(session, url) for url in urls))
    return any(results)


def probe_http(
    urls: Iterable[str] = HTTP_PROBES,
    timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
) -> bool:
    """True when any URL answers an HTTP HEAD request within the timeout."""
    return asyncio.run(_probe_http_all(list(urls), timeout_seconds))


def probe_icmp(host: str, timeout_seconds: int = PING_TIMEOUT_SECONDS) -> bool:
    try:
        result = run_command(
            ["ping", "-c1", f"-W{timeout_seconds}", host], check=False, log_output=False
        )
    except OSError as error:
        log.debug(f"ping unavailable: {error}")
        return False
    return result.returncode == 0


def check_network(timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS) -> bool:
    if probe_http(HTTP_PROBES, timeout_seconds):
        return True
    return any(probe_icmp(host) for host in ICMP_PROBES)


def check_sudo(ctx: ExecutionContext) -> ValidationResult:
    if ctx.dry_run:
        log.info("DRY-RUN: skipping sudo check")
        return ValidationResult.success("sudo check skipped")
    try:
        result = run_command(["sudo", "-v"], check=False)
    except OSError as error:
        return ValidationResult.failure(
            FailureKind.ENVIRONMENT, f"sudo is not available: {error}"
        )
    if result.returncode != 0:
        return ValidationResult.failure(
            FailureKind.ENVIRONMENT,
            "sudo access is required for disk operations",
            tail_lines(result.stderr, 5),
        )
    return ValidationResult.success("sudo available")


def check_scratch_space(
    ctx: ExecutionContext,
    path: str,
    min_free_bytes: int = SCRATCH_MIN_FREE_BYTES,
) -> ValidationResult:
    try:
        free = psutil.disk_usage(path).free
    except OSError as error:
        log.warning(f"Could not determine free space in {path}: {error}")
        return ValidationResult.success("scratch space unknown")
    if free >= min_free_bytes:
        log.debug(f"Scratch space in {path}: {human_size(free)} free")
        return ValidationResult.success(f"{human_size(free)} free in {path}")
    log.warning(
        f"Only {human_size(free)} free in {path}; the build may need "
        f"{human_size(min_free_bytes)} or more"
    )
    if not confirm(ctx, "Continue with limited scratch space?"):
        return ValidationResult.failure(
            FailureKind.ENVIRONMENT, f"Insufficient scratch space in {path}"
        )
    return ValidationResult.success("continuing with limited scratch space")


def validate_environment(
    ctx: ExecutionContext,
    *,
    marker: Path = LIVE_INSTALLER_MARKER,
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
    scratch_dir: Optional[str] = None,
) -> ValidationResult:
    """Verify privileges, installer environment and connectivity."""
    if os.geteuid() == 0:
        log.error("Running as root; run as a normal user with sudo access")
        return ValidationResult.failure(
            FailureKind.ENVIRONMENT,
            "Do not run as root; run as a normal user with sudo access",
        )

    sudo = check_sudo(ctx)
    if not sudo.ok:
        log.error(sudo.message)
        return sudo

    if not marker.exists():
        log.warning(f"{marker} not found; this does not look like a NixOS installer")
        if not confirm(ctx, "Continue anyway?"):
            return ValidationResult.failure(
                FailureKind.ENVIRONMENT, "Not running from a NixOS installer"
            )

    if not check_network(probe_timeout):
        log.error("No network connectivity")
        return ValidationResult.failure(
            FailureKind.ENVIRONMENT,
            "No network connectivity: "
            + ", ".join((*HTTP_PROBES, *ICMP_PROBES))
            + " unreachable",
        )
    log.info("Network connectivity verified")

    boot_mode = detect_boot_mode()
    log.info(f"Boot mode: {boot_mode.upper()}")

    scratch = check_scratch_space(ctx, scratch_dir or tempfile.gettempdir())
    if not scratch.ok:
        return scratch

    log.success("Environment validation passed")
    return ValidationResult.success("Environment validation passed", value=boot_mode)
