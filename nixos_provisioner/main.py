import argparse
import sys
from pathlib import Path

from nixos_provisioner.__version__ import __version__
from nixos_provisioner.app.context import ExecutionContext
from nixos_provisioner.config import settings
from nixos_provisioner.domain.models import GIB, InstallationMode
from nixos_provisioner.exceptions import ProvisionerError
from nixos_provisioner.logging import LoggerFactory, durable_only, setup_logging
from nixos_provisioner.pipeline import InstallPipeline, InstallRequest
from nixos_provisioner.services.users import validate_username
from nixos_provisioner.storage.format import SUPPORTED_ROOT_FILESYSTEMS
from nixos_provisioner.ui.console import echo_diagnostic, print_header

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

TITLE = "NixOS Provisioner"


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nixos-provisioner",
        description="Prepare a disk and a staged NixOS flake configuration for installation",
    )
    parser.add_argument("-m", "--machine", help="Machine configuration to install")
    parser.add_argument("-d", "--disk", help="Target disk (e.g. /dev/sda, /dev/nvme0n1)")
    parser.add_argument(
        "--mode",
        choices=[mode.value for mode in InstallationMode],
        help="fresh wipes the disk; dual-boot installs into free space",
    )
    parser.add_argument("-u", "--user", help="Primary username (defaults to the configuration's)")
    parser.add_argument(
        "-r", "--repo", default=settings.get_setting("repo_url"), help="Configuration repository URL"
    )
    parser.add_argument(
        "-b", "--branch", default=settings.get_setting("branch"), help="Repository branch"
    )
    parser.add_argument(
        "--target-dir",
        default=settings.get_setting("staging_dir"),
        help="Where to stage the repository",
    )
    parser.add_argument(
        "--filesystem",
        choices=SUPPORTED_ROOT_FILESYSTEMS,
        help="Format the root partition with this filesystem (default: leave unformatted)",
    )
    parser.add_argument(
        "--min-free-gb",
        type=positive_int,
        default=settings.get_int("min_free_gb", settings.DEFAULT_MIN_FREE_GB),
        help="Minimum contiguous free space for dual-boot, in GiB",
    )
    parser.add_argument("--dry-run", action="store_true", default=None, help="Simulate every change")
    parser.add_argument(
        "--non-interactive", action="store_true", default=None, help="Never prompt"
    )
    parser.add_argument(
        "--yes", dest="force_yes", action="store_true", default=None, help="Answer yes to all prompts"
    )
    parser.add_argument("--quiet", action="store_true", default=None, help="Only write the log file")
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument("--log-path", help="Log file path")
    parser.add_argument("--no-color", action="store_true", default=None, help="Disable colors")
    parser.add_argument(
        "--save-defaults",
        action="store_true",
        help="Remember --repo, --branch and --target-dir for future runs",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def build_request(args: argparse.Namespace) -> InstallRequest:
    return InstallRequest(
        machine=args.machine,
        disk=args.disk,
        mode=InstallationMode.from_string(args.mode) if args.mode else None,
        user=args.user,
        repo_url=args.repo,
        branch=args.branch,
        target_dir=Path(args.target_dir),
        filesystem=args.filesystem,
        min_free_bytes=args.min_free_gb * GIB,
        esp_size_mib=settings.get_int("esp_size_mib", settings.DEFAULT_ESP_SIZE_MIB),
        settle_seconds=settings.get_float("settle_seconds", settings.DEFAULT_SETTLE_SECONDS),
        probe_timeout=settings.get_float(
            "probe_timeout_seconds", settings.DEFAULT_PROBE_TIMEOUT_SECONDS
        ),
    )


def save_defaults(args: argparse.Namespace) -> None:
    settings.set_setting("repo_url", args.repo)
    settings.set_setting("branch", args.branch)
    settings.set_setting("staging_dir", str(args.target_dir))


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    ctx = ExecutionContext.from_environment(
        dry_run=args.dry_run,
        non_interactive=args.non_interactive,
        force_yes=args.force_yes,
        quiet=args.quiet,
        debug=args.debug,
        log_path=args.log_path,
        no_color=args.no_color,
    )
    request = build_request(args)

    if ctx.non_interactive:
        missing = request.missing_non_interactive_options()
        if missing:
            parser.print_usage(sys.stderr)
            sys.stderr.write(
                f"error: non-interactive mode requires {', '.join(missing)}\n"
            )
            return EXIT_USAGE
    if request.user is not None and not validate_username(request.user):
        parser.print_usage(sys.stderr)
        sys.stderr.write(f"error: invalid username: {request.user}\n")
        return EXIT_USAGE

    setup_logging(ctx)
    log = LoggerFactory.for_system()
    print_header(ctx, TITLE, __version__)
    log.info(f"{TITLE} {__version__} started (log: {ctx.log_path})")
    if args.save_defaults:
        save_defaults(args)
        log.info(f"Saved defaults to {settings.SETTINGS_PATH}")

    try:
        outcome = InstallPipeline(ctx, request).run()
    except ProvisionerError as error:
        log.error(str(error))
        for line in error.diagnostic_tail:
            durable_only(log).error(f"  {line}")
        echo_diagnostic(error.diagnostic_tail)
        log.error(f"Aborted; see {ctx.log_path} for details")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        log.warning("Interrupted; disk changes already applied are not rolled back")
        return EXIT_INTERRUPTED

    machine = outcome.machine.name if outcome.machine else "-"
    log.success(
        f"Ready to install {machine} for user {outcome.user} "
        f"(root {outcome.layout.root.device_path if outcome.layout else '-'})"
    )
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
