"""Operator-facing prompts, banners and step reporting."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, Callable, Optional, Sequence, TextIO, TypeVar

from nixos_provisioner.logging import LoggerFactory, log_step

if TYPE_CHECKING:
    from nixos_provisioner.app.context import ExecutionContext


log = LoggerFactory.for_system()

AFFIRMATIVE_ANSWERS = {"y", "yes"}

T = TypeVar("T")


def confirm(
    ctx: ExecutionContext,
    prompt: str,
    default_yes: bool = False,
    input_func: Callable[[str], str] = input,
) -> bool:
    """Ask a yes/no question.

    Non-interactive and force-yes runs never block: they answer with the
    default, or yes when force-yes is set. Interactively only ``y``/``yes``
    count as affirmative; an empty answer selects the default.
    """
    if ctx.non_interactive or ctx.force_yes:
        answer = default_yes or ctx.force_yes
        log.debug(f"Auto-answered '{prompt}' with {'yes' if answer else 'no'}")
        return answer

    suffix = "[Y/n]" if default_yes else "[y/N]"
    try:
        reply = input_func(f"{prompt} {suffix} ")
    except EOFError:
        return default_yes
    reply = reply.strip().lower()
    if not reply:
        return default_yes
    return reply in AFFIRMATIVE_ANSWERS


def prompt_text(
    prompt: str,
    default: str = "",
    input_func: Callable[[str], str] = input,
) -> str:
    hint = f" [{default}]" if default else ""
    try:
        reply = input_func(f"{prompt}{hint}: ").strip()
    except EOFError:
        return default
    return reply or default


def prompt_choice(
    title: str,
    options: Sequence[T],
    label: Callable[[T], str] = str,
    input_func: Callable[[str], str] = input,
    stream: Optional[TextIO] = None,
    attempts: int = 3,
) -> Optional[T]:
    """Let the operator pick one of ``options`` by number.

    Returns None when the list is empty or no valid choice is made.
    """
    if not options:
        return None
    stream = stream or sys.stderr
    stream.write(f"{title}\n")
    for index, option in enumerate(options, start=1):
        stream.write(f"  {index}) {label(option)}\n")
    stream.flush()
    for _ in range(attempts):
        try:
            reply = input_func(f"Select [1-{len(options)}]: ").strip()
        except EOFError:
            return None
        if reply.isdigit() and 1 <= int(reply) <= len(options):
            return options[int(reply) - 1]
        log.warning(f"Invalid selection: {reply!r}")
    return None


def print_header(
    ctx: ExecutionContext,
    title: str,
    version: str,
    stream: Optional[TextIO] = None,
) -> None:
    if ctx.quiet:
        return
    stream = stream or sys.stderr
    line = "=" * 60
    stream.write(f"{line}\n  {title} v{version}\n{line}\n")
    if ctx.dry_run:
        stream.write("  DRY-RUN: no disk, repository or build changes will be made\n")
    stream.flush()


def echo_diagnostic(lines: Sequence[str], stream: Optional[TextIO] = None) -> None:
    """Write a failing tool's last output lines to the interactive stream."""
    if not lines:
        return
    stream = stream or sys.stderr
    stream.write("---- last output ----\n")
    for line in lines:
        stream.write(f"  {line}\n")
    stream.flush()


class StepCounter:
    """Numbers pipeline steps as ``Step n/total: description``."""

    def __init__(self, total: int):
        self.total = total
        self.current = 0

    def advance(self, description: str) -> str:
        self.current += 1
        message = f"Step {self.current}/{self.total}: {description}"
        log_step(log, message)
        return message
