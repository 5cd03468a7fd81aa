#!/usr/bin/env python3
"""
notmuch-lock - hold the notmuch database lock while a command runs.

Used by test suites to check how a program behaves when another process
has the database open for writing.
"""
import argparse
import os
import random
import sys
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

from rich.console import Console
from rich.markup import escape

from db_lock import BACKENDS, get_backend
from lock_errors import EXIT_FAILURE, NotmuchLockError, UsageError
from orchestrator import MAX_UWAIT, MIN_UWAIT, Orchestrator, random_hold_us

__version__ = "0.1.0"

BACKEND_ENV = "NOTMUCH_LOCK_BACKEND"

# Options of ours that take their value as a separate word
_VALUE_OPTIONS = {"--backend", "-b"}

console = Console(stderr=True, soft_wrap=True)


@dataclass(frozen=True)
class RunOptions:
    """Command-line settings, parsed once."""

    command: Tuple[str, ...]
    sleep: Optional[int] = None
    backend: str = "notmuch"
    quiet: bool = False


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def build_parser(default_backend: str = "notmuch") -> argparse.ArgumentParser:
    parser = _Parser(
        prog="notmuch-lock",
        usage="%(prog)s [OPTIONS] [--] COMMAND [ARGS...]",
        description="Utility to test behaviour of programs while the notmuch database is locked",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  notmuch-lock --sleep=5000 -- notmuch new     Hold the lock for 5 ms
  notmuch-lock -- sh -c 'notmuch tag +x id:1'  Hold for a random time
  notmuch-lock --backend=flock -- true         Lock without libnotmuch

Without a value, --sleep picks a random duration between {MIN_UWAIT}
and {MAX_UWAIT} microseconds. Environment: NOTMUCH_CONFIG, HOME, {BACKEND_ENV}.
        """
    )
    parser.add_argument(
        '-s', '--sleep',
        nargs='?',
        type=int,
        const=None,
        default=None,
        metavar='N',
        help='Sleep for N microseconds, while holding the lock to the database'
    )
    parser.add_argument(
        '-b', '--backend',
        choices=sorted(BACKENDS),
        default=default_backend,
        help=f'How to lock the database (default: {default_backend})'
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Only print fatal errors'
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    return parser


def split_argv(argv: Sequence[str]) -> Tuple[List[str], List[str]]:
    """
    Split argv into our own options and the command to run.

    Our options end at "--" or at the first word that is not an option, so
    "notmuch-lock sh -c ..." never treats "-c" as ours.
    """
    own: List[str] = []
    i = 0
    while i < len(argv):
        word = argv[i]
        if word == "--":
            return own, list(argv[i + 1:])
        if not word.startswith("-") or word == "-":
            break
        own.append(word)
        if word in _VALUE_OPTIONS and i + 1 < len(argv):
            own.append(argv[i + 1])
            i += 1
        i += 1
    return own, list(argv[i:])


def parse_args(argv: Sequence[str], environ: Optional[Mapping[str, str]] = None) -> RunOptions:
    """
    Parse the command line.

    Raises:
        UsageError: on bad options or a missing command
    """
    env = os.environ if environ is None else environ
    default_backend = env.get(BACKEND_ENV) or "notmuch"
    if default_backend not in BACKENDS:
        raise UsageError(f"{BACKEND_ENV}: unknown backend {default_backend!r}")

    own, command = split_argv(argv)
    args = build_parser(default_backend).parse_args(own)
    if not command:
        raise UsageError("no command supplied")

    return RunOptions(
        command=tuple(command),
        sleep=args.sleep,
        backend=args.backend,
        quiet=args.quiet,
    )


def main(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
    rng: Optional[random.Random] = None,
) -> int:
    """Main entry point. Returns the process exit code."""
    argv = sys.argv[1:] if argv is None else argv
    try:
        options = parse_args(argv, environ)
    except UsageError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        return EXIT_FAILURE

    # A negative value is the same as no value: pick at random
    if options.sleep is not None and options.sleep >= 0:
        hold_us = options.sleep
    else:
        hold_us = random_hold_us(rng)

    orchestrator = Orchestrator(
        options.command,
        hold_us,
        backend=get_backend(options.backend),
        environ=environ,
        verbose=not options.quiet,
    )
    try:
        return orchestrator.run()
    except NotmuchLockError as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
