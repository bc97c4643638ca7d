import argparse
import sys
from typing import List, Optional

from rich.console import Console
from rich.markup import escape

from . import __version__
from .back64up import (
    ConsoleManager,
    create_backup,
    display_text,
    DEFAULT_FORMAT,
    DEFAULT_OUT_FILE,
    SUPPORTED_FORMATS,
)
from .errors import Back64upError, UsageError


class ArgumentParser(argparse.ArgumentParser):
    """An ArgumentParser that raises UsageError instead of exiting with status 2."""

    def error(self, message: str):
        # subcommand parsers report their own usage line
        raise UsageError(message, usage=self.format_usage())


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid positive integer: '{value}'")
    if number < 1:
        raise argparse.ArgumentTypeError(f"invalid positive integer: '{value}'")
    return number


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="back64up",
        usage="%(prog)s <cmd> [args]",
        description="Back up files matching a glob pattern as base64 text.",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    commands = parser.add_subparsers(
        dest="command", metavar="<cmd>", prog=parser.prog
    )
    commands.required = True

    backup = commands.add_parser(
        "backup",
        help="backup all files matching the given pattern",
        description="Backup all files matching the given pattern.",
    )
    backup.add_argument(
        "pattern",
        help="The glob pattern to match files against -- wrap with quotes to prevent glob from shell",
    )
    backup.add_argument(
        "out_file",
        metavar="out-file",
        nargs="?",
        default=DEFAULT_OUT_FILE,
        help=f"Output path for backup (default: {DEFAULT_OUT_FILE})",
    )
    backup.add_argument(
        "--format",
        dest="output_format",
        choices=SUPPORTED_FORMATS,
        default=DEFAULT_FORMAT,
        help=f"Format to output (default: {DEFAULT_FORMAT})",
    )
    backup.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Run with verbose logging",
    )
    backup.add_argument(
        "--max-workers",
        type=_positive_int,
        default=None,
        help="Maximum number of files read at the same time (default: CPU count + 4)",
    )
    return parser


def main(
    argv: Optional[List[str]] = None,
    console: Optional[Console] = None,
    err_console: Optional[Console] = None,
) -> int:
    """
    Runs the back64up command line.

    Args:
        argv (List[str], optional): Arguments, without the program name.
            Defaults to sys.argv[1:].
        console (Console, optional): Console for regular output.
        err_console (Console, optional): Console for warnings and errors.

    Returns:
        int: The process exit status, 0 on success and 1 on any error.
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except UsageError as e:
        manager = ConsoleManager(console=console, err_console=err_console)
        usage = e.usage or parser.format_usage()
        manager.err_console.print(escape(usage.rstrip()))
        manager.error(f"error: {display_text(str(e))}")
        return 1

    manager = ConsoleManager(
        verbose=args.verbose, console=console, err_console=err_console
    )
    try:
        create_backup(
            args.pattern,
            args.out_file,
            args.output_format,
            console=manager,
            max_workers=args.max_workers,
        )
    except Back64upError as e:
        manager.error("encountered an error during backup")
        manager.error(display_text(e.describe()))
        if manager.verbose:
            manager.err_console.print_exception()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
