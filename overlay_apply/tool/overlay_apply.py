"""Command line tool for rendering, planning and applying overlays."""

import argparse
import asyncio
import logging
import sys
import traceback

from overlay_apply.exceptions import (
    ApplyCancelled,
    InputException,
    OverlayException,
)
from . import apply, build, plan

_LOGGER = logging.getLogger(__name__)

EXIT_PARTIAL_FAILURE = 1
EXIT_INPUT_ERROR = 2
EXIT_CANCELLED = 130


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Command line utility for applying base/overlay configuration trees.",
    )
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )

    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)

    build.BuildAction.register(subparsers)
    plan.PlanAction.register(subparsers)
    apply.ApplyAction.register(subparsers)
    return parser


def _exit_code(err: OverlayException) -> int:
    if isinstance(err, InputException):
        return EXIT_INPUT_ERROR
    if isinstance(err, ApplyCancelled):
        return EXIT_CANCELLED
    return EXIT_PARTIAL_FAILURE


def main(argv: list[str] | None = None) -> None:
    """overlay-apply command line tool main entry point."""
    parser = _make_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except OverlayException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("overlay-apply error: ", err, file=sys.stderr)
        sys.exit(_exit_code(err))
    except KeyboardInterrupt:
        print("overlay-apply error: interrupted", file=sys.stderr)
        sys.exit(EXIT_CANCELLED)


if __name__ == "__main__":
    main()
