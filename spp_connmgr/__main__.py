"""Entry point for spp-connmgr.

Parses CLI arguments, configures logging, wires SIGINT/SIGTERM to the
cancel event and runs the selected mode.
"""

import argparse
import asyncio
import logging
import signal
import sys

from .app import MODES, SppConnectApp
from .constants import DEFAULT_SERVICE_NAME, DEFAULT_TIMEOUT, TOOL_NAME, VERSION


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parses command-line arguments.

    Args:
        argv: Argument list (defaults to sys.argv[1:]).

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="Bluetooth SPP connection manager: scan, serve or connect via BlueZ.",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        default="scan",
        choices=MODES,
        help="scan | start | server | connect (default: scan)",
    )
    parser.add_argument(
        "--name",
        default=DEFAULT_SERVICE_NAME,
        help="SPP service name for start/server modes",
    )
    parser.add_argument(
        "--device",
        default="",
        metavar="PATH",
        help="Device object path for connect mode; scan and prompt if omitted",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT,
        metavar="SECONDS",
        help=f"Operation timeout (default: {DEFAULT_TIMEOUT:g})",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose output for debugging",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{TOOL_NAME} v{VERSION}",
    )
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    """Configures the logging module.

    Args:
        verbose: When True, sets log level to DEBUG.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


async def run_app(app: SppConnectApp) -> int:
    """Runs the app with Ctrl-C and SIGTERM mapped to cancellation."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, cancel.set)
    try:
        return await app.run(cancel)
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def main() -> None:
    """CLI entry point for spp-connmgr."""
    args = parse_args()
    configure_logging(args.verbose)

    app = SppConnectApp(
        mode=args.mode,
        service_name=args.name,
        device_path=args.device,
        timeout=args.timeout,
        verbose=args.verbose,
    )

    exit_code = asyncio.run(run_app(app))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
