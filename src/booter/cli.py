"""Command line entry point: booter serve|load|return|status|boot."""

import argparse
import asyncio
import logging
import sys
from typing import Optional

from booter.config import BooterConfig
from booter.errors import BooterError, ChannelError
from booter.main import create_app
from booter.models.signal import SignalKind
from booter.models.status import PhaseEnum, PivotOutcome
from booter.services.pivot import PivotController
from booter.services.signal_bus import SignalBus
from booter.services.state_store import StateStore
from booter.utils.cmdline import read_boot_options
from booter.utils.logging import setup_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="booter",
        description="Load a root filesystem image over HTTP and pivot into it, "
        "with a way back to bootstrap.",
    )
    parser.add_argument("--config", help="JSON config file (default /etc/booter.json)")
    parser.add_argument("--debug", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the control channel consumer, detectors and API")

    load = sub.add_parser("load", help="Download an image and pivot into it")
    load.add_argument("url", help="HTTP/HTTPS URL of a tarball or squashfs image")

    sub.add_parser("return", help="Ask the return handler to go back to bootstrap")

    status = sub.add_parser("status", help="Print the bootstrap state")
    status.add_argument(
        "--channel", action="store_true", help="Also ask the consumer to log its status"
    )

    sub.add_parser("boot", help="Load image_url= from /proc/cmdline, then serve")
    return parser


def _setup(args: argparse.Namespace, force_debug: bool = False) -> tuple[BooterConfig, logging.Logger]:
    config = BooterConfig.load(args.config)
    level = logging.DEBUG if (args.debug or force_debug) else getattr(logging, config.log_level)
    return config, setup_logger("booter", config.log_file, level=level)


def _controller(config: BooterConfig) -> PivotController:
    return PivotController(config, app_factory=create_app)


async def _load(config: BooterConfig, url: str, logger: logging.Logger) -> int:
    controller = _controller(config)
    try:
        outcome = await controller.load(url)
    except BooterError as e:
        logger.error(f"Failed to load image: {e}")
        return 1
    finally:
        await controller.detectors.stop_all()

    # exec only comes back on failure
    if outcome == PivotOutcome.RECOVERED:
        logger.error("Target init could not be started, back in bootstrap")
    return 1


def _cmd_serve(config: BooterConfig, logger: logging.Logger) -> int:
    logger.info("Bootstrap service starting...")
    asyncio.run(_controller(config).serve())
    return 0


def _cmd_return(config: BooterConfig, logger: logging.Logger) -> int:
    reader = StateStore(config.state_file).reader()
    if reader.phase() == PhaseEnum.BOOTSTRAP:
        logger.warning("Not in target system, nothing to return from")
        return 1
    try:
        SignalBus(config.fifo_path).send(SignalKind.RETURN, "cli")
    except ChannelError as e:
        logger.error(str(e))
        return 1
    logger.info("Return requested")
    return 0


def _cmd_status(config: BooterConfig, logger: logging.Logger, channel: bool) -> int:
    print(StateStore(config.state_file).reader().status_text())
    if channel:
        try:
            SignalBus(config.fifo_path).send(SignalKind.STATUS, "cli")
        except ChannelError as e:
            logger.error(str(e))
            return 1
    return 0


def _cmd_boot(args: argparse.Namespace) -> int:
    options = read_boot_options()
    config, logger = _setup(args, force_debug=options.debug)
    logger.info("=== Chroot Booter starting ===")
    if options.image_url:
        logger.info(f"Auto-loading image from kernel command line: {options.image_url}")
        asyncio.run(_load(config, options.image_url, logger))
        logger.warning("Auto-load did not take over, starting bootstrap service")
    return _cmd_serve(config, logger)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "boot":
        return _cmd_boot(args)

    try:
        config, logger = _setup(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    if args.command == "serve":
        return _cmd_serve(config, logger)
    if args.command == "load":
        return asyncio.run(_load(config, args.url, logger))
    if args.command == "return":
        return _cmd_return(config, logger)
    if args.command == "status":
        return _cmd_status(config, logger, args.channel)
    return 2


if __name__ == "__main__":
    sys.exit(main())
