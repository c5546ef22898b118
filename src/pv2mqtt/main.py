from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from pathlib import Path

import dotenv
import uvloop

from pv2mqtt.cli import add_subcommands, run_command
from pv2mqtt.const import PV_DEBUG, PV_VERSION
from pv2mqtt.correlation import correlation_context
from pv2mqtt.logging_abstraction import get_logger, quiet_foreign_loggers, set_package_level
from pv2mqtt.server import BridgeServer
from pv2mqtt.structs import BridgeSettings

logger = get_logger(__name__)


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pv2mqtt", description="Hunter Douglas PowerView to MQTT bridge")
    _ = parser.add_argument("--hub-ip", help="Hub address; discovered via mDNS when omitted")
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    add_subcommands(parser)
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "serve-mqtt"
    return args


def load_env(env_file: Path) -> None:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return
    if dotenv.load_dotenv(env_path, override=True):
        logger.info(" Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def build_settings(args: argparse.Namespace) -> BridgeSettings:
    """Environment first, then CLI flags on top."""
    settings = BridgeSettings.from_env()
    overrides: dict[str, object] = {}
    if args.hub_ip:
        overrides["hub_ip"] = args.hub_ip
    if args.debug:
        overrides["debug"] = True
    return settings.model_copy(update=overrides) if overrides else settings


async def serve(settings: BridgeSettings) -> None:
    server = BridgeServer(settings)
    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    assert main_task is not None
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, main_task.cancel)
    logger.debug("Signal handlers configured for SIGINT & SIGTERM")
    try:
        await server.start()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for pv2mqtt."""
    with correlation_context():
        args = parse_cli(argv)
        if args.env:
            load_env(args.env)
        settings = build_settings(args)

        quiet_foreign_loggers()
        if settings.debug and not PV_DEBUG:
            set_package_level(logging.DEBUG)
            logger.info("Debug mode enabled via CLI argument")

        if args.command != "serve-mqtt":
            return uvloop.run(run_command(args, settings))

        logger.info("Starting pv2mqtt", extra={"version": PV_VERSION})
        try:
            uvloop.run(serve(settings))
        except asyncio.CancelledError:
            logger.info("pv2mqtt cancelled, shutting down...")
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(" Fatal error in main loop", extra={"error": str(e)})
            return 1
        else:
            logger.info(" pv2mqtt stopped gracefully")
        finally:
            logger.info("pv2mqtt shutdown complete")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
