"""Main entrypoint for the doorbell bridge.

Parses the command line, resolves settings, then runs the connection manager
on one asyncio loop until it halts. The process exit status is the halt code.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import signal
import sys
from collections.abc import Sequence

from .addon_config import BridgeSettings, build_settings, load_config
from .ble_adapter import BleakAdapter
from .connection_manager import ConnectionManager
from .core_types import DisconnectPolicy, ExitCode
from .errors import ConfigError
from .logging_setup import logger, setup_logging
from .ports import BleAdapter, NotificationDispatcher
from .webhook import WebhookDispatcher


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="doorbell20-bridge",
        description="Forward DoorBell20 button presses to a Maker webhook.",
    )
    parser.add_argument("webhook_key", nargs="?", help="webhook account key")
    parser.add_argument(
        "device_address", nargs="?", help="doorbell hardware address (aa:bb:cc:dd:ee:ff)"
    )
    parser.add_argument(
        "doorbell_event", nargs="?", help="event name sent for each button press"
    )
    parser.add_argument(
        "failure_event",
        nargs="?",
        help="event name sent when the doorbell cannot be reached in time",
    )
    parser.add_argument(
        "--disconnect-policy",
        dest="disconnect_policy",
        choices=[p.value for p in DisconnectPolicy],
        help="what to do when the doorbell disconnects (default: rearm)",
    )
    parser.add_argument(
        "--timeout",
        dest="connection_timeout_s",
        type=float,
        help="seconds allowed to (re)establish the alarm subscription",
    )
    parser.add_argument("--webhook-host", dest="webhook_host")
    parser.add_argument("--adapter", dest="ble_adapter", help="BLE adapter, e.g. hci0")
    parser.add_argument("--log-level", dest="log_level")
    parser.add_argument("--log-path", dest="log_path")
    parser.add_argument("--config", dest="config", help="YAML config file")
    return parser


async def run_bridge(
    settings: BridgeSettings,
    adapter: BleAdapter | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> int:
    """Run until the connection manager halts or a stop signal arrives."""
    loop = asyncio.get_running_loop()
    adapter = adapter or BleakAdapter(adapter=settings.ble_adapter)
    dispatcher = dispatcher or WebhookDispatcher(
        settings.webhook_key,
        host=settings.webhook_host,
        timeout=settings.http_timeout_s,
    )
    exit_code: asyncio.Future[int] = loop.create_future()

    def halt(code: int, reason: str) -> None:
        if exit_code.done():
            return
        logger.info({"event": "bridge_exit", "exit_code": code, "reason": reason})
        exit_code.set_result(code)

    manager = ConnectionManager(
        adapter,
        dispatcher,
        device_address=settings.device_address,
        doorbell_event=settings.doorbell_event,
        failure_event=settings.failure_event,
        connection_timeout_s=settings.connection_timeout_s,
        disconnect_policy=settings.disconnect_policy,
        halt=halt,
    )

    for signum in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on some platforms
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(
                signum, halt, int(ExitCode.OK), f"signal {signum.name}"
            )

    manager.start()
    await adapter.start()
    try:
        code = await exit_code
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signum)

    # no-op after a halt; releases the link on a signal
    await manager.shutdown()
    await adapter.stop()
    await dispatcher.aclose()
    return code


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_path)
    logger.info({"event": "bridge_start", "pid": os.getpid()})

    cfg, source = load_config(path=args.config)
    try:
        settings = build_settings(cfg, args)
    except ConfigError as exc:
        logger.error({"event": "config_error", "error": str(exc), "source": str(source)})
        return int(ExitCode.CONFIG_ERROR)

    # settings carry CLI values first, then env and file values
    setup_logging(settings.log_level, settings.log_path)

    return asyncio.run(run_bridge(settings))


if __name__ == "__main__":
    sys.exit(main())
