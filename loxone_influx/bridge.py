"""
Loxone → InfluxDB bridge — main service

Wires the Connection Manager, Event Dispatcher and Store Writer together:

  Miniserver WebSocket
      │
      ▼
  LoxoneConnection ── value events ──→ asyncio.Queue
                                           │
                                           ▼
                                      EventDispatcher ── unknown uuid? ──→ dropped
                                           │
                                           ▼
                                      StoreWriter ── one point per event ──→ InfluxDB

Connect/auth failures leave the service idling without data; only an abort
(transport or operator) or a failed close ends the process.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from .config import BridgeConfig, ConfigError, Settings, load_config
from .connection import Connector, LoxoneConnection, PublicKeyFetcher
from .dispatcher import EventDispatcher
from .writer import StoreWriter

logger = logging.getLogger("lox.bridge")

EXIT_OK = 0
EXIT_FATAL = 1

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def configure_logging(level: str = "INFO", debug: bool = False) -> None:
    """Timestamped plain-text lines on stdout; DEBUG only when asked for."""
    resolved = logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        stream=sys.stdout,
        force=True,
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)


class LoxoneInfluxBridge:
    """Owns one connection, one dispatcher and one writer."""

    def __init__(
        self,
        config: BridgeConfig,
        writer: Optional[StoreWriter] = None,
        connector: Optional[Connector] = None,
        public_key_fetcher: Optional[PublicKeyFetcher] = None,
    ) -> None:
        self.config = config
        self.events: asyncio.Queue = asyncio.Queue()
        self.writer = writer or StoreWriter(config.influxdb)
        self.dispatcher = EventDispatcher(config.mapping_table, self.writer)
        self.connection = LoxoneConnection(
            config.loxone,
            self.events,
            connector=connector,
            public_key_fetcher=public_key_fetcher,
        )
        self._abort_tasks: set[asyncio.Task] = set()

    async def run(self) -> int:
        """Run until the connection goes fatal.  Returns the process exit code."""
        logger.info("Loxone → InfluxDB bridge starting, %d mapped UUIDs", len(self.config.uuids))
        await self.writer.start()
        dispatch_task = asyncio.create_task(self.dispatcher.run(self.events))
        try:
            await self.connection.connect()
            await self.connection.wait_fatal()
        finally:
            # nothing queued after a fatal transition gets dispatched
            dispatch_task.cancel()
            try:
                await dispatch_task
            except asyncio.CancelledError:
                pass
            await self.writer.stop()

        if self.connection.operator_abort and not self.connection.close_failed:
            logger.info("Shutdown complete")
            return EXIT_OK
        logger.error("Terminating after fatal connection error")
        return EXIT_FATAL

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down", sig.name)
        task = asyncio.create_task(self.connection.abort(), name="loxone-abort")
        self._abort_tasks.add(task)
        task.add_done_callback(self._abort_tasks.discard)


async def main(config: BridgeConfig) -> int:
    """Entry point: runs the bridge with signal-driven shutdown."""
    bridge = LoxoneInfluxBridge(config)
    bridge.install_signal_handlers()
    return await bridge.run()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    settings = Settings()
    parser = argparse.ArgumentParser(description="Push Loxone Miniserver values into InfluxDB")
    parser.add_argument("--config", default=settings.BRIDGE_CONFIG, help="Config file (JSON or YAML)")
    parser.add_argument("--debug", action="store_true", default=settings.DEBUG, help="Enable DEBUG output")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser.parse_args(argv)


def cli(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level, args.debug)
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_FATAL
    return asyncio.run(main(config))
