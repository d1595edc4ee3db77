"""
Loxone → InfluxDB bridge — Store Writer

Async InfluxDB writer.  One point per call, no batching, no retry:
a failed write produces exactly one ERROR line and the point is lost.

Writes are fire-and-forget from the dispatcher's point of view; the
returned task is only tracked so it is not garbage collected mid-flight.
Acknowledgements may arrive out of order.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from influxdb_client.client.influxdb_client_async import InfluxDBClientAsync

from .config import InfluxConfig
from .dispatcher import WriteRequest

logger = logging.getLogger("lox.writer")

SHUTDOWN_GRACE_SECONDS = 2.0


@dataclass
class WriterStats:
    submitted: int = 0
    written: int = 0
    failed: int = 0


class StoreWriter:
    """Fire-and-forget point writer backed by InfluxDBClientAsync."""

    def __init__(
        self,
        config: InfluxConfig,
        client_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or InfluxDBClientAsync
        self._client = None
        self._write_api = None
        self._pending: set[asyncio.Task] = set()
        self.stats = WriterStats()

    async def start(self) -> None:
        """Create the InfluxDB client."""
        self._client = self._client_factory(
            url=self._config.url,
            token=self._config.auth_token,
            org=self._config.org,
            timeout=self._config.timeout_ms,
        )
        self._write_api = self._client.write_api()
        logger.info(
            "Store writer started, url=%s bucket=%s", self._config.url, self._config.bucket
        )

    async def stop(self) -> None:
        """Give in-flight writes a short grace period, then close the client."""
        if self._pending:
            _, still_pending = await asyncio.wait(
                set(self._pending), timeout=SHUTDOWN_GRACE_SECONDS
            )
            if still_pending:
                logger.warning("%d writes still in flight at shutdown", len(still_pending))
        if self._client is not None:
            await self._client.close()
            self._client = None
        logger.info(
            "Store writer stopped, submitted: %d, written: %d, failed: %d",
            self.stats.submitted,
            self.stats.written,
            self.stats.failed,
        )

    def submit(self, request: WriteRequest) -> asyncio.Task:
        """Schedule one write.  The caller never awaits the result."""
        self.stats.submitted += 1
        task = asyncio.create_task(self._write(request))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _write(self, request: WriteRequest) -> bool:
        try:
            if self._write_api is None:
                raise RuntimeError("store writer is not started")
            await self._write_api.write(
                bucket=self._config.bucket,
                org=self._config.org,
                record=request.to_point(),
            )
        except Exception as e:
            self.stats.failed += 1
            logger.error(
                "Error saving data to InfluxDB! measurement=%s uuid=%s: %r",
                request.measurement,
                request.tags.get("uuid"),
                e,
            )
            return False

        self.stats.written += 1
        return True
