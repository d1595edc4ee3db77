"""
Loxone → InfluxDB bridge — Event Dispatcher

Turns Miniserver value events into InfluxDB write requests:

    ValueEvent(uuid, value)
        │
        ▼
    mapping table ──── unknown uuid? ──→ dropped (DEBUG line only)
        │
        ▼
    WriteRequest(measurement, tags + {uuid, src="ws"}, {value})
        │
        ▼
    StoreWriter.submit()  (fire-and-forget)

Values are passed through untouched; no dedup, batching or throttling.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

from influxdb_client import Point

from .config import DeviceMapping
from .protocol import ValueEvent

logger = logging.getLogger("lox.dispatch")

SOURCE_TAG_VALUE = "ws"
LOG_VALUE_LIMIT = 100


@dataclass
class WriteRequest:
    """One point bound for InfluxDB."""
    measurement: str
    tags: dict[str, str]
    fields: dict[str, Any] = field(default_factory=dict)

    def to_point(self) -> Point:
        point = Point(self.measurement)
        for key, value in self.tags.items():
            point.tag(key, value)
        for key, value in self.fields.items():
            point.field(key, value)
        return point


class Writer(Protocol):
    def submit(self, request: WriteRequest) -> Optional[asyncio.Task]: ...


def limit_str(text: Any, limit: int = LOG_VALUE_LIMIT) -> str:
    """Stringify and truncate for log output: 'abc...(1234)'."""
    text = str(text)
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...({len(text)})"


def build_write_request(mapping: DeviceMapping, event: ValueEvent) -> WriteRequest:
    """Configured tags plus the reserved uuid/src tags; the mapping is not mutated."""
    tags = dict(mapping.tags)
    tags["uuid"] = event.uuid
    tags["src"] = SOURCE_TAG_VALUE
    return WriteRequest(
        measurement=mapping.measurement,
        tags=tags,
        fields={"value": event.value},
    )


class EventDispatcher:
    """Looks up each event's UUID and hands matches to the store writer."""

    def __init__(self, mappings: Mapping[str, DeviceMapping], writer: Writer) -> None:
        self._mappings = mappings
        self._writer = writer
        self.dispatched = 0
        self.ignored = 0

    def handle(self, event: ValueEvent) -> None:
        mapping = self._mappings.get(event.uuid)
        if mapping is None:
            self.ignored += 1
            logger.debug(
                "Ignoring event value: uuid=%s, evt=%s", event.uuid, limit_str(event.value)
            )
            return

        logger.info(
            "Update event value: uuid=%s, evt=%s", event.uuid, limit_str(event.value)
        )
        self.dispatched += 1
        self._writer.submit(build_write_request(mapping, event))

    async def run(self, queue: asyncio.Queue) -> None:
        """Consume events in arrival order until a None sentinel."""
        while True:
            event = await queue.get()
            try:
                if event is None:
                    logger.debug("Dispatcher stopping")
                    return
                self.handle(event)
            finally:
                queue.task_done()
