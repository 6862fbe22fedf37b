"""
Structured event stream for sshlite.

Events complement the stdlib logging calls made by every module: logging
is for humans, events are JSONL records that tests and tools can inspect.
Every emitted event is also logged at DEBUG on the ``sshlite.events``
logger, so ``-vv`` shows the stream without any sink configured.

Event types:
- CONNECT: connection attempt started/established/failed
- AUTH: authentication material resolved, or rejected
- EXEC: remote command executed
- SFTP: file operation completed
- FORWARD: local port forward opened/closed
- WATCH: remote file watcher started/stopped, or a change it reported
- STATE_CHANGE: connection state machine transition
- QUEUE: scheduler enqueue/launch/complete
- DISCONNECT: connection closed
- ERROR: any error condition

Events about one connection carry ``connection_id`` in their data.
Secrets are never placed in event data.
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Iterator

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONNECT = "CONNECT"
    AUTH = "AUTH"
    EXEC = "EXEC"
    SFTP = "SFTP"
    FORWARD = "FORWARD"
    WATCH = "WATCH"
    STATE_CHANGE = "STATE_CHANGE"
    QUEUE = "QUEUE"
    DISCONNECT = "DISCONNECT"
    ERROR = "ERROR"


def _type_value(event_type: str | EventType) -> str:
    return event_type.value if isinstance(event_type, EventType) else event_type


@dataclass
class Event:
    """An immutable record: type, Unix-ms timestamp and structured data."""
    event_type: str
    timestamp: float = field(default_factory=lambda: time.time() * 1000)
    data: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        valid_types = {e.value for e in EventType}
        assert self.event_type in valid_types, \
            f"Invalid event_type '{self.event_type}'. Must be one of: {valid_types}"
        assert self.timestamp > 0, \
            f"Timestamp must be positive, got {self.timestamp}"

    @property
    def connection_id(self) -> str | None:
        return self.data.get("connection_id")

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, line: str) -> "Event":
        raw = json.loads(line)
        return cls(
            event_type=raw["event_type"],
            timestamp=raw["timestamp"],
            data=raw.get("data", {}),
        )


class EventCollector:
    """Keeps events in memory for tests and the CLI."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(self, event: Event) -> None:
        assert isinstance(event, Event), f"Expected Event, got {type(event)}"
        self._events.append(event)

    @property
    def events(self) -> list[Event]:
        """A copy; mutating it does not affect the collector."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    def get_by_type(self, event_type: str | EventType) -> list[Event]:
        wanted = _type_value(event_type)
        return [e for e in self._events if e.event_type == wanted]

    def for_connection(
        self, connection_id: str, event_type: str | EventType | None = None
    ) -> list[Event]:
        """Events about one connection, optionally of one type."""
        wanted = _type_value(event_type) if event_type is not None else None
        return [
            e for e in self._events
            if e.connection_id == connection_id
            and (wanted is None or e.event_type == wanted)
        ]


class JSONLSink:
    """
    Writes one JSON object per line to a text stream.

    Either wraps an already-open stream (``sys.stderr`` for the CLI), which
    it never closes, or opens ``path`` for appending and owns the file.
    """

    def __init__(self, path: Path | str | None = None, stream: IO[str] | None = None) -> None:
        assert (path is None) != (stream is None), "Give exactly one of path or stream"
        self._path = Path(path) if path is not None else None
        self._stream = stream
        self._owned = False

    def open(self) -> None:
        if self._path is not None and self._stream is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._stream = open(self._path, "a", encoding="utf-8")
            self._owned = True

    def close(self) -> None:
        if self._owned and self._stream is not None:
            self._stream.close()
            self._stream = None
            self._owned = False

    def emit(self, event: Event) -> None:
        assert self._stream is not None, "Sink not opened. Call open() first."
        self._stream.write(event.to_json() + "\n")
        self._stream.flush()

    def __enter__(self) -> "JSONLSink":
        self.open()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class EventEmitter:
    """
    Creates events and hands them to every configured sink.

    Sinks: an in-memory collector, a JSONL file and a JSONL stream. An
    emitter with no sinks only logs, so components can always hold one.
    """

    def __init__(
        self,
        collector: EventCollector | None = None,
        jsonl_path: Path | str | None = None,
        stream: IO[str] | None = None,
    ) -> None:
        self._collector = collector
        self._sinks: list[JSONLSink] = []

        if jsonl_path:
            self._sinks.append(JSONLSink(path=jsonl_path))
        if stream is not None:
            self._sinks.append(JSONLSink(stream=stream))
        for sink in self._sinks:
            sink.open()

    @property
    def collector(self) -> EventCollector | None:
        return self._collector

    def emit(self, event_type: str | EventType, **data: Any) -> Event:
        """Create an event from ``data``, dispatch it and return it."""
        event = Event(event_type=_type_value(event_type), data=data)
        logger.debug("%s %s", event.event_type, data)

        if self._collector is not None:
            self._collector.emit(event)
        for sink in self._sinks:
            sink.emit(event)
        return event

    def close(self) -> None:
        for sink in self._sinks:
            sink.close()

    @contextmanager
    def timed_event(
        self,
        event_type: str | EventType,
        **initial_data: Any,
    ) -> Iterator[dict[str, Any]]:
        """
        Time an operation and emit one event on exit with duration_ms.

        The event is emitted even when the body raises; callers record the
        failure in ``data`` first.

        Usage:
            with emitter.timed_event(EventType.SFTP, op="read", path=p) as data:
                content = await sftp_read(p)
                data["bytes"] = len(content)
        """
        start_ms = time.time() * 1000
        event_data = dict(initial_data)

        try:
            yield event_data
        finally:
            event_data["duration_ms"] = (time.time() * 1000) - start_ms
            self.emit(event_type, **event_data)


def load_events(path: Path | str, event_type: str | EventType | None = None) -> list[Event]:
    """Read events back from a JSONL log, optionally of one type."""
    wanted = _type_value(event_type) if event_type is not None else None
    with open(path, "r", encoding="utf-8") as f:
        events = [Event.from_json(line) for line in f if line.strip()]
    return [e for e in events if wanted is None or e.event_type == wanted]
