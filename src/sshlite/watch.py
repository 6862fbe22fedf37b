"""
Remote file watching over a long-lived exec channel.

A FileWatcher runs ``inotifywait -m`` or ``fswatch`` on the remote host
(see commands.build_watch) and reports every change line to a callback
as a FileChangeEvent. Hosts offering neither tool report WatchMethod.POLL;
callers poll with stat() there instead.

SSHConnection.watch_file() is the public entry point.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable

import asyncssh

from sshlite.models import WatchMethod

logger = logging.getLogger(__name__)

# Printed by inotifywait once the watch is in place
INOTIFY_READY = "Watches established."


class FileChange(str, Enum):
    MODIFY = "modify"
    DELETE = "delete"
    CREATE = "create"


@dataclass
class FileChangeEvent:
    """One change reported by a remote watcher."""
    connection_id: str
    path: str
    change: FileChange
    timestamp: float = field(default_factory=lambda: time.time() * 1000)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["change"] = self.change.value
        return data


FileChangeCallback = Callable[[FileChangeEvent], None]


def parse_watch_line(method: WatchMethod | str, line: str) -> FileChange | None:
    """
    Classify one line of watcher output.

    inotifywait prints ``<path> <EVENTS>``; fswatch -x prints
    ``<path> <Flags>``. Blank lines yield None.
    """
    text = line.strip()
    if not text:
        return None

    if method == WatchMethod.INOTIFYWAIT:
        if "DELETE" in text or "MOVE_SELF" in text:
            return FileChange.DELETE
        if "CREATE" in text:
            return FileChange.CREATE
        return FileChange.MODIFY

    if "Removed" in text:
        return FileChange.DELETE
    if "Created" in text:
        return FileChange.CREATE
    return FileChange.MODIFY


class FileWatcher:
    """
    One remote watch process and the task reading its output.

    ``ready`` is set once the remote tool is watching, or once the process
    has ended without ever getting there. fswatch prints no notice, so it
    is considered ready as soon as it starts.
    """

    def __init__(
        self,
        connection_id: str,
        path: str,
        method: WatchMethod,
        process: asyncssh.SSHClientProcess,
        callback: FileChangeCallback,
        on_closed: Callable[["FileWatcher"], None],
    ) -> None:
        self.connection_id = connection_id
        self.path = path
        self.method = method
        self.ready = asyncio.Event()
        self.changes = 0
        self._process = process
        self._callback = callback
        self._on_closed = on_closed
        self._task: asyncio.Task[None] | None = None
        self._finished = False

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        assert self._task is None, "Watcher already started"
        if self.method != WatchMethod.INOTIFYWAIT:
            self.ready.set()
        self._task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        watching = self.ready.is_set()
        try:
            while True:
                line = await self._process.stdout.readline()
                if not line:
                    break
                if not watching:
                    if INOTIFY_READY in line:
                        watching = True
                        self.ready.set()
                    continue
                self._dispatch(line)
        except (asyncssh.Error, OSError) as e:
            logger.debug("Watcher for %s on %s ended: %s", self.path, self.connection_id, e)
        finally:
            self._finish()

    def _dispatch(self, line: str) -> None:
        change = parse_watch_line(self.method, line)
        if change is None:
            return
        self.changes += 1
        event = FileChangeEvent(self.connection_id, self.path, change)
        try:
            self._callback(event)
        except Exception:
            logger.exception("File change callback failed for %s", self.path)

    def _finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        self.ready.set()
        self._on_closed(self)

    def stop_nowait(self) -> None:
        """Close the remote process without waiting for the reader."""
        try:
            self._process.close()
        except Exception as e:
            logger.debug("Error closing watcher for %s: %s", self.path, e)
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def stop(self) -> None:
        self.stop_nowait()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # A reader cancelled before its first step never runs its finally
        self._finish()
