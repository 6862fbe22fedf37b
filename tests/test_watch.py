"""
Tests for remote file watching.

Tests cover:
- Parsing inotifywait and fswatch output lines
- Hosts without a native watcher: watch_file returns False (poll)
- fswatch output flowing through to callbacks and WATCH events
- Real inotifywait watches against MockSSHServer, when installed
- Unwatching, replacing watches and teardown on disconnect
"""
from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import AsyncGenerator

import pytest

from sshlite import commands
from sshlite.config import EngineSettings
from sshlite.connection import SSHConnection
from sshlite.events import EventCollector, EventEmitter, EventType
from sshlite.models import WatchMethod
from sshlite.testing.mock_server import MockServerConfig, MockSSHServer
from sshlite.watch import FileChange, FileChangeEvent, parse_watch_line

needs_inotifywait = pytest.mark.skipif(
    shutil.which("inotifywait") is None, reason="inotifywait not installed"
)

POLL_CAPABILITIES = "Linux\ninotifywait=no\nfswatch=no\nID=alpine\n"
FSWATCH_CAPABILITIES = "Darwin\ninotifywait=no\nfswatch=yes\n"


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        assert loop.time() < deadline, "Condition not reached in time"
        await asyncio.sleep(0.05)


async def connect(server: MockSSHServer, settings: EngineSettings, emitter: EventEmitter) -> SSHConnection:
    conn = SSHConnection(
        server.host_config(),
        settings=settings,
        credential_store=server.credential_store(),
        emitter=emitter,
    )
    await conn.connect()
    return conn


class TestParseWatchLine:

    @pytest.mark.parametrize("line,expected", [
        ("/var/log/app.log MODIFY", FileChange.MODIFY),
        ("/var/log/app.log DELETE_SELF", FileChange.DELETE),
        ("/var/log/app.log MOVE_SELF", FileChange.DELETE),
        ("/var/log/ CREATE app.log", FileChange.CREATE),
    ])
    def test_inotifywait(self, line: str, expected: FileChange) -> None:
        assert parse_watch_line(WatchMethod.INOTIFYWAIT, line) == expected

    @pytest.mark.parametrize("line,expected", [
        ("/Users/me/app.log Updated", FileChange.MODIFY),
        ("/Users/me/app.log Removed", FileChange.DELETE),
        ("/Users/me/app.log Created IsFile", FileChange.CREATE),
    ])
    def test_fswatch(self, line: str, expected: FileChange) -> None:
        assert parse_watch_line(WatchMethod.FSWATCH, line) == expected

    def test_blank_lines_ignored(self) -> None:
        assert parse_watch_line(WatchMethod.INOTIFYWAIT, "  \n") is None
        assert parse_watch_line(WatchMethod.FSWATCH, "") is None

    def test_event_to_dict(self) -> None:
        event = FileChangeEvent("h:22:u", "/tmp/a", FileChange.DELETE, timestamp=1.0)
        assert event.to_dict() == {
            "connection_id": "h:22:u",
            "path": "/tmp/a",
            "change": "delete",
            "timestamp": 1.0,
        }


class TestWithoutNativeWatcher:

    @pytest.mark.asyncio
    async def test_poll_host_returns_false(
        self, remote_home: Path, settings: EngineSettings, emitter: EventEmitter
    ) -> None:
        """No inotifywait or fswatch: the caller is told to poll."""
        config = MockServerConfig(
            home_dir=remote_home,
            command_outputs={commands.CAPABILITY_PROBE: (POLL_CAPABILITIES, "")},
        )
        target = remote_home / "app.log"
        target.write_text("x")

        async with MockSSHServer(config) as server:
            conn = await connect(server, settings, emitter)
            try:
                assert (await conn.detect_capabilities()).watch_method == WatchMethod.POLL
                assert await conn.watch_file(str(target), lambda event: None) is False
                assert not conn.is_watching(str(target))
            finally:
                await conn.disconnect()

            executed = [e["data"]["command"] for e in server.events_of("SERVER_EXEC")]
            assert executed == [commands.CAPABILITY_PROBE]

    @pytest.mark.asyncio
    async def test_not_connected(self, mock_ssh_server: MockSSHServer, settings: EngineSettings) -> None:
        conn = SSHConnection(mock_ssh_server.host_config(), settings=settings)
        assert await conn.watch_file("/tmp/anything", lambda event: None) is False
        assert await conn.unwatch_file("/tmp/anything") is False


class TestFswatchOutput:

    @pytest.fixture
    async def fswatch_server(self, remote_home: Path) -> AsyncGenerator[MockSSHServer, None]:
        """A server that claims fswatch and replays two canned changes."""
        path = str(remote_home / "app.log")
        config = MockServerConfig(
            home_dir=remote_home,
            command_outputs={
                commands.CAPABILITY_PROBE: (FSWATCH_CAPABILITIES, ""),
                commands.build_watch(path, "fswatch"): (f"{path} Updated\n{path} Removed\n", ""),
            },
        )
        async with MockSSHServer(config) as server:
            yield server

    @pytest.mark.asyncio
    async def test_changes_reach_callback(
        self, fswatch_server: MockSSHServer, remote_home: Path,
        settings: EngineSettings, emitter: EventEmitter, event_collector: EventCollector,
    ) -> None:
        path = str(remote_home / "app.log")
        received: list[FileChangeEvent] = []
        conn = await connect(fswatch_server, settings, emitter)
        try:
            assert await conn.watch_file(path, received.append) is True
            # The canned watcher exits after its output, ending the watch
            await wait_until(lambda: not conn.is_watching(path))
        finally:
            await conn.disconnect()

        assert [e.change for e in received] == [FileChange.MODIFY, FileChange.DELETE]
        assert all(e.path == path and e.connection_id == conn.id for e in received)

        watch_events = event_collector.get_by_type(EventType.WATCH)
        assert [e.data["status"] for e in watch_events] == ["started", "change", "change", "stopped"]
        assert watch_events[0].data["method"] == "fswatch"
        assert watch_events[-1].data["changes"] == 2

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_watching(
        self, fswatch_server: MockSSHServer, remote_home: Path,
        settings: EngineSettings, emitter: EventEmitter,
    ) -> None:
        """An exception from the callback does not stop later deliveries."""
        path = str(remote_home / "app.log")
        received: list[FileChange] = []

        def callback(event: FileChangeEvent) -> None:
            received.append(event.change)
            if len(received) == 1:
                raise RuntimeError("consumer bug")

        conn = await connect(fswatch_server, settings, emitter)
        try:
            assert await conn.watch_file(path, callback)
            await wait_until(lambda: not conn.is_watching(path))
        finally:
            await conn.disconnect()

        assert received == [FileChange.MODIFY, FileChange.DELETE]


@needs_inotifywait
class TestInotifywait:

    @pytest.mark.asyncio
    async def test_modification_reported(
        self, connection: SSHConnection, remote_home: Path, mock_ssh_server: MockSSHServer
    ) -> None:
        target = remote_home / "grow.log"
        target.write_text("start\n")
        received: list[FileChangeEvent] = []

        assert await connection.watch_file(str(target), received.append) is True
        assert connection.is_watching(str(target))
        assert connection.watched_paths() == [str(target)]

        with target.open("a") as f:
            f.write("more\n")
        await wait_until(lambda: bool(received))
        assert received[0].change == FileChange.MODIFY
        assert received[0].path == str(target)

        assert await connection.unwatch_file(str(target)) is True
        assert not connection.is_watching(str(target))
        assert await connection.unwatch_file(str(target)) is False

        # The remote inotifywait is gone once the watch is closed
        await wait_until(lambda: any(
            "inotifywait -m" in e["data"]["command"]
            for e in mock_ssh_server.events_of("SERVER_EXEC_COMPLETE")
        ))

    @pytest.mark.asyncio
    async def test_deletion_reported(self, connection: SSHConnection, remote_home: Path) -> None:
        target = remote_home / "doomed.log"
        target.write_text("x")
        received: list[FileChangeEvent] = []

        assert await connection.watch_file(str(target), received.append)
        target.unlink()
        await wait_until(lambda: any(e.change == FileChange.DELETE for e in received))

    @pytest.mark.asyncio
    async def test_missing_file(self, connection: SSHConnection, remote_home: Path) -> None:
        """inotifywait refuses a missing path, so no watch is reported."""
        missing = str(remote_home / "missing.log")
        assert await connection.watch_file(missing, lambda event: None) is False
        assert not connection.is_watching(missing)

    @pytest.mark.asyncio
    async def test_rewatch_replaces(
        self, connection: SSHConnection, remote_home: Path, event_collector: EventCollector
    ) -> None:
        target = remote_home / "twice.log"
        target.write_text("x")
        first: list[FileChangeEvent] = []
        second: list[FileChangeEvent] = []

        assert await connection.watch_file(str(target), first.append)
        assert await connection.watch_file(str(target), second.append)
        assert connection.watched_paths() == [str(target)]

        target.write_text("changed")
        await wait_until(lambda: bool(second))
        assert first == []

        statuses = [e.data["status"] for e in event_collector.get_by_type(EventType.WATCH)]
        assert statuses[:3] == ["started", "stopped", "started"]

    @pytest.mark.asyncio
    async def test_disconnect_stops_watchers(
        self, connection: SSHConnection, remote_home: Path
    ) -> None:
        paths = []
        for name in ("a.log", "b.log"):
            target = remote_home / name
            target.write_text(name)
            paths.append(str(target))
            assert await connection.watch_file(str(target), lambda event: None)

        assert connection.watched_paths() == sorted(paths)
        await connection.disconnect()
        assert connection.watched_paths() == []

    @pytest.mark.asyncio
    async def test_remote_close_drops_watchers(
        self, connection: SSHConnection, remote_home: Path, mock_ssh_server: MockSSHServer
    ) -> None:
        target = remote_home / "c.log"
        target.write_text("x")
        assert await connection.watch_file(str(target), lambda event: None)

        mock_ssh_server.drop_connections()
        await wait_until(lambda: not connection.is_connected)
        assert not connection.is_watching(str(target))
