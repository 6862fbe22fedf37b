"""
Pytest fixtures for sshlite tests.

Provides:
- event capture fixtures for asserting event sequences
- isolated EngineSettings (no default keys, no agent)
- MockSSHServer-based fixtures, no Docker or network required
- a connected SSHConnection against the mock server
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, AsyncGenerator

import pytest

from sshlite.config import EngineSettings
from sshlite.events import EventCollector, EventEmitter

if TYPE_CHECKING:
    from sshlite.connection import SSHConnection
    from sshlite.testing.mock_server import MockSSHServer


@pytest.fixture
def event_collector() -> EventCollector:
    """Fresh EventCollector for capturing events."""
    return EventCollector()


@pytest.fixture
def emitter(event_collector: EventCollector) -> EventEmitter:
    return EventEmitter(collector=event_collector)


@pytest.fixture
def settings() -> EngineSettings:
    """
    Settings that ignore the developer's ~/.ssh keys and agent.

    Timeouts are short so hung tests fail quickly.
    """
    return EngineSettings(
        connect_timeout=10.0,
        operation_timeout=10.0,
        agent_path=None,
        default_key_paths=[],
    )


@pytest.fixture
def remote_home(tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    return home


@pytest.fixture
async def mock_ssh_server(remote_home: Path) -> AsyncGenerator["MockSSHServer", None]:
    """
    MockSSHServer with password auth and real command execution.

    Usage:
        @pytest.mark.asyncio
        async def test_example(mock_ssh_server, settings):
            conn = SSHConnection(mock_ssh_server.host_config(), settings=settings,
                                 credential_store=mock_ssh_server.credential_store())
    """
    from sshlite.testing.mock_server import MockServerConfig, MockSSHServer

    config = MockServerConfig(
        username="test",
        password="test",
        home_dir=remote_home,
    )

    async with MockSSHServer(config) as server:
        yield server


@pytest.fixture
async def connection(
    mock_ssh_server: "MockSSHServer",
    settings: EngineSettings,
    emitter: EventEmitter,
) -> AsyncGenerator["SSHConnection", None]:
    """An SSHConnection already connected to mock_ssh_server."""
    from sshlite.connection import SSHConnection

    conn = SSHConnection(
        mock_ssh_server.host_config(),
        settings=settings,
        credential_store=mock_ssh_server.credential_store(),
        emitter=emitter,
    )
    await conn.connect()
    try:
        yield conn
    finally:
        await conn.disconnect()
