"""
Registry of live connections, keyed by connection id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sshlite.auth import CredentialDescriptor, CredentialStore
from sshlite.config import EngineSettings, HostConfig
from sshlite.connection import ConnectionState, SSHConnection, Subscription
from sshlite.events import EventEmitter

if TYPE_CHECKING:
    from sshlite.scheduler import Scheduler

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """
    Creates, tracks and tears down SSHConnections.

    A connection is dropped from the registry (and its scheduler queue
    discarded) as soon as it reports DISCONNECTED, whoever closed it.
    """

    def __init__(
        self,
        settings: EngineSettings,
        credential_store: CredentialStore,
        scheduler: "Scheduler | None" = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self._settings = settings
        self._store = credential_store
        self._scheduler = scheduler
        self._emitter = emitter or EventEmitter()
        self._connections: dict[str, SSHConnection] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    async def connect(
        self,
        host: HostConfig,
        credential: CredentialDescriptor | None = None,
    ) -> SSHConnection:
        """
        Return the connected session for ``host``, connecting if needed.

        On failure the connection is not kept and the error propagates.
        """
        connection_id = host.connection_id
        async with self._lock:
            existing = self._connections.get(connection_id)
            if existing is not None and existing.is_connected:
                return existing
            if existing is not None:
                self._forget(connection_id)

            connection = SSHConnection(
                host,
                credential,
                settings=self._settings,
                credential_store=self._store,
                emitter=self._emitter,
            )
            self._connections[connection_id] = connection
            self._subscriptions[connection_id] = connection.subscribe(
                lambda state, c=connection: self._on_state_change(c, state)
            )

        try:
            await connection.connect()
        except Exception:
            if self._connections.get(connection_id) is connection:
                self._forget(connection_id)
            raise
        return connection

    def _on_state_change(self, connection: SSHConnection, state: ConnectionState) -> None:
        if state != ConnectionState.DISCONNECTED:
            return
        if self._connections.get(connection.id) is connection:
            logger.debug("Dropping disconnected connection %s", connection.id)
            self._forget(connection.id)

    def _forget(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        subscription = self._subscriptions.pop(connection_id, None)
        if subscription is not None:
            subscription.cancel()
        if self._scheduler is not None:
            self._scheduler.clear_connection(connection_id)

    def get(self, connection_id: str) -> SSHConnection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[SSHConnection]:
        """Connected sessions only."""
        return [c for c in self._connections.values() if c.is_connected]

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            return
        await connection.disconnect()
        self._forget(connection_id)

    async def disconnect_all(self) -> None:
        connections = list(self._connections.values())
        for connection in connections:
            try:
                await connection.disconnect()
            except Exception as e:
                logger.debug("Error disconnecting %s: %s", connection.id, e)
        for connection in connections:
            if self._connections.get(connection.id) is connection:
                self._forget(connection.id)
