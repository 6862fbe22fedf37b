"""
Local port forwarding owned by a single connection.

Provides:
- ForwardIntent: what was asked for (local port -> remote host:port)
- ForwardHandle: a live listener with close()
- PortForwardRegistry: local port -> handle, duplicate rejection, teardown

Each inbound connection on the local listener is spliced onto a
direct-tcpip channel of the connection's transport (asyncssh does the
byte pumping). All operations emit FORWARD events.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sshlite.errors import ErrorContext, SFTPError
from sshlite.events import EventType

if TYPE_CHECKING:
    import asyncssh
    from sshlite.events import EventEmitter

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"


@dataclass(frozen=True)
class ForwardIntent:
    """A local forward request. ``local_port`` 0 asks the OS for a free port."""
    local_port: int
    remote_host: str
    remote_port: int
    local_host: str = LOOPBACK

    def __post_init__(self) -> None:
        assert 0 <= self.local_port <= 65535, \
            f"local_port must be in 0..65535, got {self.local_port}"
        assert self.remote_host, "remote_host must be non-empty"
        assert 1 <= self.remote_port <= 65535, \
            f"remote_port must be in 1..65535, got {self.remote_port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_host": self.local_host,
            "local_port": self.local_port,
            "remote_host": self.remote_host,
            "remote_port": self.remote_port,
        }


class ForwardHandle:
    """A live forward; ``local_port`` is the port actually bound."""

    def __init__(self, intent: ForwardIntent, listener: Any, local_port: int) -> None:
        self._intent = intent
        self._listener = listener
        self._local_port = local_port
        self._closed = False

    @property
    def intent(self) -> ForwardIntent:
        return self._intent

    @property
    def local_port(self) -> int:
        return self._local_port

    @property
    def is_active(self) -> bool:
        return not self._closed

    def close_nowait(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._listener.close()

    async def close(self) -> None:
        self.close_nowait()
        await self._listener.wait_closed()


class PortForwardRegistry:
    """Forwards opened by one connection, keyed by local port."""

    def __init__(
        self,
        connection_id: str,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        self._connection_id = connection_id
        self._emitter = emitter
        self._handles: dict[int, ForwardHandle] = {}

    def ports(self) -> list[int]:
        return sorted(self._handles)

    def get(self, local_port: int) -> ForwardHandle | None:
        return self._handles.get(local_port)

    async def open(
        self,
        conn: "asyncssh.SSHClientConnection",
        intent: ForwardIntent,
    ) -> ForwardHandle:
        """
        Start listening on ``intent.local_port``.

        Raises:
            SFTPError: the port is already forwarded by this connection, or
                the listener could not be created.
        """
        ctx = ErrorContext(connection_id=self._connection_id, extra=intent.to_dict())

        if intent.local_port and intent.local_port in self._handles:
            raise SFTPError(
                f"Port {intent.local_port} is already forwarded", context=ctx
            )

        self._emit(intent, status="establishing")
        try:
            listener = await conn.forward_local_port(
                intent.local_host,
                intent.local_port,
                intent.remote_host,
                intent.remote_port,
            )
        except OSError as e:
            self._emit(intent, status="failed", error=str(e))
            raise SFTPError(
                f"Cannot forward local port {intent.local_port}: {e}",
                cause=e,
                context=ctx,
            ) from e

        handle = ForwardHandle(intent, listener, listener.get_port())
        self._handles[handle.local_port] = handle
        self._emit(intent, status="established", actual_port=handle.local_port)
        return handle

    async def close(self, local_port: int) -> bool:
        """Close one forward. Returns False when the port was not forwarded."""
        handle = self._handles.pop(local_port, None)
        if handle is None:
            return False
        await handle.close()
        self._emit(handle.intent, status="closed", actual_port=local_port)
        return True

    def close_all_nowait(self) -> None:
        """Close every listener without waiting (usable from transport callbacks)."""
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                handle.close_nowait()
            except Exception as e:
                logger.debug("Error closing forward %d: %s", handle.local_port, e)
            self._emit(handle.intent, status="closed", actual_port=handle.local_port)

    async def close_all(self) -> None:
        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            try:
                await handle.close()
            except Exception as e:
                logger.debug("Error closing forward %d: %s", handle.local_port, e)
            self._emit(handle.intent, status="closed", actual_port=handle.local_port)

    def _emit(self, intent: ForwardIntent, status: str, **extra: Any) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.FORWARD,
            status=status,
            connection_id=self._connection_id,
            **intent.to_dict(),
            **extra,
        )
