"""
Engine root object.

EngineContext wires settings, the credential store and the event
emitter into one Scheduler and one ConnectionRegistry. Create one per
application (or per test) and pass it where needed.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sshlite.auth import CredentialStore, MemoryCredentialStore
from sshlite.config import EngineSettings
from sshlite.events import EventCollector, EventEmitter
from sshlite.registry import ConnectionRegistry
from sshlite.scheduler import Scheduler

logger = logging.getLogger(__name__)


class EngineContext:
    """
    Usage:
        async with EngineContext(EngineSettings.from_env()) as ctx:
            conn = await ctx.registry.connect(HostConfig("example.com"))
            await ctx.scheduler.enqueue(conn.id, "warm", Priority.LOW, work)
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        credential_store: CredentialStore | None = None,
        emitter: EventEmitter | None = None,
        *,
        event_collector: EventCollector | None = None,
        event_log: Path | str | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.credential_store: CredentialStore = credential_store or MemoryCredentialStore()
        self.emitter = emitter or EventEmitter(collector=event_collector, jsonl_path=event_log)
        self._scheduler: Scheduler | None = None
        self._registry: ConnectionRegistry | None = None

    @property
    def initialized(self) -> bool:
        return self._scheduler is not None

    @property
    def scheduler(self) -> Scheduler:
        assert self._scheduler is not None, "EngineContext not initialised. Call init() first."
        return self._scheduler

    @property
    def registry(self) -> ConnectionRegistry:
        assert self._registry is not None, "EngineContext not initialised. Call init() first."
        return self._registry

    async def init(self) -> "EngineContext":
        if self._scheduler is None:
            self._scheduler = Scheduler(
                max_concurrency=self.settings.max_concurrency,
                emitter=self.emitter,
            )
            self._registry = ConnectionRegistry(
                self.settings,
                self.credential_store,
                scheduler=self._scheduler,
                emitter=self.emitter,
            )
            logger.debug("Engine initialised (max_concurrency=%d)", self.settings.max_concurrency)
        return self

    async def shutdown(self) -> None:
        """Cancel pending work, wait for running work, close every connection."""
        if self._scheduler is None:
            return
        assert self._registry is not None
        await self._scheduler.shutdown()
        await self._registry.disconnect_all()
        self.emitter.close()
        self._scheduler = None
        self._registry = None

    async def __aenter__(self) -> "EngineContext":
        return await self.init()

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()
