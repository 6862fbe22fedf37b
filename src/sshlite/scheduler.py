"""
Per-connection priority scheduler for background remote work.

User-triggered operations call the connection directly or enqueue at
CRITICAL, which runs inline and bypasses every limit. Speculative work
(prefetching directories, warming file content) is enqueued at a lower
priority and drained under a per-connection concurrency ceiling with
graded admission:

    available = ceiling - active
    HIGH   needs available >= 1
    MEDIUM needs available >= 2
    LOW    needs available >= 3
    IDLE   needs available >= 4

so the busier a connection gets, the fewer priority levels keep
draining. Failures of non-critical tasks are logged and dropped.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Union

from sshlite.events import EventType

if TYPE_CHECKING:
    from sshlite.events import EventEmitter

logger = logging.getLogger(__name__)


class Priority(IntEnum):
    """Lower value runs first."""
    CRITICAL = 0
    HIGH = 1
    MEDIUM = 2
    LOW = 3
    IDLE = 4


ADMISSION_THRESHOLDS: dict[Priority, int] = {
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
    Priority.IDLE: 4,
}

QUEUED_PRIORITIES = tuple(ADMISSION_THRESHOLDS)


def get_priority_name(priority: int) -> str:
    return Priority(priority).name.title()


class Runnable(Protocol):
    async def run(self) -> Any:
        ...


class CallableRunnable:
    """Adapts a zero-argument coroutine function to Runnable."""

    def __init__(self, func: Callable[[], Awaitable[Any]]) -> None:
        assert callable(func), f"Expected a callable, got {type(func)}"
        self._func = func

    async def run(self) -> Any:
        return await self._func()

    def __repr__(self) -> str:
        return f"CallableRunnable({getattr(self._func, '__name__', self._func)!r})"


Work = Union[Runnable, Callable[[], Awaitable[Any]]]


def _as_runnable(work: Work) -> Runnable:
    if callable(getattr(work, "run", None)):
        return work  # type: ignore[return-value]
    return CallableRunnable(work)  # type: ignore[arg-type]


def new_task_id(connection_id: str) -> str:
    return f"{connection_id}:{int(time.time() * 1000)}:{uuid.uuid4().hex[:9]}"


@dataclass
class QueueTask:
    connection_id: str
    priority: Priority
    runnable: Runnable
    description: str = ""
    task_id: str = ""
    created_at: float = field(default_factory=lambda: time.time() * 1000)

    def __post_init__(self) -> None:
        assert self.connection_id, "connection_id must be non-empty"
        self.priority = Priority(self.priority)
        if not self.task_id:
            self.task_id = new_task_id(self.connection_id)


@dataclass
class QueueStatus:
    active: int = 0
    queued: int = 0
    completed: int = 0
    total: int = 0
    by_priority: dict[str, int] = field(
        default_factory=lambda: {get_priority_name(p): 0 for p in QUEUED_PRIORITIES}
    )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class _ConnectionQueue:
    """Scheduling state for one connection."""

    def __init__(self, ceiling: int) -> None:
        self.buckets: dict[Priority, deque[QueueTask]] = {
            p: deque() for p in QUEUED_PRIORITIES
        }
        self.active: set[str] = set()
        self.ceiling = ceiling
        self.cancelled = False
        self.completed = 0
        self.total_queued = 0
        self.draining = False

    @property
    def queued(self) -> int:
        return sum(len(bucket) for bucket in self.buckets.values())

    def clear_pending(self) -> int:
        dropped = self.queued
        for bucket in self.buckets.values():
            bucket.clear()
        return dropped

    def reset_counters(self) -> None:
        self.completed = 0
        self.total_queued = 0

    def admits(self, priority: Priority) -> bool:
        if priority == Priority.CRITICAL:
            return True
        return self.ceiling - len(self.active) >= ADMISSION_THRESHOLDS[priority]

    def pop_admissible(self) -> QueueTask | None:
        for priority in QUEUED_PRIORITIES:
            bucket = self.buckets[priority]
            if bucket and self.admits(priority):
                return bucket.popleft()
        return None

    def status(self) -> QueueStatus:
        return QueueStatus(
            active=len(self.active),
            queued=self.queued,
            completed=self.completed,
            total=self.total_queued,
            by_priority={
                get_priority_name(p): len(self.buckets[p]) for p in QUEUED_PRIORITIES
            },
        )


class Scheduler:
    """
    Priority task queues, one per connection id.

    Usage:
        scheduler = Scheduler(max_concurrency=5)
        await scheduler.enqueue(conn.id, "prefetch /var/log", Priority.LOW,
                                lambda: conn.list_files("/var/log"))
        listing = await scheduler.enqueue(conn.id, "open dir", Priority.CRITICAL,
                                          lambda: conn.list_files("/etc"))
    """

    def __init__(
        self,
        max_concurrency: int = 5,
        emitter: "EventEmitter | None" = None,
    ) -> None:
        assert isinstance(max_concurrency, int) and max_concurrency >= 1, \
            f"max_concurrency must be a positive int, got {max_concurrency!r}"
        self._default_ceiling = max_concurrency
        self._ceilings: dict[str, int] = {}
        self._queues: dict[str, _ConnectionQueue] = {}
        self._running: dict[str, tuple[QueueTask, asyncio.Task[None]]] = {}
        self._cancelled = False
        self._emitter = emitter

    def _queue(self, connection_id: str) -> _ConnectionQueue:
        queue = self._queues.get(connection_id)
        if queue is None:
            ceiling = self._ceilings.get(connection_id, self._default_ceiling)
            queue = _ConnectionQueue(ceiling)
            self._queues[connection_id] = queue
        return queue

    def _emit(self, status: str, task: QueueTask, **extra: Any) -> None:
        if self._emitter is None:
            return
        self._emitter.emit(
            EventType.QUEUE,
            status=status,
            task_id=task.task_id,
            connection_id=task.connection_id,
            priority=get_priority_name(task.priority),
            description=task.description,
            **extra,
        )

    # ------------------------------------------------------------------
    # Enqueue and drain
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        connection_id: str,
        description: str,
        priority: Priority | int,
        work: Work,
    ) -> Any:
        """
        Submit work for ``connection_id``.

        CRITICAL work runs immediately and is awaited: its result is
        returned and its exception propagates. Anything else is queued and
        None is returned at once; if the scheduler or the connection has
        been cancelled, it is silently dropped.
        """
        task = QueueTask(
            connection_id=connection_id,
            priority=Priority(priority),
            runnable=_as_runnable(work),
            description=description,
        )

        if task.priority == Priority.CRITICAL:
            self._emit("critical", task)
            return await task.runnable.run()

        queue = self._queue(connection_id)
        if self._cancelled or queue.cancelled:
            logger.debug("Dropping %s for cancelled connection %s", description, connection_id)
            return None

        queue.buckets[task.priority].append(task)
        queue.total_queued += 1
        self._emit("queued", task)
        self._drain(connection_id)
        return None

    def _drain(self, connection_id: str) -> None:
        queue = self._queues.get(connection_id)
        if queue is None or queue.draining:
            return

        queue.draining = True
        try:
            while True:
                task = queue.pop_admissible()
                if task is None:
                    break
                self._launch(queue, task)
        finally:
            queue.draining = False

    def _launch(self, queue: _ConnectionQueue, task: QueueTask) -> None:
        queue.active.add(task.task_id)
        running = asyncio.create_task(self._run(queue, task))
        self._running[task.task_id] = (task, running)
        self._emit("launched", task, active=len(queue.active))

    async def _run(self, queue: _ConnectionQueue, task: QueueTask) -> None:
        try:
            await task.runnable.run()
        except Exception as e:
            logger.warning(
                "Background task %s (%s) failed: %s", task.task_id, task.description, e
            )
            self._emit("failed", task, error=str(e))
        else:
            self._emit("completed", task)
        finally:
            queue.active.discard(task.task_id)
            self._running.pop(task.task_id, None)
            queue.completed += 1
            # A cleared connection's queue object is orphaned; do not revive it
            if self._queues.get(task.connection_id) is queue:
                self._drain(task.connection_id)

    # ------------------------------------------------------------------
    # Admission and configuration
    # ------------------------------------------------------------------

    def can_admit(self, connection_id: str, priority: Priority | int) -> bool:
        priority = Priority(priority)
        queue = self._queues.get(connection_id)
        if queue is None:
            queue = _ConnectionQueue(self._ceilings.get(connection_id, self._default_ceiling))
        return queue.admits(priority)

    def set_concurrency(self, connection_id: str, ceiling: int) -> None:
        assert isinstance(ceiling, int) and ceiling >= 1, \
            f"ceiling must be a positive int, got {ceiling!r}"
        self._ceilings[connection_id] = ceiling
        queue = self._queues.get(connection_id)
        if queue is not None:
            queue.ceiling = ceiling
            self._drain(connection_id)

    def get_concurrency(self, connection_id: str) -> int:
        return self._ceilings.get(connection_id, self._default_ceiling)

    # ------------------------------------------------------------------
    # Cancellation and reset
    # ------------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def is_cancelled(self, connection_id: str) -> bool:
        queue = self._queues.get(connection_id)
        return self._cancelled or (queue is not None and queue.cancelled)

    def cancel_all(self) -> None:
        """Drop all pending work; later non-critical enqueues are no-ops."""
        self._cancelled = True
        dropped = sum(queue.clear_pending() for queue in self._queues.values())
        logger.debug("Scheduler cancelled, %d pending tasks dropped", dropped)

    def cancel_connection(self, connection_id: str) -> None:
        queue = self._queue(connection_id)
        queue.cancelled = True
        dropped = queue.clear_pending()
        logger.debug("Cancelled %s, %d pending tasks dropped", connection_id, dropped)

    def reset(self) -> None:
        """Accept new work again and zero every counter."""
        self._cancelled = False
        for queue in self._queues.values():
            queue.cancelled = False
            queue.reset_counters()

    def reset_connection(self, connection_id: str) -> None:
        queue = self._queues.get(connection_id)
        if queue is not None:
            queue.cancelled = False
            queue.reset_counters()

    def clear_connection(self, connection_id: str) -> None:
        """Forget a connection's queue and counters; running tasks finish on their own."""
        queue = self._queues.pop(connection_id, None)
        if queue is not None:
            queue.clear_pending()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_status(self) -> QueueStatus:
        status = QueueStatus()
        for queue in self._queues.values():
            part = queue.status()
            status.active += part.active
            status.queued += part.queued
            status.completed += part.completed
            status.total += part.total
            for name, count in part.by_priority.items():
                status.by_priority[name] += count
        return status

    def get_connection_status(self, connection_id: str) -> QueueStatus:
        queue = self._queues.get(connection_id)
        return queue.status() if queue is not None else QueueStatus()

    def pending_tasks(self, connection_id: str) -> list[QueueTask]:
        """Queued tasks in the order they would be considered."""
        queue = self._queues.get(connection_id)
        if queue is None:
            return []
        return [task for p in QUEUED_PRIORITIES for task in queue.buckets[p]]

    async def wait_idle(self, connection_id: str | None = None) -> None:
        """
        Wait until no task is running for ``connection_id`` (or at all).

        Tasks launched while waiting are waited for as well. Queued work
        that can never be admitted (e.g. IDLE under a ceiling below 4)
        does not keep this waiting.
        """
        while True:
            running = [
                handle for task, handle in self._running.values()
                if connection_id is None or task.connection_id == connection_id
            ]
            if not running:
                return
            await asyncio.wait(running)

    async def shutdown(self) -> None:
        self.cancel_all()
        await self.wait_idle()
