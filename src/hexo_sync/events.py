"""Typed publish/subscribe event channel.

Every orchestrator owns (or is handed) one `EventBus`. Publishing never raises
because of a subscriber: each handler runs in isolation and a failing handler
is logged and re-announced as a `system.error` event.
"""

import asyncio
import datetime
import inspect
import logging
import traceback
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .constants import APP_NAME
from .errors import DisposedError, EventTimeoutError

logger = logging.getLogger(APP_NAME)


class EventKind:
    """Event kind identifiers published on the bus."""

    SYSTEM_ERROR = "system.error"
    SYSTEM_WARNING = "system.warning"

    SYNC_STARTED = "sync.started"
    SYNC_STOPPED = "sync.stopped"
    SYNC_FAILED = "sync.failed"
    SYNC_COMPLETED = "sync.completed"
    SYNC_BATCH_STARTED = "sync.batch.started"
    SYNC_BATCH_COMPLETED = "sync.batch.completed"
    SYNC_BATCH_FAILED = "sync.batch.failed"

    GIT_COMMIT = "git.commit"
    GIT_PUSH = "git.push"
    GIT_ERROR = "git.error"


@dataclass(frozen=True)
class Event:
    """An immutable notification.

    Attributes:
        kind (str): One of the `EventKind` identifiers.
        payload (Any): The kind-specific payload dataclass.
        timestamp (datetime.datetime): When the event was created (UTC).
    """

    kind: str
    payload: Any = None
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


# --- Payloads ---


@dataclass(frozen=True)
class SystemErrorPayload:
    original: Event
    error: str
    traceback: str = ""


@dataclass(frozen=True)
class SyncStartedPayload:
    root: str
    watch_paths: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncStoppedPayload:
    total_processed: int
    error_count: int
    in_flight: tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncFailedPayload:
    """Announces a start failure or a critical shutdown.

    Attributes:
        error (str): The triggering error message.
        consecutive_failures (int): Batch failures in a row at the time.
        critical (bool): True when the orchestrator parked itself.
    """

    error: str
    consecutive_failures: int = 0
    critical: bool = False


@dataclass(frozen=True)
class SyncCompletedPayload:
    processed_files: tuple[str, ...]
    errors: tuple[str, ...]


@dataclass(frozen=True)
class BatchStartedPayload:
    batch_id: str
    file_count: int


@dataclass(frozen=True)
class BatchCompletedPayload:
    batch_id: str
    processed: int
    skipped: int
    errors: tuple[str, ...]
    duration: float


@dataclass(frozen=True)
class BatchFailedPayload:
    batch_id: str
    error: str
    consecutive_failures: int


@dataclass(frozen=True)
class GitCommitPayload:
    batch_id: str
    message: str
    file_count: int


@dataclass(frozen=True)
class GitPushPayload:
    batch_id: str


@dataclass(frozen=True)
class GitErrorPayload:
    batch_id: str
    operation: str
    error: str


EventHandler = Callable[[Event], Awaitable[None] | None]
"""A subscriber: any callable taking an `Event`, optionally a coroutine function."""


class EventBus:
    """An in-process publish/subscribe bus with bounded history.

    Attributes:
        max_history (int): Capacity of the history ring buffer.
    """

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self._handlers: dict[str, list[EventHandler]] = {}
        self._history: deque[Event] = deque(maxlen=max_history)
        self._pending: set[asyncio.Task] = set()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, kind: str, handler: EventHandler) -> Callable[[], None]:
        """Registers a handler for an event kind.

        Args:
            kind (str): The event kind to listen for.
            handler (EventHandler): The callable to invoke.

        Returns:
            Callable[[], None]: A function that removes the subscription.

        Raises:
            DisposedError: If the bus has been disposed.
        """
        if self._disposed:
            raise DisposedError("EventBus")
        self._handlers.setdefault(kind, []).append(handler)
        return lambda: self.unsubscribe(kind, handler)

    def unsubscribe(self, kind: str, handler: EventHandler) -> None:
        """Removes a handler. Unknown handlers and disposed buses are ignored."""
        if self._disposed:
            return
        handlers = self._handlers.get(kind)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            del self._handlers[kind]

    async def publish(self, event: Event) -> None:
        """Delivers an event to every subscriber and waits for all of them.

        Handler failures are isolated; this coroutine never raises because of one.

        Raises:
            DisposedError: If the bus has been disposed.
        """
        if self._disposed:
            raise DisposedError("EventBus")

        self._history.append(event)
        handlers = list(self._handlers.get(event.kind, ()))
        if handlers:
            await asyncio.gather(*(self._safe_execute(h, event) for h in handlers))

    def publish_nowait(self, event: Event) -> None:
        """Schedules delivery without waiting for handlers (fire and forget).

        Must be called from within a running event loop.

        Raises:
            DisposedError: If the bus has been disposed.
        """
        if self._disposed:
            raise DisposedError("EventBus")

        self._history.append(event)
        for handler in list(self._handlers.get(event.kind, ())):
            task = asyncio.get_running_loop().create_task(
                self._safe_execute(handler, event)
            )
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    def history(self, kind: str | None = None, limit: int | None = None) -> list[Event]:
        """Returns a copy of the recorded events, oldest first.

        Args:
            kind (str | None): Only return events of this kind.
            limit (int | None): Only return the most recent `limit` events.
        """
        events = [e for e in self._history if kind is None or e.kind == kind]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear_history(self) -> None:
        self._history.clear()

    def subscriber_count(self, kind: str) -> int:
        return len(self._handlers.get(kind, ()))

    def subscribed_kinds(self) -> list[str]:
        return list(self._handlers)

    async def wait_for(self, kind: str, timeout: float | None = None) -> Event:
        """Waits for the next event of a kind.

        A one-shot handler is registered and always removed again, whether the
        event arrives or the timeout expires.

        Args:
            kind (str): The event kind to wait for.
            timeout (float | None): Seconds to wait; None waits forever.

        Returns:
            Event: The first matching event.

        Raises:
            EventTimeoutError: If no matching event arrives in time.
        """
        future: asyncio.Future[Event] = asyncio.get_running_loop().create_future()

        def _once(event: Event) -> None:
            if not future.done():
                future.set_result(event)

        self.subscribe(kind, _once)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise EventTimeoutError(kind, timeout or 0.0) from e
        finally:
            self.unsubscribe(kind, _once)

    async def dispose(self) -> None:
        """Renders the bus permanently inert."""
        if self._disposed:
            return
        self._disposed = True
        self._handlers.clear()
        self._history.clear()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _safe_execute(self, handler: EventHandler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.exception(f"HANDLER ERROR for {event.kind}: {e}")

            # A failing system.error handler must not re-emit.
            if event.kind == EventKind.SYSTEM_ERROR or self._disposed:
                return
            await self.publish(
                Event(
                    EventKind.SYSTEM_ERROR,
                    SystemErrorPayload(
                        original=event,
                        error=str(e),
                        traceback=traceback.format_exc(),
                    ),
                )
            )
