"""Turns a bursty stream of file change notifications into batches of unique paths."""

import asyncio
import datetime
import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)


class ChangeKind(str, enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChangeEvent:
    """A single change notification from a change source.

    Attributes:
        path (str): The changed file, relative to the repository root.
        kind (ChangeKind): What happened to the file.
        timestamp (datetime.datetime): When the change was detected.
        size_bytes (int | None): File size, if known.
        modified_at (datetime.datetime | None): File mtime, if known.
    """

    path: str
    kind: ChangeKind = ChangeKind.MODIFIED
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    size_bytes: int | None = None
    modified_at: datetime.datetime | None = None


def _newest(current: FileChangeEvent | None, incoming: FileChangeEvent) -> FileChangeEvent:
    """Picks the later of two events for the same path (late deliveries lose)."""
    if current is not None and incoming.timestamp < current.timestamp:
        return current
    return incoming


class ProcessingSet:
    """The set of paths currently being handled, guarded by one lock.

    No two batches can hold the same path at the same time.
    """

    def __init__(self) -> None:
        self._paths: set[str] = set()
        self._changed = asyncio.Condition()

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def snapshot(self) -> tuple[str, ...]:
        return tuple(sorted(self._paths))

    async def claim(self, paths: Iterable[str], limit: int | None = None) -> list[str]:
        """Atomically claims every free path, in order, up to `limit`.

        Returns:
            list[str]: The paths now owned by the caller.
        """
        async with self._changed:
            claimed: list[str] = []
            for path in paths:
                if limit is not None and len(claimed) >= limit:
                    break
                if path in self._paths or path in claimed:
                    continue
                claimed.append(path)
            self._paths.update(claimed)
            return claimed

    async def release(self, paths: Iterable[str]) -> None:
        async with self._changed:
            self._paths.difference_update(paths)
            self._changed.notify_all()

    async def wait_empty(self, timeout: float | None = None) -> bool:
        """Waits until no path is claimed.

        Returns:
            bool: False if paths were still claimed when the timeout expired.
        """

        async def _wait() -> None:
            async with self._changed:
                await self._changed.wait_for(lambda: not self._paths)

        try:
            await asyncio.wait_for(_wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class ChangeAggregator:
    """Debounces change events per path and emits them in time-boxed batches.

    Events for one path arriving within `debounce` seconds of each other
    collapse into the latest one. Settled events accumulate until the
    `batch_window` closes; the window's paths not already being processed are
    claimed in the `ProcessingSet` (at most `max_batch_size`, the rest wait
    for the next window) and handed off through `next_batch()`.

    Attributes:
        debounce (float): Per-path quiet period in seconds.
        batch_window (float): Seconds between batch hand-offs.
        max_batch_size (int): Upper bound on paths per batch.
    """

    def __init__(
        self,
        processing: ProcessingSet,
        debounce: float = 0.3,
        batch_window: float = 2.0,
        max_batch_size: int = 50,
    ):
        self.processing = processing
        self.debounce = debounce
        self.batch_window = batch_window
        self.max_batch_size = max_batch_size

        self._debouncing: dict[str, FileChangeEvent] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._window: dict[str, FileChangeEvent] = {}
        self._batches: asyncio.Queue[list[FileChangeEvent] | None] = asyncio.Queue()
        self._window_task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def batches(self) -> asyncio.Queue[list[FileChangeEvent] | None]:
        """The hand-off queue of the current run; replaced on every `start()`."""
        return self._batches

    @property
    def pending(self) -> int:
        """Number of distinct paths debouncing or waiting for a window."""
        return len(set(self._debouncing) | set(self._window))

    def start(self) -> None:
        """Begins accepting events and closing windows on the running loop."""
        if self._running:
            return
        self._running = True
        self._batches = asyncio.Queue()
        self._window_task = asyncio.get_running_loop().create_task(self._window_loop())

    def submit(self, event: FileChangeEvent) -> None:
        """Records a change notification. Ignored while stopped."""
        if not self._running:
            logger.debug(f"AGGREGATOR: dropped {event.path} (not running)")
            return

        path = event.path
        self._debouncing[path] = _newest(self._debouncing.get(path), event)
        if timer := self._timers.pop(path, None):
            timer.cancel()
        self._timers[path] = asyncio.get_running_loop().call_later(
            self.debounce, self._settle, path
        )

    async def next_batch(self) -> list[FileChangeEvent] | None:
        """Waits for the next batch; None once the aggregator is closed."""
        return await self._batches.get()

    async def flush(self) -> list[FileChangeEvent] | None:
        """Settles every debouncing path and closes the current window now."""
        for path in list(self._timers):
            self._timers.pop(path).cancel()
            self._settle(path)
        return await self._close_window()

    async def close(self) -> None:
        """Cancels pending timers and the window loop; wakes `next_batch` with None."""
        if not self._running:
            return
        self._running = False

        for timer in self._timers.values():
            timer.cancel()
        dropped = self.pending
        self._timers.clear()
        self._debouncing.clear()
        self._window.clear()
        if dropped:
            logger.info(f"AGGREGATOR: discarded {dropped} pending change(s) on close")

        if self._window_task is not None:
            self._window_task.cancel()
            try:
                await self._window_task
            except asyncio.CancelledError:
                pass
            self._window_task = None

        self._batches.put_nowait(None)

    def discard_queued(self) -> list[str]:
        """Empties the hand-off queue.

        Returns:
            list[str]: Paths of the discarded batches; the caller still owns
                their claims in the `ProcessingSet`.
        """
        paths: list[str] = []
        while not self._batches.empty():
            batch = self._batches.get_nowait()
            if batch:
                paths.extend(e.path for e in batch)
        return paths

    def _settle(self, path: str) -> None:
        self._timers.pop(path, None)
        event = self._debouncing.pop(path, None)
        if event is not None:
            self._window[path] = _newest(self._window.get(path), event)

    async def _window_loop(self) -> None:
        while True:
            await asyncio.sleep(self.batch_window)
            await self._close_window()

    async def _close_window(self) -> list[FileChangeEvent] | None:
        if not self._window:
            return None

        claimed = await self.processing.claim(
            list(self._window), limit=self.max_batch_size
        )
        if not claimed:
            logger.debug(
                f"AGGREGATOR: {len(self._window)} path(s) deferred, all in flight"
            )
            return None

        batch = [self._window.pop(path) for path in claimed]
        if self._window:
            logger.debug(f"AGGREGATOR: {len(self._window)} path(s) deferred to next window")
        self._batches.put_nowait(batch)
        return batch
