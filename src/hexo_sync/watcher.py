"""Change sources feeding the orchestrator."""

import asyncio
import datetime
import logging
import os
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from pathlib import Path

from .aggregator import ChangeKind, FileChangeEvent
from .constants import APP_NAME, DEFAULT_EXTENSIONS, IGNORED_DIRS

logger = logging.getLogger(APP_NAME)


class QueueChangeSource:
    """A change source fed by hand, for embedding and tests.

    Events put before `changes()` is iterated are buffered. `close()` ends the
    iteration once the buffer is drained.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[FileChangeEvent | None] = asyncio.Queue()

    async def put(self, event: FileChangeEvent) -> None:
        await self._queue.put(event)

    def put_nowait(self, event: FileChangeEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(None)

    async def changes(self) -> AsyncIterator[FileChangeEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


@dataclass(frozen=True)
class FileState:
    size: int
    mtime_ns: int


class PollingWatcher:
    """Detects changes by periodically walking the watched directories.

    Each scan stats every content file and compares it with the previous
    scan: new paths are reported as created, changed size or mtime as
    modified, and vanished paths as deleted. The first scan only records a
    baseline.

    Attributes:
        root (Path): The repository root; reported paths are relative to it.
        watch_paths (tuple[str, ...]): Directories (relative to root) to scan.
        extensions (tuple[str, ...]): Suffixes of files worth reporting.
        interval (float): Seconds between scans.
    """

    def __init__(
        self,
        root: Path,
        watch_paths: Iterable[str] = ("source/_posts",),
        extensions: Iterable[str] = tuple(DEFAULT_EXTENSIONS),
        interval: float = 1.0,
        ignored: Iterable[str] = tuple(IGNORED_DIRS),
    ):
        self.root = root
        self.watch_paths = tuple(watch_paths)
        self.extensions = tuple(e.lower() for e in extensions)
        self.interval = interval
        self.ignored = set(ignored)
        self._closed = False

    def close(self) -> None:
        self._closed = True

    def scan(self) -> dict[str, FileState]:
        """Takes a snapshot of every content file under the watched paths.

        Returns:
            dict[str, FileState]: Repository-relative POSIX paths to their state.
        """
        snapshot: dict[str, FileState] = {}
        for watch_path in self.watch_paths:
            base = self.root / watch_path
            if not base.is_dir():
                continue
            for dirpath, dirs, files in os.walk(base):
                dirs[:] = [d for d in dirs if d not in self.ignored and not d.startswith(".")]
                for name in files:
                    if not name.lower().endswith(self.extensions):
                        continue
                    full = Path(dirpath) / name
                    try:
                        stat = full.stat()
                    except OSError:
                        # Removed between listing and stat.
                        continue
                    rel = full.relative_to(self.root).as_posix()
                    snapshot[rel] = FileState(stat.st_size, stat.st_mtime_ns)
        return snapshot

    @staticmethod
    def diff(
        before: dict[str, FileState], after: dict[str, FileState]
    ) -> list[FileChangeEvent]:
        """Compares two snapshots.

        Returns:
            list[FileChangeEvent]: One event per created, modified or deleted path.
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        events: list[FileChangeEvent] = []
        for path, state in after.items():
            previous = before.get(path)
            if previous == state:
                continue
            kind = ChangeKind.CREATED if previous is None else ChangeKind.MODIFIED
            events.append(
                FileChangeEvent(
                    path,
                    kind,
                    timestamp=now,
                    size_bytes=state.size,
                    modified_at=datetime.datetime.fromtimestamp(
                        state.mtime_ns / 1e9, datetime.timezone.utc
                    ),
                )
            )
        for path in before.keys() - after.keys():
            events.append(FileChangeEvent(path, ChangeKind.DELETED, timestamp=now))
        return events

    async def changes(self) -> AsyncIterator[FileChangeEvent]:
        previous = await asyncio.to_thread(self.scan)
        logger.debug(f"WATCH {self.root.name}: baseline of {len(previous)} file(s)")
        while not self._closed:
            await asyncio.sleep(self.interval)
            current = await asyncio.to_thread(self.scan)
            for event in self.diff(previous, current):
                yield event
            previous = current
