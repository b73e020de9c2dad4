"""The synchronization orchestrator.

Wires a change source, the `ChangeAggregator` and the `BatchProcessor` into a
start/stop lifecycle, publishes lifecycle events, tracks status and parks
itself after too many consecutive batch failures.

Relationship between the two failure counters: the circuit breaker counts
failed *git calls* and sheds load for `recovery_time`, while the orchestrator
counts failed *batches* in a row. A breaker that stays open makes every batch
fail fast, so the orchestrator's ceiling is what eventually stops the
pipeline and asks an operator to look at the repository.
"""

import asyncio
import dataclasses
import datetime
import logging
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .aggregator import ChangeAggregator, FileChangeEvent, ProcessingSet
from .constants import APP_NAME, DEFAULT_WATCH_PATHS
from .errors import ConfigError, DisposedError, RepositoryError
from .events import (
    BatchCompletedPayload,
    BatchFailedPayload,
    BatchStartedPayload,
    Event,
    EventBus,
    EventKind,
    SyncCompletedPayload,
    SyncFailedPayload,
    SyncStartedPayload,
    SyncStoppedPayload,
)
from .processor import (
    BatchProcessingResult,
    BatchProcessor,
    GitClient,
    Normalizer,
    ProcessorOptions,
)
from .resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryOptions,
    RetryPolicy,
    resilient,
)

logger = logging.getLogger(APP_NAME)


class ChangeSource(Protocol):
    """Anything that yields file change notifications."""

    def changes(self) -> AsyncIterator[FileChangeEvent]: ...


@dataclass(frozen=True)
class SyncConfig:
    """Pipeline settings consumed by the orchestrator.

    Attributes:
        batch_window (float): Seconds per aggregation window.
        debounce (float): Per-path debounce in seconds.
        max_batch_size (int): Paths per batch.
        max_consecutive_failures (int): Failed batches in a row before a
            critical shutdown.
        drain_timeout (float): Seconds `stop()` waits for in-flight files.
        watch_paths (tuple[str, ...]): Repository-relative watched directories.
        processor (ProcessorOptions): Commit/push and normalization options.
    """

    batch_window: float = 2.0
    debounce: float = 0.3
    max_batch_size: int = 50
    max_consecutive_failures: int = 5
    drain_timeout: float = 30.0
    watch_paths: tuple[str, ...] = tuple(DEFAULT_WATCH_PATHS)
    processor: ProcessorOptions = field(default_factory=ProcessorOptions)

    def __post_init__(self) -> None:
        if self.batch_window <= 0:
            raise ConfigError("sync.batch_window must be positive")
        if self.debounce < 0:
            raise ConfigError("sync.debounce must be non-negative")
        if self.max_batch_size < 1:
            raise ConfigError("sync.max_batch_size must be at least 1")
        if self.max_consecutive_failures < 1:
            raise ConfigError("sync.max_consecutive_failures must be at least 1")
        if self.drain_timeout < 0:
            raise ConfigError("sync.drain_timeout must be non-negative")
        if not self.processor.commit_template:
            raise ConfigError("git.commit_template is required")


@dataclass(frozen=True)
class SyncStatus:
    """A read-only snapshot of the orchestrator's state."""

    is_running: bool = False
    last_sync: datetime.datetime | None = None
    total_processed: int = 0
    error_count: int = 0
    consecutive_failures: int = 0


@dataclass(frozen=True)
class SyncResult:
    success: bool
    processed_files: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class SyncOrchestrator:
    """Owns the change -> batch -> commit pipeline of one repository.

    Attributes:
        root (Path): The repository root.
        config (SyncConfig): Pipeline settings.
        bus (EventBus): Where lifecycle events are published.
    """

    def __init__(
        self,
        root: Path,
        git: GitClient,
        normalizer: Normalizer,
        source: ChangeSource,
        bus: EventBus,
        config: SyncConfig | None = None,
        retry: RetryPolicy | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.root = root
        self.git = git
        self.normalizer = normalizer
        self.source = source
        self.bus = bus
        self.config = config or SyncConfig()
        self.retry = retry or RetryPolicy()
        self.breaker = breaker or CircuitBreaker()

        self.processing = ProcessingSet()
        self._git_lock = asyncio.Lock()
        self.processor = self._make_processor()
        self.aggregator = self._make_aggregator()

        self._status = SyncStatus()
        self._running = False
        self._parked = False
        self._disposed = False
        self._source_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self._lingering_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Validates the repository and starts watching.

        Calling `start()` while running logs a warning and does nothing.

        Raises:
            RepositoryError: If the root is not a git repository or HEAD is detached.
            DisposedError: If the orchestrator has been disposed.
        """
        if self._disposed:
            raise DisposedError("SyncOrchestrator")
        if self._running:
            logger.warning("Synchronization is already running")
            return

        try:
            if not await self.git.is_repository():
                raise RepositoryError(f"Not a git repository: {self.root}")
            if not await self.git.current_branch():
                raise RepositoryError(f"Detached HEAD in {self.root}; check out a branch")
        except Exception as e:
            logger.error(f"START FAILED {self.root.name}: {e}")
            await self._publish(
                Event(EventKind.SYNC_FAILED, SyncFailedPayload(str(e), 0, critical=False))
            )
            raise

        self._running = True
        self._parked = False
        self._set_status(is_running=True, consecutive_failures=0)
        self.aggregator.start()
        self.breaker.start_monitoring()
        loop = asyncio.get_running_loop()
        previous, self._lingering_task = self._lingering_task, None
        self._worker_task = loop.create_task(
            self._batch_worker(self.aggregator.batches, previous)
        )
        self._source_task = loop.create_task(self._pump_changes())

        await self._publish(
            Event(
                EventKind.SYNC_STARTED,
                SyncStartedPayload(str(self.root), tuple(self.config.watch_paths)),
            )
        )
        logger.info(
            f"STARTED {self.root.name}: window={self.config.batch_window}s "
            f"debounce={self.config.debounce}s"
        )

    async def stop(self) -> None:
        """Stops watching and drains in-flight work.

        Waits up to `drain_timeout` for the current batch; files still in
        flight afterwards are logged and left to finish on their own.
        """
        if not self._running:
            return
        in_flight = await self._halt()

        await self._publish(
            Event(
                EventKind.SYNC_STOPPED,
                SyncStoppedPayload(
                    self._status.total_processed, self._status.error_count, in_flight
                ),
            )
        )
        logger.info(
            f"STOPPED {self.root.name}: processed={self._status.total_processed} "
            f"errors={self._status.error_count}"
        )

    async def restart(self) -> None:
        """Stops, clears the status counters and starts again."""
        await self.stop()
        self._status = SyncStatus()
        await self.start()

    async def reconfigure(self, config: SyncConfig) -> None:
        """Swaps the pipeline settings, restarting if currently running."""
        was_running = self._running
        if was_running:
            await self.stop()
        self.config = config
        self.processor = self._make_processor()
        self.aggregator = self._make_aggregator()
        if was_running:
            await self.start()

    async def sync_now(self) -> SyncResult:
        """Synchronizes every pending content file once, outside the aggregator.

        Works whether or not background watching is active. Files currently
        handled by a background batch are skipped.

        Returns:
            SyncResult: The outcome; failures are reported, not raised.
        """
        if self._disposed:
            raise DisposedError("SyncOrchestrator")

        start = time.monotonic()
        try:
            status = await resilient(
                self.retry, self.breaker, self.git.status, "git status"
            )()
            candidates = [
                p
                for p in dict.fromkeys([*status.modified, *status.untracked, *status.staged])
                if self.processor.is_content_file(p)
            ]
            if not candidates:
                return SyncResult(success=True)

            claimed = await self.processing.claim(candidates)
            busy = [p for p in candidates if p not in claimed]
            result = await self.processor.process(claimed, skipped=busy)
        except Exception as e:
            logger.error(f"SYNC NOW FAILED {self.root.name}: {e}")
            self._set_status(error_count=self._status.error_count + 1)
            return SyncResult(success=False, errors=(str(e),))

        self._record(result)
        sync_result = SyncResult(
            success=not result.errors,
            processed_files=result.processed_files,
            errors=result.error_messages,
        )
        await self._publish(
            Event(
                EventKind.SYNC_COMPLETED,
                SyncCompletedPayload(sync_result.processed_files, sync_result.errors),
            )
        )
        logger.info(
            f"SYNC NOW {self.root.name}: processed={len(result.processed_files)} "
            f"errors={len(result.errors)} in {time.monotonic() - start:.2f}s"
        )
        return sync_result

    def get_status(self) -> SyncStatus:
        """Returns an immutable snapshot of the current status."""
        return self._status

    async def dispose(self) -> None:
        """Stops the pipeline and disposes the resilience components it owns."""
        if self._disposed:
            return
        await self.stop()
        self._disposed = True
        await self.breaker.dispose()
        self.retry.dispose()

    # --- Pipeline ---

    async def _pump_changes(self) -> None:
        try:
            async for event in self.source.changes():
                if not self._running:
                    break
                self.aggregator.submit(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"CHANGE SOURCE ERROR {self.root.name}: {e}")
            await self._publish(
                Event(EventKind.SYNC_FAILED, SyncFailedPayload(str(e), 0, critical=False))
            )

    async def _batch_worker(
        self,
        batches: asyncio.Queue[list[FileChangeEvent] | None],
        previous: asyncio.Task | None = None,
    ) -> None:
        """Consumes one run's batches in order.

        Args:
            batches (asyncio.Queue): The hand-off queue of the run that
                created this worker.
            previous (asyncio.Task | None): A worker from an earlier run still
                finishing its last batch after a drain timeout.
        """
        aggregator = self.aggregator
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        while True:
            batch = await batches.get()
            if batch is None:
                return
            await self._run_batch(batch)
            if self._parked:
                # Parked after a critical failure; hand back unprocessed claims.
                if leftover := aggregator.discard_queued():
                    await self.processing.release(leftover)
                    logger.info(f"DISCARDED {len(leftover)} queued path(s)")
                return

    async def _run_batch(self, batch: list[FileChangeEvent]) -> None:
        batch_id = str(uuid.uuid4())
        paths = [e.path for e in batch]
        await self._publish(
            Event(EventKind.SYNC_BATCH_STARTED, BatchStartedPayload(batch_id, len(paths)))
        )
        logger.debug(f"BATCH {batch_id}: {len(paths)} file(s)")

        try:
            result = await self.processor.process(paths, batch_id=batch_id)
        except Exception as e:
            await self._batch_failed(batch_id, e)
            return

        self._record(result)
        self._set_status(consecutive_failures=0)
        await self._publish(
            Event(
                EventKind.SYNC_BATCH_COMPLETED,
                BatchCompletedPayload(
                    batch_id,
                    len(result.processed_files),
                    len(result.skipped_files),
                    result.error_messages,
                    result.total_time,
                ),
            )
        )
        logger.info(
            f"BATCH {batch_id}: processed={len(result.processed_files)} "
            f"skipped={len(result.skipped_files)} errors={len(result.errors)} "
            f"in {result.total_time:.2f}s"
        )

    async def _batch_failed(self, batch_id: str, error: Exception) -> None:
        failures = self._status.consecutive_failures + 1
        self._set_status(
            consecutive_failures=failures, error_count=self._status.error_count + 1
        )
        logger.error(f"BATCH FAILED {batch_id} ({failures} in a row): {error}")
        await self._publish(
            Event(
                EventKind.SYNC_BATCH_FAILED,
                BatchFailedPayload(batch_id, str(error), failures),
            )
        )
        if failures >= self.config.max_consecutive_failures and self._running:
            await self._critical_shutdown(error, failures)

    async def _critical_shutdown(self, error: Exception, failures: int) -> None:
        self._parked = True
        logger.critical(
            f"CRITICAL {self.root.name}: {failures} consecutive batch failures; "
            "stopping until restarted"
        )
        await self._halt(from_worker=True)
        await self._publish(
            Event(EventKind.SYNC_FAILED, SyncFailedPayload(str(error), failures, critical=True))
        )

    async def _halt(self, from_worker: bool = False) -> tuple[str, ...]:
        """Flips to stopped, cancels timers and the source, and drains.

        Returns:
            tuple[str, ...]: Paths still in flight after the drain timeout.
        """
        self._running = False

        if self._source_task is not None:
            self._source_task.cancel()
            try:
                await self._source_task
            except asyncio.CancelledError:
                pass
            self._source_task = None

        await self.aggregator.close()
        await self.breaker.stop_monitoring()

        worker, self._worker_task = self._worker_task, None
        if worker is not None and not from_worker:
            done, _ = await asyncio.wait({worker}, timeout=self.config.drain_timeout)
            if not done:
                self._lingering_task = worker
                logger.warning(
                    f"DRAIN TIMEOUT {self.root.name}: still processing "
                    f"{', '.join(self.processing.snapshot()) or 'commit'}"
                )

        in_flight = self.processing.snapshot()
        self._set_status(is_running=False)
        return in_flight

    # --- Helpers ---

    def _make_processor(self) -> BatchProcessor:
        return BatchProcessor(
            root=self.root,
            git=self.git,
            normalizer=self.normalizer,
            retry=self.retry,
            breaker=self.breaker,
            processing=self.processing,
            options=self.config.processor,
            bus=self.bus,
            git_lock=self._git_lock,
        )

    def _make_aggregator(self) -> ChangeAggregator:
        return ChangeAggregator(
            self.processing,
            debounce=self.config.debounce,
            batch_window=self.config.batch_window,
            max_batch_size=self.config.max_batch_size,
        )

    def _record(self, result: BatchProcessingResult) -> None:
        self._set_status(
            last_sync=_now(),
            total_processed=self._status.total_processed + len(result.processed_files),
            error_count=self._status.error_count + len(result.errors),
        )

    def _set_status(self, **changes: object) -> None:
        self._status = dataclasses.replace(self._status, **changes)

    async def _publish(self, event: Event) -> None:
        if not self.bus.disposed:
            await self.bus.publish(event)


class SyncOrchestratorBuilder:
    """Fluent construction of a `SyncOrchestrator` with eager validation.

    Usage:
        orchestrator = (
            SyncOrchestratorBuilder(root)
            .with_git(client)
            .with_normalizer(normalize_front_matter)
            .with_source(watcher)
            .with_bus(bus)
            .build()
        )
    """

    def __init__(self, root: Path):
        self._root = root
        self._git: GitClient | None = None
        self._normalizer: Normalizer | None = None
        self._source: ChangeSource | None = None
        self._bus: EventBus | None = None
        self._config = SyncConfig()
        self._retry_options = RetryOptions()
        self._circuit_config = CircuitBreakerConfig()

    def with_git(self, git: GitClient) -> "SyncOrchestratorBuilder":
        self._git = git
        return self

    def with_normalizer(self, normalizer: Normalizer) -> "SyncOrchestratorBuilder":
        self._normalizer = normalizer
        return self

    def with_source(self, source: ChangeSource) -> "SyncOrchestratorBuilder":
        self._source = source
        return self

    def with_bus(self, bus: EventBus) -> "SyncOrchestratorBuilder":
        self._bus = bus
        return self

    def with_config(self, config: SyncConfig) -> "SyncOrchestratorBuilder":
        self._config = config
        return self

    def with_retry(self, options: RetryOptions) -> "SyncOrchestratorBuilder":
        self._retry_options = options
        return self

    def with_circuit_breaker(self, config: CircuitBreakerConfig) -> "SyncOrchestratorBuilder":
        self._circuit_config = config
        return self

    def build(self) -> SyncOrchestrator:
        """Creates the orchestrator.

        Raises:
            ConfigError: If a required collaborator is missing.
        """
        missing = [
            name
            for name, value in (
                ("git", self._git),
                ("normalizer", self._normalizer),
                ("source", self._source),
            )
            if value is None
        ]
        if missing:
            raise ConfigError(f"SyncOrchestratorBuilder is missing: {', '.join(missing)}")
        if not self._config.processor.extensions:
            raise ConfigError("sync.extensions must not be empty")

        return SyncOrchestrator(
            root=self._root,
            git=self._git,
            normalizer=self._normalizer,
            source=self._source,
            bus=self._bus or EventBus(),
            config=self._config,
            retry=RetryPolicy(self._retry_options),
            breaker=CircuitBreaker(self._circuit_config, name=self._root.name or "git"),
        )
