"""Per-batch content normalization, staging and commit."""

import asyncio
import datetime
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .aggregator import ProcessingSet
from .constants import APP_NAME, COMMIT_FILE_LIST_LIMIT, DEFAULT_EXTENSIONS
from .errors import (
    BatchFailedError,
    CircuitOpenError,
    ContentError,
    GitCommandError,
    RepositoryBusyError,
    RepositoryError,
    RetryExhaustedError,
)
from .events import (
    Event,
    EventBus,
    EventKind,
    GitCommitPayload,
    GitErrorPayload,
    GitPushPayload,
)
from .frontmatter import NormalizationResult, NormalizeOptions
from .git_wrapper import GitStatus
from .resilience import CircuitBreaker, RetryPolicy, is_transient, resilient

logger = logging.getLogger(APP_NAME)


class GitClient(Protocol):
    """The version-control operations the synchronizer relies on."""

    async def is_repository(self) -> bool: ...

    async def current_branch(self) -> str: ...

    async def status(self) -> GitStatus: ...

    async def add(self, paths: list[str]) -> None: ...

    async def commit(self, message: str) -> bool: ...

    async def push(self) -> None: ...

    async def pull(self) -> None: ...


Normalizer = Callable[[str, str, Any], NormalizationResult]
"""`(raw_content, file_path, options) -> NormalizationResult`, a pure function."""


@dataclass(frozen=True)
class ProcessorOptions:
    """Batch processing behavior.

    Attributes:
        auto_commit (bool): Commit the batch's processed files.
        auto_push (bool): Push after a successful commit.
        commit_template (str): Message template with `{count}`, `{files}`
            and `{timestamp}` placeholders.
        extensions (tuple[str, ...]): Suffixes of content files.
        max_concurrency (int): Files normalized at the same time.
        normalize_options (Any): Passed through to the normalizer.
    """

    auto_commit: bool = True
    auto_push: bool = False
    commit_template: str = "Update posts: {count} files changed ({files})"
    extensions: tuple[str, ...] = tuple(DEFAULT_EXTENSIONS)
    max_concurrency: int = 4
    normalize_options: Any = field(default_factory=NormalizeOptions)


SYSTEMIC_ERRORS = (
    GitCommandError,
    RepositoryError,
    RepositoryBusyError,
    CircuitOpenError,
    RetryExhaustedError,
)
"""Per-file failures that point at the repository, not at the content."""


@dataclass(frozen=True)
class BatchError:
    file: str
    error: BaseException

    @property
    def message(self) -> str:
        return f"{self.file}: {self.error}"

    @property
    def systemic(self) -> bool:
        return isinstance(self.error, SYSTEMIC_ERRORS)


@dataclass(frozen=True)
class BatchProcessingResult:
    """The outcome of one batch.

    Attributes:
        batch_id (str): Unique id of the batch.
        processed_files (tuple[str, ...]): Files rewritten or staged.
        skipped_files (tuple[str, ...]): Files needing no work, in flight
            elsewhere, or not content files.
        errors (tuple[BatchError, ...]): Per-file failures.
        total_time (float): Seconds spent on the batch.
        timestamp (datetime.datetime): Completion time (UTC).
        committed (bool): Whether a commit was created.
        pushed (bool): Whether the commit was pushed.
        push_error (str | None): Push failure, which leaves the commit in place.
    """

    batch_id: str
    processed_files: tuple[str, ...] = ()
    skipped_files: tuple[str, ...] = ()
    errors: tuple[BatchError, ...] = ()
    total_time: float = 0.0
    timestamp: datetime.datetime = field(
        default_factory=lambda: datetime.datetime.now(datetime.timezone.utc)
    )
    committed: bool = False
    pushed: bool = False
    push_error: str | None = None

    @property
    def error_messages(self) -> tuple[str, ...]:
        return tuple(e.message for e in self.errors)


def render_commit_message(
    template: str, files: Sequence[str], now: datetime.datetime | None = None
) -> str:
    """Fills a commit message template.

    Args:
        template (str): Text with `{count}`, `{files}` and `{timestamp}` placeholders.
        files (Sequence[str]): The committed paths.
        now (datetime.datetime | None): Timestamp for `{timestamp}`.

    Returns:
        str: The rendered message.
    """
    count = len(files)
    names = ", ".join(Path(f).name for f in files[:COMMIT_FILE_LIST_LIMIT])
    if count > COMMIT_FILE_LIST_LIMIT:
        names += f" and {count - COMMIT_FILE_LIST_LIMIT} more"
    stamp = (now or datetime.datetime.now(datetime.timezone.utc)).isoformat()
    return (
        template.replace("{count}", str(count))
        .replace("{files}", names)
        .replace("{timestamp}", stamp)
    )


class BatchProcessor:
    """Reads, normalizes, rewrites and stages a set of files, then commits them once.

    One file failing never fails the batch: its error is recorded and the rest
    carry on. Every git call goes through the circuit breaker and the retry
    policy, and git mutations are serialized on `git_lock`.

    Attributes:
        root (Path): The repository root that relative paths resolve against.
        options (ProcessorOptions): Commit/push flags and file selection.
    """

    def __init__(
        self,
        root: Path,
        git: GitClient,
        normalizer: Normalizer,
        retry: RetryPolicy,
        breaker: CircuitBreaker,
        processing: ProcessingSet,
        options: ProcessorOptions | None = None,
        bus: EventBus | None = None,
        git_lock: asyncio.Lock | None = None,
    ):
        self.root = root
        self.git = git
        self.normalizer = normalizer
        self.retry = retry
        self.breaker = breaker
        self.processing = processing
        self.options = options or ProcessorOptions()
        self.bus = bus
        self.git_lock = git_lock or asyncio.Lock()

    async def process(
        self,
        paths: Sequence[str],
        batch_id: str | None = None,
        skipped: Sequence[str] = (),
    ) -> BatchProcessingResult:
        """Processes already-claimed paths and releases each one when done.

        Args:
            paths (Sequence[str]): Repository-relative paths owned by the caller
                in the `ProcessingSet`.
            batch_id (str | None): Id to report; generated when omitted.
            skipped (Sequence[str]): Paths the caller already decided to skip.

        Returns:
            BatchProcessingResult: Per-file outcomes plus commit/push state.

        Raises:
            BatchFailedError: If every file failed and at least one failure came
                from git rather than from the file's content.
            RetryExhaustedError | CircuitOpenError: If the status lookup or the
                commit fails.
        """
        batch_id = batch_id or str(uuid.uuid4())
        start = time.monotonic()
        paths = list(dict.fromkeys(paths))
        skipped_files = list(skipped)

        try:
            status = await self._git("status", self.git.status)
        except BaseException:
            await self.processing.release(paths)
            raise
        pending = status.pending

        semaphore = asyncio.Semaphore(max(1, self.options.max_concurrency))

        async def _one(path: str) -> tuple[str, bool | BaseException]:
            async with semaphore:
                try:
                    return path, await self._process_file(path, pending)
                except Exception as e:
                    logger.error(f"FILE ERROR {path}: {e}")
                    return path, e
                finally:
                    await self.processing.release([path])

        outcomes = await asyncio.gather(*(_one(p) for p in paths))

        processed: list[str] = []
        errors: list[BatchError] = []
        for path, outcome in outcomes:
            if isinstance(outcome, BaseException):
                errors.append(BatchError(path, outcome))
            elif outcome:
                processed.append(path)
            else:
                skipped_files.append(path)

        if len(errors) == len(paths) and any(e.systemic for e in errors):
            raise BatchFailedError(
                batch_id, f"all {len(paths)} file(s) failed: {errors[0].message}"
            )

        committed = pushed = False
        push_error = None
        if processed and self.options.auto_commit:
            committed = await self._commit(batch_id, processed)
            if committed and self.options.auto_push:
                push_error = await self._push(batch_id)
                pushed = push_error is None

        return BatchProcessingResult(
            batch_id=batch_id,
            processed_files=tuple(processed),
            skipped_files=tuple(skipped_files),
            errors=tuple(errors),
            total_time=time.monotonic() - start,
            committed=committed,
            pushed=pushed,
            push_error=push_error,
        )

    def is_content_file(self, path: str) -> bool:
        return path.lower().endswith(tuple(e.lower() for e in self.options.extensions))

    async def _process_file(self, path: str, pending: set[str]) -> bool:
        """Returns True if the file was rewritten or staged."""
        if not self.is_content_file(path):
            return False

        # Survives retries so a rewrite whose staging failed is staged later.
        wrote = False

        async def _attempt() -> bool:
            nonlocal wrote
            target = self.root / path
            if not await asyncio.to_thread(target.exists):
                # Vanished files are staged as removals, once.
                if path not in pending:
                    return False
                await self._stage(path)
                return True

            raw = await asyncio.to_thread(target.read_text, encoding="utf-8")
            result = self.normalizer(raw, path, self.options.normalize_options)
            if result.errors:
                raise ContentError(path, result.errors)
            for warning in result.warnings:
                logger.debug(f"NORMALIZE {path}: {warning}")

            if result.modified and result.content != raw:
                await asyncio.to_thread(target.write_text, result.content, encoding="utf-8")
                wrote = True
            if not wrote and path not in pending:
                return False

            await self._stage(path)
            return True

        return await self.retry.execute_with_custom_retry(
            _attempt, is_transient, f"process {path}"
        )

    async def _stage(self, path: str) -> None:
        async with self.git_lock:
            await self.breaker.execute(lambda: self.git.add([path]))

    async def _commit(self, batch_id: str, files: list[str]) -> bool:
        message = render_commit_message(self.options.commit_template, files)
        try:
            async with self.git_lock:
                committed = await self._git("commit", lambda: self.git.commit(message))
        except Exception as e:
            await self._announce(
                Event(EventKind.GIT_ERROR, GitErrorPayload(batch_id, "commit", str(e)))
            )
            raise

        if committed:
            logger.info(f"COMMIT {batch_id}: {len(files)} file(s)")
            await self._announce(
                Event(EventKind.GIT_COMMIT, GitCommitPayload(batch_id, message, len(files)))
            )
        return committed

    async def _push(self, batch_id: str) -> str | None:
        try:
            async with self.git_lock:
                await self._git("push", self.git.push)
        except Exception as e:
            logger.error(f"PUSH ERROR {batch_id}: {e}")
            await self._announce(
                Event(EventKind.GIT_ERROR, GitErrorPayload(batch_id, "push", str(e)))
            )
            return str(e)

        logger.info(f"PUSH {batch_id}: pushed")
        await self._announce(Event(EventKind.GIT_PUSH, GitPushPayload(batch_id)))
        return None

    async def _git(self, context: str, operation: Callable[[], Any]) -> Any:
        return await resilient(self.retry, self.breaker, operation, f"git {context}")()

    async def _announce(self, event: Event) -> None:
        if self.bus is not None and not self.bus.disposed:
            await self.bus.publish(event)
