"""Shared fakes for the synchronization pipeline tests."""

from pathlib import Path
from typing import Any

import pytest

from hexo_sync.aggregator import ProcessingSet
from hexo_sync.config import Config
from hexo_sync.events import EventBus
from hexo_sync.frontmatter import NormalizationResult
from hexo_sync.git_wrapper import GitStatus
from hexo_sync.processor import BatchProcessor, ProcessorOptions
from hexo_sync.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    RetryOptions,
    RetryPolicy,
)


class FakeGitClient:
    """An in-memory stand-in for `AsyncGitClient`.

    `dirty` holds working-tree changes, `removed` deleted tracked files and
    `staged` the index. Setting an entry in `errors` makes that operation
    raise on every call until removed.
    """

    def __init__(self) -> None:
        self.repository = True
        self.branch = "main"
        self.dirty: set[str] = set()
        self.untracked: set[str] = set()
        self.removed: set[str] = set()
        self.staged: list[str] = []
        self.commits: list[str] = []
        self.pushes = 0
        self.errors: dict[str, BaseException] = {}
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.errors:
            raise self.errors[name]

    async def is_repository(self) -> bool:
        self._call("is_repository")
        return self.repository

    async def current_branch(self) -> str:
        self._call("current_branch")
        return self.branch

    async def status(self) -> GitStatus:
        self._call("status")
        return GitStatus(
            staged=list(self.staged),
            modified=sorted(self.dirty - set(self.staged)),
            deleted=sorted(self.removed),
            untracked=sorted(self.untracked - set(self.staged)),
        )

    async def add(self, paths: list[str]) -> None:
        self._call("add")
        for path in paths:
            if path not in self.staged:
                self.staged.append(path)

    async def commit(self, message: str) -> bool:
        self._call("commit")
        if not self.staged:
            return False
        self.commits.append(message)
        self.dirty.difference_update(self.staged)
        self.untracked.difference_update(self.staged)
        self.removed.difference_update(self.staged)
        self.staged.clear()
        return True

    async def push(self) -> None:
        self._call("push")
        self.pushes += 1

    async def pull(self) -> None:
        self._call("pull")


def stamping_normalizer(raw: str, file_path: str, options: Any) -> NormalizationResult:
    """Prepends a marker once, so a second pass leaves the file alone."""
    if raw.startswith("<!-- synced -->"):
        return NormalizationResult(raw, False)
    return NormalizationResult("<!-- synced -->\n" + raw, True)


async def _no_sleep(_delay: float) -> None:
    return None


def make_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        RetryOptions(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=False),
        sleep=_no_sleep,
    )


def write_posts(root: Path, names: list[str], body: str = "Hello\n") -> list[str]:
    """Creates post files under `source/_posts` and returns their relative paths."""
    posts = root / "source" / "_posts"
    posts.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        (posts / name).write_text(body, encoding="utf-8")
        paths.append(f"source/_posts/{name}")
    return paths


@pytest.fixture(autouse=True)
def clear_config_cache() -> Any:
    """Ensures every test starts with a clean config cache."""
    Config._global_cache = None
    yield
    Config._global_cache = None


@pytest.fixture
def git() -> FakeGitClient:
    return FakeGitClient()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def make_processor(tmp_path: Path, git: FakeGitClient, bus: EventBus) -> Any:
    """Factory for a `BatchProcessor` over `tmp_path` with instant retries."""

    def _make(normalizer: Any = stamping_normalizer, **options: Any) -> BatchProcessor:
        return BatchProcessor(
            root=tmp_path,
            git=git,
            normalizer=normalizer,
            retry=make_retry(),
            breaker=CircuitBreaker(CircuitBreakerConfig(failure_threshold=100)),
            processing=ProcessingSet(),
            options=ProcessorOptions(**options),
            bus=bus,
        )

    return _make
