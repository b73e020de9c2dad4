"""Tests for the daemon host: logging, wiring and the watch loop."""

import logging
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from conftest import FakeGitClient

from hexo_sync import daemon
from hexo_sync.config import Config
from hexo_sync.events import Event, EventBus, EventKind, GitErrorPayload, SyncFailedPayload
from hexo_sync.orchestrator import SyncResult
from hexo_sync.watcher import PollingWatcher, QueueChangeSource


@pytest.fixture
def clean_logger() -> Any:
    """Restores the application logger's handlers after the test."""
    saved = list(daemon.logger.handlers)
    daemon.logger.handlers.clear()
    yield daemon.logger
    for handler in daemon.logger.handlers:
        handler.close()
    daemon.logger.handlers[:] = saved


def test_setup_logging_daemon_mode_writes_rotating_file(
    tmp_path: Path, mocker: MagicMock, clean_logger: logging.Logger
) -> None:
    """Verifies that daemon mode creates the state directory and a rotating log."""
    state_dir = tmp_path / "state"
    mocker.patch("hexo_sync.daemon.STATE_DIR", state_dir)
    mocker.patch("hexo_sync.daemon.LOG_FILE", state_dir / "daemon.log")

    daemon.setup_logging(interactive=False, max_log_size=1024)

    assert state_dir.is_dir()
    kinds = {type(h).__name__ for h in clean_logger.handlers}
    assert kinds == {"StreamHandler", "RotatingFileHandler"}
    rotating = next(h for h in clean_logger.handlers if type(h).__name__ == "RotatingFileHandler")
    assert rotating.maxBytes == 1024

    # A second call does not stack handlers.
    daemon.setup_logging(interactive=False)
    assert len(clean_logger.handlers) == 2


def test_setup_logging_interactive_uses_stdout_only(clean_logger: logging.Logger) -> None:
    daemon.setup_logging(interactive=True)

    assert len(clean_logger.handlers) == 1


@pytest.mark.asyncio
async def test_log_events_mirrors_failures(caplog: pytest.LogCaptureFixture) -> None:
    """Verifies that failure events reach the log at the right level."""
    bus = EventBus()
    daemon.log_events(bus)

    await bus.publish(Event(EventKind.SYNC_FAILED, SyncFailedPayload("boom", 5, critical=True)))
    await bus.publish(Event(EventKind.GIT_ERROR, GitErrorPayload("b1", "push", "denied")))

    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert critical and "after 5 failed batches" in critical[0].getMessage()
    assert "GIT PUSH FAILED (b1): denied" in caplog.text


def test_build_orchestrator_applies_configuration(tmp_path: Path) -> None:
    """Verifies that the merged configuration reaches every component."""
    config = Config()
    config.sync.watch_paths = ["content"]
    config.sync.poll_interval = 0.5
    config.git.remote_name = "blog"
    config.circuit.failure_threshold = 7

    orchestrator = daemon.build_orchestrator(tmp_path, config)

    assert isinstance(orchestrator.source, PollingWatcher)
    assert orchestrator.source.watch_paths == ("content",)
    assert orchestrator.source.interval == 0.5
    assert orchestrator.git.remote_name == "blog"
    assert orchestrator.breaker.config.failure_threshold == 7
    assert orchestrator.config.watch_paths == ("content",)


@pytest.mark.asyncio
async def test_run_once_disposes_after_sync(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a one-off run returns the sync result and cleans up."""
    git = FakeGitClient()
    mocker.patch("hexo_sync.daemon.AsyncGitClient", return_value=git)

    result = await daemon.run_once(tmp_path, Config())

    assert isinstance(result, SyncResult)
    assert result.success
    assert "status" in git.calls


class CrashingOrchestrator:
    """Announces a critical shutdown as soon as it starts."""

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus
        self.disposed = False

    async def start(self) -> None:
        await self.bus.publish(
            Event(EventKind.SYNC_FAILED, SyncFailedPayload("stuck", 5, critical=True))
        )

    async def dispose(self) -> None:
        self.disposed = True


@pytest.mark.asyncio
async def test_run_returns_after_critical_shutdown(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that the watch loop ends, and cleans up, once the pipeline parks itself."""
    created: list[CrashingOrchestrator] = []

    def _build(root: Path, config: Config, bus: EventBus) -> CrashingOrchestrator:
        created.append(CrashingOrchestrator(bus))
        return created[0]

    mocker.patch("hexo_sync.daemon.build_orchestrator", side_effect=_build)

    await daemon.run(tmp_path, Config())

    assert created[0].disposed
    assert created[0].bus.disposed


def test_build_orchestrator_accepts_custom_source(tmp_path: Path) -> None:
    source = QueueChangeSource()

    orchestrator = daemon.build_orchestrator(tmp_path, Config(), source=source)

    assert orchestrator.source is source
