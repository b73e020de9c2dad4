import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console

from .config import Config
from .constants import APP_NAME, LOG_FILE, STATE_DIR
from .events import Event, EventBus, EventKind
from .frontmatter import normalize_front_matter
from .git_wrapper import AsyncGitClient
from .orchestrator import (
    ChangeSource,
    SyncOrchestrator,
    SyncOrchestratorBuilder,
    SyncResult,
)
from .watcher import PollingWatcher

logger = logging.getLogger(APP_NAME)
logger.setLevel(logging.INFO)

err_console = Console(stderr=True)


def setup_logging(interactive: bool, max_log_size: int = 5 * 1024 * 1024) -> None:
    """Configures the logging subsystem.

    Args:
        interactive (bool): If True, logs to stdout. If False, logs to stderr and
                            to a rotating file under the state directory.
        max_log_size (int): Bytes per log file before rotation.
    """
    if logger.handlers:
        return

    formatter = logging.Formatter(
        "[%(asctime)s] %(levelname)s: %(message)s", "%Y-%m-%d %H:%M:%S"
    )

    stream_handler = logging.StreamHandler(
        sys.stderr if not interactive else sys.stdout
    )
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not interactive:
        try:
            STATE_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                LOG_FILE,
                maxBytes=max_log_size,
                backupCount=5,
            )
        except OSError as e:
            logger.warning(f"Could not open log file {LOG_FILE}: {e}")
            return
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def log_events(bus: EventBus) -> None:
    """Mirrors noteworthy bus events into the log."""

    def _failed(event: Event) -> None:
        p = event.payload
        if p.critical:
            logger.critical(
                f"SYNC HALTED after {p.consecutive_failures} failed batches: {p.error}. "
                "Run 'hexo-sync watch' again once the repository is fixed."
            )
        else:
            logger.error(f"SYNC FAILED: {p.error}")

    def _git_error(event: Event) -> None:
        p = event.payload
        logger.warning(f"GIT {p.operation.upper()} FAILED ({p.batch_id}): {p.error}")

    def _system_error(event: Event) -> None:
        logger.error(f"SUBSCRIBER ERROR on {event.payload.original.kind}: {event.payload.error}")

    bus.subscribe(EventKind.SYNC_FAILED, _failed)
    bus.subscribe(EventKind.GIT_ERROR, _git_error)
    bus.subscribe(EventKind.SYSTEM_ERROR, _system_error)


def build_orchestrator(
    root: Path,
    config: Config,
    bus: EventBus | None = None,
    source: ChangeSource | None = None,
) -> SyncOrchestrator:
    """Assembles an orchestrator for a repository from its configuration.

    Args:
        root (Path): The repository root.
        config (Config): The merged configuration.
        bus (EventBus | None): The bus to publish on; a new one when omitted.
        source (ChangeSource | None): The change source; a `PollingWatcher`
            over the configured watch paths when omitted.

    Returns:
        SyncOrchestrator: A stopped orchestrator.
    """
    sync = config.sync
    if source is None:
        source = PollingWatcher(
            root,
            watch_paths=sync.watch_paths,
            extensions=sync.extensions,
            interval=sync.poll_interval,
        )
    return (
        SyncOrchestratorBuilder(root)
        .with_git(AsyncGitClient(root, remote_name=config.git.remote_name))
        .with_normalizer(normalize_front_matter)
        .with_source(source)
        .with_bus(bus or EventBus(max_history=config.limits.history_size))
        .with_config(config.sync_config())
        .with_retry(config.retry_options())
        .with_circuit_breaker(config.circuit_config())
        .build()
    )


async def run(root: Path, config: Config) -> None:
    """Watches a repository until SIGINT/SIGTERM or a critical failure.

    Args:
        root (Path): The repository root.
        config (Config): The merged configuration.
    """
    bus = EventBus(max_history=config.limits.history_size)
    log_events(bus)
    orchestrator = build_orchestrator(root, config, bus)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl+C still raises KeyboardInterrupt.
            logger.debug(f"Signal handler for {sig!r} unavailable")

    bus.subscribe(
        EventKind.SYNC_FAILED, lambda e: stop.set() if e.payload.critical else None
    )

    await orchestrator.start()
    try:
        await stop.wait()
    finally:
        await orchestrator.dispose()
        await bus.dispose()


async def run_once(root: Path, config: Config) -> SyncResult:
    """Synchronizes pending content files once without watching."""
    bus = EventBus(max_history=config.limits.history_size)
    log_events(bus)
    orchestrator = build_orchestrator(root, config, bus)
    try:
        return await orchestrator.sync_now()
    finally:
        await orchestrator.dispose()
        await bus.dispose()


def main(root: Path | None = None, interactive: bool = False) -> None:
    """Runs the watch loop for a repository.

    Args:
        root (Path | None): The repository root. Defaults to the working directory.
        interactive (bool, optional): Log to stdout instead of the log file.
    """
    root = (root or Path.cwd()).resolve()
    config = Config.load(root)
    setup_logging(interactive, config.limits.max_log_size)

    try:
        asyncio.run(run(root, config))
    except KeyboardInterrupt:
        logger.info("Interrupted.")
    except Exception as e:
        logger.critical(f"CRITICAL {root.name}: {e}")
        err_console.print(f"[bold red]FATAL:[/bold red] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
