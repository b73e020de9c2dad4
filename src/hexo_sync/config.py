import logging
import re
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .constants import (
    APP_NAME,
    CONFIG_FILE,
    DEFAULT_EXTENSIONS,
    DEFAULT_WATCH_PATHS,
    LOCAL_CONFIG_NAME,
    PYPROJECT_SECTION,
)
from .frontmatter import NormalizeOptions
from .orchestrator import SyncConfig
from .processor import ProcessorOptions
from .resilience import CircuitBreakerConfig, RetryOptions

logger = logging.getLogger(APP_NAME)

SIZE_KEYS = {"max_log_size"}
TIME_KEYS = {
    "batch_window",
    "debounce",
    "drain_timeout",
    "poll_interval",
    "base_delay",
    "max_delay",
    "recovery_time",
    "monitoring_window",
}


def parse_size(value: int | str) -> int:
    """Converts human-readable size strings (e.g., '100MB') to bytes."""
    if isinstance(value, int):
        return value
    match = re.match(r"^(\d+(?:\.\d+)?)\s*([kmg]b?)$", str(value).strip().lower())
    if not match:
        raise ValueError(f"Invalid size format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "k": 1024,
        "kb": 1024,
        "m": 1024**2,
        "mb": 1024**2,
        "g": 1024**3,
        "gb": 1024**3,
    }
    return int(num * multiplier[unit])


def parse_time(value: int | float | str) -> float:
    """Converts human-readable time strings (e.g., '300ms', '2s', '5m') to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid time format '{value}'")
    if isinstance(value, (int, float)):
        return float(value)
    match = re.match(
        r"^(\d+(?:\.\d+)?)\s*(ms|s|sec|m|min|h|hr)s?$", str(value).strip().lower()
    )
    if not match:
        raise ValueError(f"Invalid time format '{value}'")
    num, unit = float(match.group(1)), match.group(2)
    multiplier = {
        "ms": 0.001,
        "s": 1,
        "sec": 1,
        "m": 60,
        "min": 60,
        "h": 3600,
        "hr": 3600,
    }
    return num * multiplier[unit]


@dataclass
class SyncSection:
    """Change aggregation and pipeline settings.

    Attributes:
        batch_window (float): Seconds per aggregation window.
        debounce (float): Per-path quiet period in seconds.
        max_batch_size (int): Paths per batch.
        max_consecutive_failures (int): Failed batches in a row before shutdown.
        drain_timeout (float): Seconds `stop` waits for in-flight files.
        poll_interval (float): Seconds between scans of the polling watcher.
        max_concurrency (int): Files normalized at the same time.
        extensions (list[str]): Suffixes of content files.
        watch_paths (list[str]): Repository-relative watched directories.
    """

    batch_window: float = 2.0
    debounce: float = 0.3
    max_batch_size: int = 50
    max_consecutive_failures: int = 5
    drain_timeout: float = 30.0
    poll_interval: float = 1.0
    max_concurrency: int = 4
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    watch_paths: list[str] = field(default_factory=lambda: list(DEFAULT_WATCH_PATHS))


@dataclass
class RetrySection:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True


@dataclass
class CircuitSection:
    failure_threshold: int = 5
    recovery_time: float = 60.0
    half_open_max_calls: int = 3
    monitoring_window: float = 300.0


@dataclass
class GitSection:
    """Commit and push behavior.

    Attributes:
        auto_commit (bool): Commit each batch's processed files.
        auto_push (bool): Push after every commit.
        remote_name (str): The git remote to push to.
        commit_template (str): Message with `{count}`, `{files}` and
            `{timestamp}` placeholders.
    """

    auto_commit: bool = True
    auto_push: bool = False
    remote_name: str = "origin"
    commit_template: str = "Update posts: {count} files changed ({files})"


@dataclass
class FrontMatterSection:
    auto_add_date: bool = True
    date_format: str = "%Y-%m-%d %H:%M:%S"
    required_fields: list[str] = field(default_factory=lambda: ["title"])
    validate: bool = True


@dataclass
class LimitsSection:
    """Resource limitation settings.

    Attributes:
        max_log_size (int): Max bytes for log files before rotation.
        history_size (int): Events kept in the bus history.
    """

    max_log_size: int = 5 * 1024 * 1024
    history_size: int = 1000


@dataclass
class Config:
    """Global configuration aggregator.

    Attributes:
        sync (SyncSection): Pipeline settings.
        retry (RetrySection): Backoff settings for git calls and file work.
        circuit (CircuitSection): Circuit breaker thresholds for git calls.
        git (GitSection): Commit and push behavior.
        front_matter (FrontMatterSection): Content normalization rules.
        limits (LimitsSection): Resource limits.
    """

    sync: SyncSection = field(default_factory=SyncSection)
    retry: RetrySection = field(default_factory=RetrySection)
    circuit: CircuitSection = field(default_factory=CircuitSection)
    git: GitSection = field(default_factory=GitSection)
    front_matter: FrontMatterSection = field(default_factory=FrontMatterSection)
    limits: LimitsSection = field(default_factory=LimitsSection)

    # Cache for the base global configuration
    _global_cache: "Config | None" = None

    @classmethod
    def load(cls, repo_path: Path | None = None) -> "Config":
        """Loads and merges configuration from defaults, global, and local sources.

        Args:
            repo_path (Path | None): The repository root to search for local config.

        Returns:
            Config: The fully merged configuration object.
        """
        if cls._global_cache is None:
            instance = cls()
            if CONFIG_FILE.exists():
                instance._merge_from_file(CONFIG_FILE)
            cls._global_cache = instance

        instance = replace(cls._global_cache)

        if repo_path:
            local_toml = repo_path / LOCAL_CONFIG_NAME
            pyproject = repo_path / "pyproject.toml"

            if local_toml.exists():
                instance._merge_from_file(local_toml)
            elif pyproject.exists():
                instance._merge_from_file(pyproject, section=PYPROJECT_SECTION)

        return instance

    def _merge_from_file(self, path: Path, section: str | None = None) -> None:
        """Parses a TOML file and merges it into the current instance.

        Args:
            path (Path): Path to the TOML file.
            section (str | None): Dot-separated section path (e.g., 'tool.hexo-sync').
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            if section:
                for key in section.split("."):
                    data = data.get(key, {})

            if not data:
                return

            for name in ("sync", "retry", "circuit", "git", "front_matter", "limits"):
                if name in data:
                    setattr(
                        self,
                        name,
                        self._update_dataclass(name, getattr(self, name), data[name]),
                    )

        except tomllib.TOMLDecodeError as e:
            logger.error(f"Config syntax error in {path}: {e}")
        except Exception as e:
            logger.warning(f"Failed to load config from {path}: {e}")

    @staticmethod
    def _update_dataclass(section_name: str, instance: Any, updates: dict) -> Any:
        """Updates a dataclass, warning on invalid keys and parsing human-readable formats."""
        valid_keys = instance.__dataclass_fields__.keys()
        filtered_updates = {}

        invalid_keys = set(updates.keys()) - set(valid_keys)
        if invalid_keys:
            logger.warning(
                f"Unknown config keys in [{section_name}]: {', '.join(sorted(invalid_keys))}. Ignoring."
            )

        for k, v in updates.items():
            if k not in valid_keys:
                continue

            try:
                if k in SIZE_KEYS:
                    filtered_updates[k] = parse_size(v)
                elif k in TIME_KEYS:
                    filtered_updates[k] = parse_time(v)
                else:
                    filtered_updates[k] = v
            except ValueError as e:
                logger.warning(
                    f"Config error in [{section_name}].{k}: {e}. Falling back to default."
                )

        return replace(instance, **filtered_updates)

    # --- Component settings ---

    def retry_options(self) -> RetryOptions:
        r = self.retry
        return RetryOptions(
            max_attempts=r.max_attempts,
            base_delay=r.base_delay,
            max_delay=r.max_delay,
            exponential_base=r.exponential_base,
            jitter=r.jitter,
        )

    def circuit_config(self) -> CircuitBreakerConfig:
        c = self.circuit
        return CircuitBreakerConfig(
            failure_threshold=c.failure_threshold,
            recovery_time=c.recovery_time,
            half_open_max_calls=c.half_open_max_calls,
            monitoring_window=c.monitoring_window,
        )

    def normalize_options(self) -> NormalizeOptions:
        fm = self.front_matter
        return NormalizeOptions(
            auto_add_date=fm.auto_add_date,
            date_format=fm.date_format,
            required_fields=tuple(fm.required_fields),
            validate=fm.validate,
        )

    def sync_config(self) -> SyncConfig:
        """Builds the orchestrator settings.

        Raises:
            ConfigError: If a value is out of range.
        """
        s = self.sync
        return SyncConfig(
            batch_window=s.batch_window,
            debounce=s.debounce,
            max_batch_size=s.max_batch_size,
            max_consecutive_failures=s.max_consecutive_failures,
            drain_timeout=s.drain_timeout,
            watch_paths=tuple(s.watch_paths),
            processor=ProcessorOptions(
                auto_commit=self.git.auto_commit,
                auto_push=self.git.auto_push,
                commit_template=self.git.commit_template,
                extensions=tuple(s.extensions),
                max_concurrency=s.max_concurrency,
                normalize_options=self.normalize_options(),
            ),
        )
