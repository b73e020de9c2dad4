"""Exception taxonomy shared by every Hexo Sync component."""


class HexoSyncError(Exception):
    """Base class for all application errors."""


class ConfigError(HexoSyncError, ValueError):
    """Raised when a configuration value is out of range or missing."""


class DisposedError(HexoSyncError):
    """Raised when a disposed component is used again."""

    def __init__(self, component: str):
        self.component = component
        super().__init__(f"{component} is disposed")


class CircuitOpenError(HexoSyncError):
    """Raised when a circuit breaker rejects a call without invoking it."""

    def __init__(self, circuit_name: str, cooldown_remaining: float):
        self.circuit_name = circuit_name
        self.cooldown_remaining = cooldown_remaining
        super().__init__(
            f"Circuit breaker '{circuit_name}' is open. "
            f"Retry in {cooldown_remaining:.1f}s"
        )


class RetryExhaustedError(HexoSyncError):
    """Raised when every retry attempt of an operation has failed.

    Attributes:
        context (str): A label describing the operation.
        attempts (int): The number of attempts made.
        last_error (BaseException): The failure of the final attempt.
    """

    def __init__(self, context: str, attempts: int, last_error: BaseException):
        self.context = context
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f'Operation "{context}" failed after {attempts} attempts. '
            f"Last error: {last_error}"
        )


class EventTimeoutError(HexoSyncError, TimeoutError):
    """Raised when an awaited event does not arrive in time."""

    def __init__(self, kind: str, timeout: float):
        self.kind = kind
        self.timeout = timeout
        super().__init__(f"Timeout waiting for event: {kind} ({timeout}s)")


class RepositoryError(HexoSyncError, ValueError):
    """Raised when the target directory is not a usable git repository."""


class RepositoryBusyError(HexoSyncError):
    """Raised when git is mid-merge, mid-rebase or holds an index lock."""


class GitCommandError(HexoSyncError, RuntimeError):
    """Raised when a git subprocess exits with a non-zero status.

    Attributes:
        args_list (list[str]): The git arguments that were executed.
        stderr (str): The captured standard error output.
    """

    TRANSIENT_MARKERS = (
        "could not resolve host",
        "connection",
        "timed out",
        "timeout",
        "network",
        "index.lock",
        "unable to access",
        "temporarily unavailable",
    )

    def __init__(self, args_list: list[str], stderr: str):
        self.args_list = args_list
        self.stderr = stderr
        super().__init__(f"Git error: {stderr.strip() or ' '.join(args_list)}")

    @property
    def transient(self) -> bool:
        """Whether the failure looks like a network or lock problem."""
        text = self.stderr.lower()
        return any(marker in text for marker in self.TRANSIENT_MARKERS)


class ContentError(HexoSyncError):
    """Raised when a content file cannot be normalized.

    Attributes:
        path (str): The offending file.
        errors (list[str]): Diagnostics reported by the normalizer.
    """

    def __init__(self, path: str, errors: list[str]):
        self.path = path
        self.errors = list(errors)
        super().__init__(f"Invalid content in {path}: {'; '.join(self.errors)}")


class BatchFailedError(HexoSyncError):
    """Raised when a batch could not make any progress."""

    def __init__(self, batch_id: str, reason: str):
        self.batch_id = batch_id
        self.reason = reason
        super().__init__(f"Batch {batch_id} failed: {reason}")
