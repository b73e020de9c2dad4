import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from .constants import APP_NAME, GIT_LOCK_FILES
from .errors import GitCommandError, RepositoryBusyError

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class GitStatus:
    """Pending changes in the working tree, as repository-relative paths.

    Attributes:
        staged (list[str]): Paths with index changes.
        modified (list[str]): Tracked paths modified in the working tree.
        deleted (list[str]): Paths deleted in the index or working tree.
        untracked (list[str]): Paths unknown to git and not ignored.
    """

    staged: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def pending(self) -> set[str]:
        """Every path with any kind of uncommitted change."""
        return {*self.staged, *self.modified, *self.deleted, *self.untracked}

    @property
    def is_clean(self) -> bool:
        return not self.pending


def parse_porcelain(output: str) -> GitStatus:
    """Parses `git status --porcelain=v1 -z` output.

    Args:
        output (str): The raw NUL-separated status output.

    Returns:
        GitStatus: The classified paths.
    """
    staged: list[str] = []
    modified: list[str] = []
    deleted: list[str] = []
    untracked: list[str] = []

    entries = iter(output.split("\0"))
    for entry in entries:
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]

        if x == "?" and y == "?":
            untracked.append(path)
            continue
        if x in "RC":
            # Renames/copies are followed by the source path.
            next(entries, None)
        if x not in " ?!":
            staged.append(path)
        if y == "M":
            modified.append(path)
        if "D" in (x, y):
            deleted.append(path)

    return GitStatus(staged, modified, deleted, untracked)


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This class provides methods to execute the Git operations the synchronizer
    needs using `subprocess`, abstracting away the command construction and
    output handling. Every method blocks; see `AsyncGitClient` for the
    coroutine interface.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.
        """
        self.path = path

    def _run(
        self,
        args: list[str],
        capture: bool = True,
        env: dict | None = None,
        strip: bool = True,
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to capture and return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to None.
            strip (bool, optional): Whether to strip surrounding whitespace from
                                    stdout. Defaults to True.

        Returns:
            str:    The stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            GitCommandError: If the git command returns a non-zero exit code.
        """
        try:
            # stderr is always captured so failures can be classified.
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                stdout=subprocess.PIPE if capture else None,
                stderr=subprocess.PIPE,
                text=True,
                check=True,
                env=env,
            )
        except subprocess.CalledProcessError as e:
            raise GitCommandError(args, e.stderr or str(e)) from e
        if not capture:
            return ""
        return res.stdout.strip() if strip else res.stdout

    def _succeeds(self, args: list[str]) -> bool:
        """Runs a git command and reports whether it exited with status 0."""
        try:
            self._run(args)
            return True
        except GitCommandError:
            return False

    def is_repository(self) -> bool:
        """Checks whether the path is inside a git working tree."""
        if not self.path.is_dir():
            return False
        try:
            return self._run(["rev-parse", "--is-inside-work-tree"]) == "true"
        except (GitCommandError, OSError) as e:
            logger.debug(f"rev-parse failed in {self.path}: {e}")
            return False

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The branch name, or an empty string for a detached HEAD.
        """
        return self._run(["branch", "--show-current"])

    def is_busy(self) -> bool:
        """Determines if a merge, rebase or another git process holds the repository."""
        git_dir = self.path / ".git"
        return any((git_dir / name).exists() for name in GIT_LOCK_FILES)

    def status(self) -> GitStatus:
        """Returns the classified pending changes of the working tree."""
        output = self._run(
            ["status", "--porcelain=v1", "-z", "--untracked-files=all"], strip=False
        )
        return parse_porcelain(output)

    def add(self, paths: list[str]) -> None:
        """Stages additions, modifications and removals of the given paths.

        Args:
            paths (list[str]): Repository-relative paths.
        """
        if not paths:
            return
        self._run(["add", "--all", "--", *paths], capture=False)

    def has_staged_changes(self) -> bool:
        return not self._succeeds(["diff", "--cached", "--quiet"])

    def commit(self, message: str) -> bool:
        """Creates a new commit from the index.

        Args:
            message (str): The commit message.

        Returns:
            bool: False if there was nothing to commit.

        Raises:
            RepositoryBusyError: If a merge/rebase or index lock is in progress.
        """
        if self.is_busy():
            raise RepositoryBusyError(f"Repository busy: {self.path.name}")
        if not self.has_staged_changes():
            return False
        self._run(["commit", "-m", message], capture=False)
        return True

    def push(self, remote_name: str = "origin") -> None:
        """Pushes the current branch to a remote without prompting for credentials.

        Args:
            remote_name (str): The git remote to push to.
        """
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        env["GIT_TERMINAL_PROMPT"] = "0"
        self._run(["push", remote_name, "HEAD"], env=env)

    def pull(self, remote_name: str = "origin") -> None:
        """Fast-forwards the current branch from a remote."""
        env = os.environ.copy()
        env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
        env["GIT_TERMINAL_PROMPT"] = "0"
        self._run(["pull", "--ff-only", remote_name], env=env)


class AsyncGitClient:
    """Coroutine facade over `GitRepo`; each call runs in a worker thread.

    Attributes:
        repo (GitRepo): The underlying blocking wrapper.
        remote_name (str): The remote used by `push` and `pull`.
    """

    def __init__(self, path: Path, remote_name: str = "origin"):
        self.repo = GitRepo(path)
        self.remote_name = remote_name

    @property
    def path(self) -> Path:
        return self.repo.path

    async def is_repository(self) -> bool:
        return await asyncio.to_thread(self.repo.is_repository)

    async def current_branch(self) -> str:
        return await asyncio.to_thread(self.repo.current_branch)

    async def status(self) -> GitStatus:
        return await asyncio.to_thread(self.repo.status)

    async def add(self, paths: list[str]) -> None:
        await asyncio.to_thread(self.repo.add, list(paths))

    async def commit(self, message: str) -> bool:
        return await asyncio.to_thread(self.repo.commit, message)

    async def push(self) -> None:
        await asyncio.to_thread(self.repo.push, self.remote_name)

    async def pull(self) -> None:
        await asyncio.to_thread(self.repo.pull, self.remote_name)
