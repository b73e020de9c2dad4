import argparse
import asyncio
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from . import daemon
from .config import Config
from .constants import LOG_FILE
from .errors import HexoSyncError
from .orchestrator import SyncResult

console = Console()


def _resolve_repo(path: str | None) -> Path:
    root = Path(path or ".").resolve()
    if not root.is_dir():
        console.print(f"[bold red]Not a directory:[/bold red] {root}")
        sys.exit(1)
    return root


def show_result(result: SyncResult) -> None:
    """Renders the outcome of a one-off synchronization."""
    if not result.processed_files and not result.errors:
        console.print("[green]✔ Nothing to synchronize.[/green]")
        return

    table = Table(title="Synchronized Files")
    table.add_column("File", style="cyan")
    table.add_column("Result")
    for path in result.processed_files:
        table.add_row(path, "[green]committed[/green]")
    for message in result.errors:
        path, _, error = message.partition(": ")
        table.add_row(path, f"[red]{error or path}[/red]")
    console.print(table)

    if result.success:
        console.print(
            f"[bold green]✔ {len(result.processed_files)} file(s) synchronized.[/bold green]"
        )
    else:
        console.print(f"[bold red]✘ {len(result.errors)} error(s).[/bold red]")


def run_now(path: str | None) -> None:
    """Synchronizes every pending content file once."""
    root = _resolve_repo(path)
    config = Config.load(root)
    daemon.setup_logging(interactive=True, max_log_size=config.limits.max_log_size)

    with console.status(f"Synchronizing [cyan]{root.name}[/cyan]...", spinner="dots"):
        try:
            result = asyncio.run(daemon.run_once(root, config))
        except HexoSyncError as e:
            console.print(f"[bold red]✘ {e}[/bold red]")
            sys.exit(1)

    show_result(result)
    if not result.success:
        sys.exit(1)


def show_config(path: str | None) -> None:
    """Displays the effective configuration for a repository."""
    root = _resolve_repo(path)
    config = Config.load(root)

    table = Table(title=f"Effective Configuration ({root.name})", show_lines=True)
    table.add_column("Section", style="cyan", justify="right")
    table.add_column("Key", style="green")
    table.add_column("Value", style="yellow")

    for name in ("sync", "retry", "circuit", "git", "front_matter", "limits"):
        section = getattr(config, name)
        for i, (key, value) in enumerate(vars(section).items()):
            table.add_row(name if i == 0 else "", key, repr(value))

    console.print(table)


def tail_log() -> None:
    """Follows the daemon log file in real-time."""
    if not LOG_FILE.exists():
        console.print(f"[red]No log file found yet at {LOG_FILE}.[/red]")
        return

    console.print(f"Tailing [bold cyan]{LOG_FILE}[/bold cyan] (Ctrl+C to stop)...")
    try:
        subprocess.run(["tail", "-n", "1000", "-f", str(LOG_FILE)])
    except KeyboardInterrupt:
        console.print("\nStopped.", style="dim")


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the Hexo Sync CLI."""
    parser = argparse.ArgumentParser(
        prog="hexo-sync",
        description="Normalize and commit Hexo posts as they change.",
    )
    subparsers = parser.add_subparsers(dest="command")

    watch_parser = subparsers.add_parser(
        "watch", help="Watch a blog repository and commit changes in batches"
    )
    watch_parser.add_argument("path", nargs="?", help="Repository root (default: .)")
    watch_parser.add_argument(
        "--quiet", "-q", action="store_true", help="Log to the log file instead of stdout"
    )

    now_parser = subparsers.add_parser(
        "now", help="Synchronize all pending posts once and exit"
    )
    now_parser.add_argument("path", nargs="?", help="Repository root (default: .)")

    config_parser = subparsers.add_parser(
        "config", help="Show the effective configuration"
    )
    config_parser.add_argument("path", nargs="?", help="Repository root (default: .)")

    subparsers.add_parser("log", help="Tail the daemon log file")

    args = parser.parse_args(argv)

    if args.command == "watch":
        root = _resolve_repo(args.path)
        console.print(
            f"[bold blue]Hexo Sync:[/bold blue] watching [cyan]{root.name}[/cyan] "
            "(Ctrl+C to stop)"
        )
        daemon.main(root, interactive=not args.quiet)
        return
    elif args.command == "now":
        run_now(args.path)
        return
    elif args.command == "config":
        show_config(args.path)
        return
    elif args.command == "log":
        tail_log()
        return

    parser.print_help()


if __name__ == "__main__":
    main()
