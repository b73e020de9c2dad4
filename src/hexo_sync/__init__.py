"""Hexo Sync: automatic normalization and commits for Hexo blog posts.

This package provides the command-line interface, the watch daemon, and the
synchronization pipeline (event bus, change aggregation, batch processing and
git resilience) that keeps a blog repository's posts committed as they are
edited.
"""

from . import (
    aggregator,
    cli,
    config,
    constants,
    daemon,
    errors,
    events,
    frontmatter,
    git_wrapper,
    orchestrator,
    processor,
    resilience,
    watcher,
)

__all__ = [
    "aggregator",
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "events",
    "frontmatter",
    "git_wrapper",
    "orchestrator",
    "processor",
    "resilience",
    "watcher",
]
