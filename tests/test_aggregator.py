"""Tests for change debouncing, batching and the processing set."""

import asyncio
import datetime

import pytest

from hexo_sync.aggregator import (
    ChangeAggregator,
    ChangeKind,
    FileChangeEvent,
    ProcessingSet,
)


def _event(path: str, kind: ChangeKind = ChangeKind.MODIFIED, offset: float = 0.0) -> FileChangeEvent:
    stamp = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc) + datetime.timedelta(
        seconds=offset
    )
    return FileChangeEvent(path, kind, timestamp=stamp)


@pytest.mark.asyncio
async def test_processing_set_claims_each_path_once() -> None:
    """Verifies that a claimed path cannot be claimed again until released."""
    processing = ProcessingSet()

    first = await processing.claim(["a.md", "b.md", "a.md"])
    second = await processing.claim(["b.md", "c.md"])

    assert first == ["a.md", "b.md"]
    assert second == ["c.md"]
    assert "a.md" in processing
    assert len(processing) == 3

    await processing.release(["a.md"])
    assert await processing.claim(["a.md"]) == ["a.md"]


@pytest.mark.asyncio
async def test_processing_set_claim_limit_and_wait_empty() -> None:
    """Verifies the claim limit and that wait_empty wakes once everything is released."""
    processing = ProcessingSet()
    assert await processing.claim(["a", "b", "c"], limit=2) == ["a", "b"]

    assert await processing.wait_empty(timeout=0.01) is False

    async def release_later() -> None:
        await asyncio.sleep(0.01)
        await processing.release(["a", "b"])

    task = asyncio.create_task(release_later())
    assert await processing.wait_empty(timeout=1.0) is True
    await task
    assert processing.snapshot() == ()


@pytest.mark.asyncio
async def test_rapid_events_for_one_path_collapse() -> None:
    """Verifies that N events for one path within the debounce window yield one entry."""
    aggregator = ChangeAggregator(ProcessingSet(), debounce=0.05, batch_window=10.0)
    aggregator.start()
    try:
        for i in range(10):
            aggregator.submit(_event("posts/a.md", offset=i))
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.1)

        batch = await aggregator.flush()
    finally:
        await aggregator.close()

    assert batch is not None
    assert [e.path for e in batch] == ["posts/a.md"]
    assert batch[0].timestamp.second == 9


@pytest.mark.asyncio
async def test_late_delivery_does_not_override_newer_event() -> None:
    """Verifies that an out-of-order event with an older timestamp loses."""
    aggregator = ChangeAggregator(ProcessingSet(), debounce=0.0, batch_window=10.0)
    aggregator.start()
    try:
        aggregator.submit(_event("a.md", ChangeKind.DELETED, offset=5))
        aggregator.submit(_event("a.md", ChangeKind.MODIFIED, offset=1))
        batch = await aggregator.flush()
    finally:
        await aggregator.close()

    assert batch is not None
    assert batch[0].kind is ChangeKind.DELETED


@pytest.mark.asyncio
async def test_window_hands_off_batches_on_its_own() -> None:
    """Verifies that settled events are emitted when the batch window closes."""
    processing = ProcessingSet()
    aggregator = ChangeAggregator(processing, debounce=0.0, batch_window=0.02)
    aggregator.start()
    try:
        aggregator.submit(_event("a.md"))
        aggregator.submit(_event("b.md"))
        batch = await asyncio.wait_for(aggregator.next_batch(), timeout=1.0)
    finally:
        await aggregator.close()

    assert batch is not None
    assert sorted(e.path for e in batch) == ["a.md", "b.md"]
    # The batch's paths are now owned by its consumer.
    assert set(processing.snapshot()) == {"a.md", "b.md"}


@pytest.mark.asyncio
async def test_oversized_window_defers_the_rest() -> None:
    """Verifies that at most max_batch_size paths are emitted per batch."""
    aggregator = ChangeAggregator(
        ProcessingSet(), debounce=0.0, batch_window=10.0, max_batch_size=2
    )
    aggregator.start()
    try:
        for name in ("a.md", "b.md", "c.md"):
            aggregator.submit(_event(name))
        first = await aggregator.flush()
        second = await aggregator.flush()
    finally:
        await aggregator.close()

    assert first is not None and second is not None
    assert [e.path for e in first] == ["a.md", "b.md"]
    assert [e.path for e in second] == ["c.md"]


@pytest.mark.asyncio
async def test_in_flight_paths_wait_for_a_later_window() -> None:
    """Verifies that a path already being processed is never handed to a second batch."""
    processing = ProcessingSet()
    await processing.claim(["busy.md"])
    aggregator = ChangeAggregator(processing, debounce=0.0, batch_window=10.0)
    aggregator.start()
    try:
        aggregator.submit(_event("busy.md"))
        aggregator.submit(_event("free.md"))
        first = await aggregator.flush()
        assert aggregator.pending == 1

        await processing.release(["busy.md"])
        second = await aggregator.flush()
    finally:
        await aggregator.close()

    assert first is not None and second is not None
    assert [e.path for e in first] == ["free.md"]
    assert [e.path for e in second] == ["busy.md"]


@pytest.mark.asyncio
async def test_close_discards_pending_and_ends_stream() -> None:
    """Verifies that close cancels timers and wakes the consumer with None."""
    aggregator = ChangeAggregator(ProcessingSet(), debounce=10.0, batch_window=10.0)
    aggregator.start()
    aggregator.submit(_event("a.md"))
    assert aggregator.pending == 1

    await aggregator.close()

    assert not aggregator.running
    assert aggregator.pending == 0
    assert await aggregator.next_batch() is None

    # Events after close are ignored.
    aggregator.submit(_event("b.md"))
    assert aggregator.pending == 0


@pytest.mark.asyncio
async def test_discard_queued_returns_unconsumed_paths() -> None:
    aggregator = ChangeAggregator(ProcessingSet(), debounce=0.0, batch_window=10.0)
    aggregator.start()
    aggregator.submit(_event("a.md"))
    await aggregator.flush()
    await aggregator.close()

    assert aggregator.discard_queued() == ["a.md"]
    assert aggregator.discard_queued() == []
