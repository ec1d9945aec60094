from __future__ import annotations

import asyncio
import random

import pytest

from booksum.batch_dispatcher import ChunkResult, assemble_draft, call_with_retry, run_batches
from booksum.errors import AuthError, RunCancelledError, TransformError
from booksum.llm_client import Generation
from booksum.text_chunker import Chunk


def _chunks(count):
    return [Chunk(index=i, text=f"chunk {i}") for i in range(count)]


@pytest.mark.asyncio
async def test_results_follow_chunk_order_despite_jitter():
    rng = random.Random(7)

    async def transform(chunk):
        await asyncio.sleep(rng.random() / 200)
        return Generation(f"F{chunk.index}", 1)

    results = await run_batches(_chunks(9), 4, transform)

    assert [r.index for r in results] == list(range(9))
    assert [r.text for r in results] == [f"F{i}" for i in range(9)]


@pytest.mark.asyncio
async def test_failed_chunk_becomes_empty_fragment(log_sink):
    async def transform(chunk):
        if chunk.index == 0:
            raise TransformError("model overloaded", status_code=400)
        return Generation("B", 5)

    results = await run_batches(_chunks(2), 2, transform, log_sink=log_sink)

    assert results == [ChunkResult(0, "", 0), ChunkResult(1, "B", 5)]
    assert assemble_draft(results) == "B"
    assert any("Part 1/2 skipped: model overloaded" in m for m in log_sink.messages("warning"))


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained():
    async def transform(chunk):
        raise ValueError("bad response")

    results = await run_batches(_chunks(3), 2, transform)

    assert [r.text for r in results] == ["", "", ""]
    assert all(r.failed for r in results)


@pytest.mark.asyncio
async def test_concurrency_ceiling_and_sequential_batches():
    in_flight = 0
    max_in_flight = 0
    started = []
    finished = []

    async def transform(chunk):
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        started.append((chunk.index, set(finished)))
        await asyncio.sleep(0.001 * (3 - chunk.index % 3))
        in_flight -= 1
        finished.append(chunk.index)
        return Generation("ok", 0)

    await run_batches(_chunks(5), 2, transform)

    assert max_in_flight == 2
    starts = dict(started)
    assert {0, 1} <= starts[2] and {0, 1} <= starts[3]
    assert {0, 1, 2, 3} <= starts[4]


@pytest.mark.asyncio
async def test_on_batch_reports_progress_and_tokens():
    reports = []

    async def transform(chunk):
        return Generation("x", chunk.index + 1)

    await run_batches(_chunks(5), 2, transform, on_batch=reports.append)

    assert [(r.completed, r.total) for r in reports] == [(2, 5), (4, 5), (5, 5)]
    assert [r.tokens for r in reports] == [1 + 2, 3 + 4, 5]
    assert [len(r.results) for r in reports] == [2, 2, 1]
    assert all(r.elapsed_seconds >= 0 for r in reports)


@pytest.mark.asyncio
async def test_elapsed_is_measured_from_started_at():
    ticks = iter([100.0, 101.0, 107.5])
    reports = []

    async def transform(chunk):
        return Generation("x", 0)

    await run_batches(_chunks(1), 1, transform, on_batch=reports.append, started_at=95.0,
                      clock=lambda: next(ticks))

    assert reports[0].elapsed_seconds == pytest.approx(12.5)


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff(no_sleep, log_sink):
    attempts = []

    async def transform(chunk):
        attempts.append(chunk.index)
        if len(attempts) < 3:
            raise TransformError("timeout")
        return Generation("recovered", 2)

    results = await run_batches(_chunks(1), 1, transform, max_retries=2, retry_base_delay=1.0,
                                sleep=no_sleep, log_sink=log_sink)

    assert results[0].text == "recovered"
    assert no_sleep.delays == [1.0, 2.0]
    assert len(log_sink.messages("warning")) == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(no_sleep):
    calls = 0

    async def transform(chunk):
        nonlocal calls
        calls += 1
        raise TransformError("server error", status_code=503)

    results = await run_batches(_chunks(1), 1, transform, max_retries=2, retry_base_delay=0.5, sleep=no_sleep)

    assert calls == 3
    assert no_sleep.delays == [0.5, 1.0]
    assert results == [ChunkResult(0, "", 0)]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(no_sleep):
    calls = 0

    async def transform(chunk):
        nonlocal calls
        calls += 1
        raise TransformError("bad request", status_code=400)

    await run_batches(_chunks(1), 1, transform, max_retries=3, sleep=no_sleep)

    assert calls == 1
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_auth_error_aborts_the_run():
    later_batch_called = False

    async def transform(chunk):
        nonlocal later_batch_called
        if chunk.index >= 2:
            later_batch_called = True
        if chunk.index == 1:
            raise AuthError("invalid key", status_code=401)
        return Generation("ok", 0)

    with pytest.raises(AuthError):
        await run_batches(_chunks(4), 2, transform, max_retries=3)
    assert not later_batch_called


@pytest.mark.asyncio
async def test_cancel_before_next_batch():
    cancel = asyncio.Event()
    called = []

    async def transform(chunk):
        called.append(chunk.index)
        return Generation("ok", 0)

    with pytest.raises(RunCancelledError):
        await run_batches(_chunks(6), 2, transform, cancel_event=cancel, on_batch=lambda p: cancel.set())
    assert called == [0, 1]


@pytest.mark.asyncio
async def test_cancel_interrupts_running_calls():
    cancel = asyncio.Event()
    cancelled = []

    async def transform(chunk):
        try:
            if chunk.index == 0:
                cancel.set()
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(chunk.index)
            raise
        return Generation("late", 0)

    with pytest.raises(RunCancelledError):
        await run_batches(_chunks(2), 2, transform, cancel_event=cancel)
    assert sorted(cancelled) == [0, 1]


@pytest.mark.asyncio
async def test_invalid_concurrency_limit():
    async def transform(chunk):
        return Generation("ok", 0)

    with pytest.raises(ValueError):
        await run_batches(_chunks(1), 0, transform)


@pytest.mark.asyncio
async def test_call_with_retry_reports_attempts(no_sleep):
    seen = []
    outcomes = [TransformError("flaky"), Generation("done", 1)]

    async def call():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = await call_with_retry(call, max_retries=1, retry_base_delay=2.0, sleep=no_sleep,
                                   on_retry=lambda e, attempt, delay: seen.append((e.message, attempt, delay)))

    assert result.text == "done"
    assert seen == [("flaky", 1, 2.0)]


def test_assemble_draft_skips_empty_fragments_and_sorts():
    results = [ChunkResult(2, "C"), ChunkResult(0, "A"), ChunkResult(1, "  ")]

    assert assemble_draft(results) == "A\n\nC"
