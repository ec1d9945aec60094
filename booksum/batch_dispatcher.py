"""
Runs the per-chunk extraction calls in consecutive batches.

Each batch holds at most `concurrency_limit` chunks whose calls run
concurrently; the next batch starts only when every call of the previous one
has settled. A failed call leaves its chunk with an empty fragment; only an
AuthError aborts the run. Results are returned in chunk order whatever the completion order.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from booksum.errors import AuthError, RunCancelledError, TransformError
from booksum.log_sink import Severity, safe_append

logger = logging.getLogger(__name__)

DRAFT_DELIMITER = "\n\n"
PHASE = "SUMMARIZING"


@dataclass(frozen=True)
class ChunkResult:
    index: int
    text: str
    token_count: int = 0

    @property
    def failed(self):
        return not self.text.strip()


@dataclass(frozen=True)
class BatchProgress:
    completed: int
    total: int
    elapsed_seconds: float
    tokens: int
    results: tuple = ()


def assemble_draft(results):
    """Joins the non-empty fragments in index order."""
    ordered = sorted(results, key=lambda r: r.index)
    return DRAFT_DELIMITER.join(r.text for r in ordered if r.text.strip())


async def call_with_retry(call, max_retries=0, retry_base_delay=1.0, sleep=asyncio.sleep, on_retry=None):
    """
    Awaits `call()`, retrying transient TransformErrors up to `max_retries`
    times with delays of retry_base_delay * 2**attempt seconds. `on_retry`
    gets (error, attempt, delay) before each wait.
    """
    attempt = 0
    while True:
        try:
            return await call()
        except TransformError as e:
            if not e.is_transient or attempt >= max_retries:
                raise
            delay = retry_base_delay * (2 ** attempt)
            attempt += 1
            if on_retry is not None:
                on_retry(e, attempt, delay)
            await sleep(delay)


async def transform_chunk(chunk, total, transform, log_sink=None, max_retries=0,
                          retry_base_delay=1.0, clock=time.monotonic, sleep=asyncio.sleep):
    """
    Calls `transform` for one chunk. Failures yield an empty ChunkResult,
    except AuthError, which is re-raised since no other call can succeed either.
    """
    part = f"{chunk.index + 1}/{total}"
    safe_append(log_sink, f"[Extract] Analyzing part {part}...")

    def log_retry(error, attempt, delay):
        safe_append(log_sink, f"[Extract] Part {part} failed ({error.message}), retrying in {delay:.1f}s "
                              f"(attempt {attempt}/{max_retries})...", Severity.WARNING)

    started = clock()
    try:
        generation = await call_with_retry(lambda: transform(chunk), max_retries=max_retries,
                                           retry_base_delay=retry_base_delay, sleep=sleep, on_retry=log_retry)
    except AuthError:
        raise
    except TransformError as e:
        safe_append(log_sink, f"[Extract] Part {part} skipped: {e.message}", Severity.WARNING)
        return ChunkResult(chunk.index, "", 0)
    except Exception as e:
        logger.exception("Unexpected error while transforming chunk %d", chunk.index)
        safe_append(log_sink, f"[Extract] Part {part} skipped: {e}", Severity.WARNING)
        return ChunkResult(chunk.index, "", 0)

    text = generation.text or ""
    duration = clock() - started
    safe_append(log_sink, f"[Extract] Part {part} extracted ({duration:.1f}s). Length: {len(text)}.",
                Severity.SUCCESS)
    return ChunkResult(chunk.index, text, generation.token_count or 0)


async def _gather_batch(tasks, cancel_event):
    gathered = asyncio.gather(*tasks)
    if cancel_event is None:
        return await gathered

    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({gathered, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        if gathered in done:
            return gathered.result()
        gathered.cancel()
        await asyncio.gather(gathered, return_exceptions=True)
        raise RunCancelledError("Run cancelled during extraction", phase=PHASE)
    finally:
        cancelled.cancel()


async def run_batches(chunks, concurrency_limit, transform, on_batch=None, log_sink=None,
                      max_retries=0, retry_base_delay=1.0, cancel_event=None, started_at=None,
                      clock=time.monotonic, sleep=asyncio.sleep):
    """
    Transforms every chunk and returns one ChunkResult per chunk, in chunk order.

    `on_batch` receives a BatchProgress after each batch. `cancel_event`
    (an asyncio.Event) is checked before each batch and interrupts the
    calls of the running batch when set.
    """
    if concurrency_limit < 1:
        raise ValueError("concurrency_limit must be at least 1")

    total = len(chunks)
    if started_at is None:
        started_at = clock()
    results = {}
    completed = 0

    for start in range(0, total, concurrency_limit):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("Run cancelled during extraction", phase=PHASE)

        batch = chunks[start:start + concurrency_limit]
        tasks = [
            asyncio.ensure_future(transform_chunk(chunk, total, transform, log_sink=log_sink,
                                                  max_retries=max_retries, retry_base_delay=retry_base_delay,
                                                  clock=clock, sleep=sleep))
            for chunk in batch
        ]
        try:
            batch_results = await _gather_batch(tasks, cancel_event)
        except Exception:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for result in batch_results:
            results[result.index] = result
        completed += len(batch)
        logger.debug("Batch done: %d/%d chunks", completed, total)

        if on_batch is not None:
            on_batch(BatchProgress(
                completed=completed,
                total=total,
                elapsed_seconds=clock() - started_at,
                tokens=sum(r.token_count for r in batch_results),
                results=tuple(batch_results),
            ))

    return [results[chunk.index] for chunk in chunks]
