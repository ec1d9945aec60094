"""
Document -> summary pipeline.

    PARSING -> CHUNKING -> SUMMARIZING -> CONSOLIDATING -> POLISHING -> COMPLETED

Any stage can end the run in ERROR. When a late stage fails but the draft
assembled from the extracted parts is long enough, the run still completes
with that draft as a partial result.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum

from booksum.batch_dispatcher import assemble_draft, call_with_retry, run_batches
from booksum.config import SummaryConfig
from booksum.document_parser import parse_document
from booksum.errors import (AssemblyError, AuthError, ErrorKind, ParseError, RunCancelledError, StageError,
                            SummaryError, TransformError)
from booksum.llm_client import Transform
from booksum.log_sink import Severity, safe_append
from booksum.progress_estimator import ProgressEstimator
from booksum.run_history import RunRecord
from booksum.text_chunker import split_text

logger = logging.getLogger(__name__)

NOT_RECOVERABLE = (ErrorKind.CANCELLED,)


class ProcessingState(str, Enum):
    IDLE = "IDLE"
    PARSING = "PARSING"
    CHUNKING = "CHUNKING"
    SUMMARIZING = "SUMMARIZING"
    CONSOLIDATING = "CONSOLIDATING"
    POLISHING = "POLISHING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @property
    def is_terminal(self):
        return self in (ProcessingState.COMPLETED, ProcessingState.ERROR)


@dataclass(frozen=True)
class RunSnapshot:
    state: ProcessingState
    progress: int
    total_tokens: int
    elapsed_seconds: float
    estimated_total_seconds: int | None
    remaining_seconds: int | None = None
    status: str = ""


@dataclass
class RunResult:
    state: ProcessingState
    summary: str = ""
    partial: bool = False
    draft: str = ""
    total_tokens: int = 0
    chunk_count: int = 0
    record: RunRecord | None = None
    error: SummaryError | None = None

    @property
    def succeeded(self):
        return self.state == ProcessingState.COMPLETED


class SummaryPipeline:
    """
    Drives one document through extraction, consolidation and polishing.

    All collaborators are injected: `transform` (a llm_client.Transform:
    anything with an async `generate(prompt, system_instruction, model)`),
    `parser` (bytes, filename -> text), an optional `recorder` (RunRecorder),
    an optional `log_sink`, and `on_update`, which receives a RunSnapshot
    whenever the state, the progress or the time estimate changes.
    """

    def __init__(self, transform: Transform, parser=parse_document, recorder=None, log_sink=None, config=None,
                 on_update=None, clock=time.monotonic, sleep=asyncio.sleep):
        self.transform = transform
        self.parser = parser
        self.recorder = recorder
        self.log_sink = log_sink
        self.config = config or SummaryConfig()
        self.on_update = on_update
        self.clock = clock
        self.sleep = sleep
        self._reset()

    def _reset(self):
        self.state = ProcessingState.IDLE
        self.progress = 0
        self.total_tokens = 0
        self.draft = ""
        self.status = ""
        self.estimator = ProgressEstimator(self.config.seconds_per_char, self.config.min_initial_estimate)
        self._started_at = None

    # --- Run state ---

    @property
    def elapsed_seconds(self):
        if self._started_at is None:
            return 0.0
        return self.clock() - self._started_at

    def snapshot(self):
        elapsed = self.elapsed_seconds
        return RunSnapshot(
            state=self.state,
            progress=self.progress,
            total_tokens=self.total_tokens,
            elapsed_seconds=elapsed,
            estimated_total_seconds=self.estimator.estimated_total,
            remaining_seconds=self.estimator.remaining(elapsed),
            status=self.status,
        )

    def _publish(self):
        if self.on_update is None:
            return
        try:
            self.on_update(self.snapshot())
        except Exception:
            logger.exception("Progress observer raised")

    def _set_state(self, state, status=""):
        self.state = state
        self.status = status
        logger.debug("State -> %s", state.value)
        self._publish()

    def _set_progress(self, value):
        # Never goes backwards within a run.
        value = max(self.progress, min(100, max(0, int(value))))
        if value != self.progress:
            self.progress = value
            self._publish()

    def _log(self, message, severity=Severity.INFO):
        safe_append(self.log_sink, message, severity)

    def _check_cancelled(self, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("Run cancelled", phase=self.state.value)

    # --- Stages ---

    def _parse(self, data, filename):
        self._set_state(ProcessingState.PARSING, "Reading file")
        self._log(f"System: Reading {filename}...")
        started = self.clock()
        try:
            text = self.parser(data, filename)
        except ParseError as e:
            e.phase = e.phase or ProcessingState.PARSING.value
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse '{filename}': {e}", phase=ProcessingState.PARSING.value) from e

        self._log(f"File parsed in {self.clock() - started:.2f}s. Size: {len(text):,} chars.", Severity.SUCCESS)
        if len(text) < self.config.min_text_length:
            raise ParseError(f"Extracted text is too short ({len(text)} chars): the file is empty or encrypted.",
                             phase=ProcessingState.PARSING.value)
        return text

    def _chunk(self, text):
        self.estimator.seed(len(text))
        self._set_state(ProcessingState.CHUNKING, "Chunking")
        chunks = split_text(text, self.config.chunk_size)
        self._log(f"Chunking: {len(chunks)} parts (smart boundary detection enabled).")
        return chunks

    async def _extract(self, chunks, prompts, cancel_event):
        self._set_state(ProcessingState.SUMMARIZING, "Extracting")
        fragments = {}

        async def transform(chunk):
            prompt = f"{prompts.extract}\n\nCONTENT PART {chunk.index + 1}:\n{chunk.text}"
            return await self.transform.generate(prompt, prompts.system_instruction, self.config.model)

        def on_batch(batch_progress):
            for result in batch_progress.results:
                fragments[result.index] = result
            # Kept current so that a failure in a later batch can still fall back on it.
            self.draft = assemble_draft(fragments.values())
            self.total_tokens += batch_progress.tokens
            self.estimator.update(batch_progress.elapsed_seconds, batch_progress.completed,
                                  batch_progress.total, self.config.final_stages_overhead)
            weight = self.config.extraction_progress_weight
            self.progress = max(self.progress, round(batch_progress.completed / batch_progress.total * weight))
            self._publish()

        results = await run_batches(
            chunks,
            self.config.max_concurrent_requests,
            transform,
            on_batch=on_batch,
            log_sink=self.log_sink,
            max_retries=self.config.max_retries,
            retry_base_delay=self.config.retry_base_delay,
            cancel_event=cancel_event,
            started_at=self._started_at,
            clock=self.clock,
            sleep=self.sleep,
        )
        self.draft = assemble_draft(results)
        failed = sum(1 for r in results if r.failed)
        if failed:
            self._log(f"[Extract] {failed} of {len(results)} parts produced no text.", Severity.WARNING)
        return results

    async def _run_stage(self, name, prompt, prompts):
        """One consolidation or polish call. Failures become StageError (AuthError passes through)."""
        def log_retry(error, attempt, delay):
            self._log(f"[{name}] Call failed ({error.message}), retrying in {delay:.1f}s "
                      f"(attempt {attempt}/{self.config.max_retries})...", Severity.WARNING)

        started = self.clock()
        try:
            generation = await call_with_retry(
                lambda: self.transform.generate(prompt, prompts.system_instruction, self.config.model),
                max_retries=self.config.max_retries,
                retry_base_delay=self.config.retry_base_delay,
                sleep=self.sleep,
                on_retry=log_retry,
            )
        except AuthError as e:
            e.phase = self.state.value
            raise
        except TransformError as e:
            raise StageError(f"{name} failed: {e.message}", phase=self.state.value) from e

        self.total_tokens += generation.token_count or 0
        text = (generation.text or "").strip()
        if not text:
            raise StageError(f"{name} returned an empty response", phase=self.state.value)
        self._log(f"[{name}] Done ({self.clock() - started:.1f}s). Size: {len(text):,}.", Severity.SUCCESS)
        return text

    async def _consolidate(self, chunk_count, prompts, cancel_event):
        self._check_cancelled(cancel_event)
        self._set_state(ProcessingState.CONSOLIDATING, "Consolidating")
        if chunk_count == 1:
            self._log("[Consolidate] Single part, skipping consolidation.")
            self._set_progress(self.config.single_chunk_progress)
            return self.draft

        self._log(f"[Consolidate] Consolidating {chunk_count} parts...")
        prompt = f"{prompts.consolidate}\n\nEXTRACTED DRAFTS:\n{self.draft}"
        consolidated = await self._run_stage("Consolidate", prompt, prompts)
        self._set_progress(self.config.consolidated_progress)
        return consolidated

    async def _polish(self, consolidated, prompts, cancel_event):
        self._check_cancelled(cancel_event)
        self._set_state(ProcessingState.POLISHING, "Writing")
        self._log("[Polish] Final formatting...")
        prompt = f"{prompts.polish}\n\nTEXT TO POLISH:\n{consolidated}"
        return await self._run_stage("Polish", prompt, prompts)

    # --- Terminal states ---

    def _record(self, filename, summary, partial):
        record = RunRecord.create(file_name=filename, language=self.config.language, summary=summary,
                                  model=self.config.model, token_usage=self.total_tokens, partial=partial)
        if self.recorder is not None:
            try:
                self.recorder.save(record)
            except OSError as e:
                logger.exception("Could not save run record")
                self._log(f"Could not save the result to history: {e}", Severity.ERROR)
        return record

    def _complete(self, filename, summary, chunk_count, partial=False, error=None):
        record = self._record(filename, summary, partial)
        self.progress = 100
        self._set_state(ProcessingState.COMPLETED, "Completed with errors" if partial else "")
        self._log(f"Session tokens: {self.total_tokens:,}.")
        return RunResult(state=ProcessingState.COMPLETED, summary=summary, partial=partial, draft=self.draft,
                         total_tokens=self.total_tokens, chunk_count=chunk_count, record=record, error=error)

    def _fail(self, error, filename, chunk_count):
        if error.kind == ErrorKind.AUTH:
            self._log(f"[Critical error] The LLM backend rejected the credentials: {error}", Severity.ERROR)
        if error.kind not in NOT_RECOVERABLE and len(self.draft) > self.config.min_partial_draft_length:
            self._log(f"[Critical error] Pipeline failed, but partial data was recovered: {error}", Severity.WARNING)
            self._log("Using the raw extracted draft as the summary.")
            return self._complete(filename, self.draft, chunk_count, partial=True, error=error)

        if error.kind != ErrorKind.AUTH:
            self._log(f"[Critical error] {error}", Severity.ERROR)
        self._set_state(ProcessingState.ERROR, error.message)
        self._log(f"Session tokens: {self.total_tokens:,}.")
        return RunResult(state=ProcessingState.ERROR, draft=self.draft, total_tokens=self.total_tokens,
                         chunk_count=chunk_count, error=error)

    # --- Entry point ---

    async def run(self, data, filename, cancel_event=None):
        """
        Summarizes one document. Always returns a RunResult in state COMPLETED
        (possibly partial) or ERROR; errors are reported through the result,
        not raised. `cancel_event` (asyncio.Event) stops the run at the next
        batch or stage boundary.
        """
        self._reset()
        self._started_at = self.clock()
        prompts = self.config.prompts()
        chunk_count = 0

        try:
            text = self._parse(data, filename)
            chunks = self._chunk(text)
            chunk_count = len(chunks)
            self._check_cancelled(cancel_event)
            await self._extract(chunks, prompts, cancel_event)
            if not self.draft:
                raise AssemblyError("Failed to extract any text: no part produced usable output.",
                                    phase=ProcessingState.SUMMARIZING.value)
            consolidated = await self._consolidate(chunk_count, prompts, cancel_event)
            summary = await self._polish(consolidated, prompts, cancel_event)
        except SummaryError as e:
            return self._fail(e, filename, chunk_count)
        except Exception as e:
            logger.exception("Unexpected error during %s", self.state.value)
            error = StageError(f"Unexpected error: {e}", phase=self.state.value)
            return self._fail(error, filename, chunk_count)

        self._log("[Polish] Finished.", Severity.SUCCESS)
        return self._complete(filename, summary, chunk_count)


async def summarize_file(file_path, transform, **kwargs):
    """Convenience wrapper: reads `file_path` and runs a SummaryPipeline over it."""
    with open(file_path, 'rb') as f:
        data = f.read()
    pipeline = SummaryPipeline(transform, **kwargs)
    return await pipeline.run(data, os.path.basename(file_path))
