"""Shared fakes: scripted transforms, a no-wait sleep and sample texts."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from booksum.config import SummaryConfig  # noqa: E402
from booksum.llm_client import Generation  # noqa: E402
from booksum.log_sink import MemoryLogSink  # noqa: E402


class ScriptedTransform:
    """
    Fake LLM backend. Each stage is a callable (prompt) -> Generation or an
    exception instance to raise; calls are recorded per stage.
    """

    def __init__(self, extract=None, consolidate=None, polish=None):
        self.handlers = {
            "extract": extract or (lambda prompt: Generation("fragment", 10)),
            "consolidate": consolidate or (lambda prompt: Generation("CONSOLIDATED", 20)),
            "polish": polish or (lambda prompt: Generation("FINAL", 30)),
        }
        self.calls = {"extract": [], "consolidate": [], "polish": []}

    @staticmethod
    def stage_of(prompt):
        if "CONTENT PART" in prompt:
            return "extract"
        if "EXTRACTED DRAFTS:" in prompt:
            return "consolidate"
        if "TEXT TO POLISH:" in prompt:
            return "polish"
        raise AssertionError(f"unexpected prompt: {prompt[:80]!r}")

    async def generate(self, prompt, system_instruction, model):
        stage = self.stage_of(prompt)
        self.calls[stage].append(prompt)
        outcome = self.handlers[stage]
        if isinstance(outcome, BaseException):
            raise outcome
        result = outcome(prompt)
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def story_text(sentences=40):
    return " ".join(f"Sentence number {i} moves the story forward a little." for i in range(sentences))


def decode_parser(data, filename):
    return data.decode("utf-8")


@pytest.fixture
def log_sink():
    return MemoryLogSink()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def small_config():
    return SummaryConfig(
        model="test-model",
        chunk_size=400,
        max_concurrent_requests=2,
        max_retries=0,
        retry_base_delay=0.0,
    )
