# -*- coding: utf-8 -*-

from dataclasses import dataclass, replace
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- LM Studio Configuration ---
# Find the model identifier in your LM Studio's server logs or UI
# Example: "gemma-2-9b-it"
MODEL_IDENTIFIER = "qwen/qwen3-4b-2507"

# Used by the HTTP backend (LM Studio's OpenAI compatible server, or any other).
API_BASE_URL = "http://localhost:1234/v1"
API_KEY_ENV_VAR = "BOOKSUM_API_KEY"
REQUEST_TIMEOUT_SEC = 600

# --- History ---
# Completed (and partial) runs are appended here.
HISTORY_FILE_PATH = "summary_history.json"
BACKUP_VERSION = 1

# -- Pipeline Parameters --
CHUNK_SIZE = 50000  # Number of characters per chunk to send to the LLM
MAX_CONCURRENT_REQUESTS = 3  # Max transform calls in flight at once
DEFAULT_LANGUAGE = "EN"

# Below this many extracted characters the file is treated as empty or encrypted.
MIN_TEXT_LENGTH = 100
# A failed run with a draft longer than this is saved as a partial result.
MIN_PARTIAL_DRAFT_LENGTH = 500

# -- Retry --
MAX_RETRIES = 2
RETRY_BASE_DELAY_SEC = 1.0

# -- Progress --
# 500k chars took about 240 seconds with a hosted model, i.e. 0.00048 sec/char.
# Tune this for your own model and hardware.
SECONDS_PER_CHAR = 0.00048
MIN_INITIAL_ESTIMATE_SEC = 30
# Consolidation + polish are estimated as this many extraction calls.
FINAL_STAGES_OVERHEAD = 1.5
EXTRACTION_PROGRESS_WEIGHT = 60
CONSOLIDATED_PROGRESS = 80
SINGLE_CHUNK_PROGRESS = 70

# -- Languages --
LANGUAGE_NAMES = {
    "EN": "English",
    "RU": "Russian",
    "ES": "Spanish",
    "DE": "German",
    "FR": "French",
}

# -- System Prompt --
# This is the main instruction given to the model for every call. {language} is filled per run.
SYSTEM_INSTRUCTION_TEMPLATE = "You are a meticulous literary analyst and editor. You read long books part by part and turn them into clear, faithful, well structured summaries. Never invent events, names or facts that are not in the text. Always write your answer in {language}, whatever the language of the source."

# -- Prompt Templates --
# These are the building blocks for the prompts sent to the LLM.

# Step 1: run once per chunk. The chunk itself is appended after this text.
EXTRACT_PROMPT_TEMPLATE = """TASK:
Extract the essential content of the following part of a book. Keep the key events in order, the main characters and what drives them, important ideas, arguments and conclusions. Drop repetition, filler and minor detail. Write in {language} as continuous prose, not as a list of events.

Do not add introductions such as "Here is the summary"."""

# Step 2: run once over the joined drafts of all chunks.
CONSOLIDATE_PROMPT_TEMPLATE = """TASK:
Below are condensed drafts of consecutive parts of one book, in reading order. Merge them into a single coherent narrative in {language}. Remove overlaps and repetition between parts, keep the chronology, and make sure characters and ideas are introduced once and referred to consistently.

Do not mention that the text was assembled from parts."""

# Step 3: run once over the consolidated narrative.
POLISH_PROMPT_TEMPLATE = """TASK:
Turn the following text into the final summary of the book, formatted as Markdown in {language}. Start with a short overview paragraph, then use headings for the main parts of the book, and end with a section on the key ideas or themes. Fix style and flow but keep every fact.

FINAL SUMMARY (NO INTRODUCTORY PHRASES LIKE "Here is the summary"):"""


@dataclass(frozen=True)
class Prompts:
    system_instruction: str
    extract: str
    consolidate: str
    polish: str


def get_prompts(language):
    """Returns the prompt set for a language code such as "EN" or "RU"."""
    code = language.upper()
    if code not in LANGUAGE_NAMES:
        raise ValueError(f"Unsupported language '{language}'. Choose one of: {', '.join(LANGUAGE_NAMES)}")
    name = LANGUAGE_NAMES[code]
    return Prompts(
        system_instruction=SYSTEM_INSTRUCTION_TEMPLATE.format(language=name),
        extract=EXTRACT_PROMPT_TEMPLATE.format(language=name),
        consolidate=CONSOLIDATE_PROMPT_TEMPLATE.format(language=name),
        polish=POLISH_PROMPT_TEMPLATE.format(language=name),
    )


class SummaryConfig(BaseSettings):
    """
    Settings for one pipeline run. Defaults come from the constants above;
    any field can be overridden from the environment with a BOOKSUM_ prefix
    (BOOKSUM_CHUNK_SIZE, BOOKSUM_API_KEY, ...) or from a .env file.
    Invalid values raise pydantic's ValidationError, a ValueError.
    """

    model: str = MODEL_IDENTIFIER
    language: str = DEFAULT_LANGUAGE
    chunk_size: int = Field(default=CHUNK_SIZE, gt=0)
    max_concurrent_requests: int = Field(default=MAX_CONCURRENT_REQUESTS, ge=1)
    min_text_length: int = Field(default=MIN_TEXT_LENGTH, ge=0)
    min_partial_draft_length: int = Field(default=MIN_PARTIAL_DRAFT_LENGTH, ge=0)
    max_retries: int = Field(default=MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=RETRY_BASE_DELAY_SEC, ge=0)
    seconds_per_char: float = Field(default=SECONDS_PER_CHAR, gt=0)
    min_initial_estimate: int = Field(default=MIN_INITIAL_ESTIMATE_SEC, ge=0)
    final_stages_overhead: float = Field(default=FINAL_STAGES_OVERHEAD, ge=0)
    extraction_progress_weight: int = EXTRACTION_PROGRESS_WEIGHT
    consolidated_progress: int = CONSOLIDATED_PROGRESS
    single_chunk_progress: int = SINGLE_CHUNK_PROGRESS
    prompt_overrides: dict[str, str] = Field(default_factory=dict)

    # "lmstudio" uses the SDK; "http" any OpenAI compatible server.
    backend: Literal["lmstudio", "http"] = "lmstudio"
    api_base_url: str = API_BASE_URL
    api_key: str | None = None
    request_timeout: float = Field(default=REQUEST_TIMEOUT_SEC, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="BOOKSUM_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=(),
    )

    @field_validator("language")
    @classmethod
    def check_language(cls, value):
        get_prompts(value)
        return value.upper()

    @field_validator("prompt_overrides")
    @classmethod
    def check_prompt_overrides(cls, value):
        unknown = set(value) - set(Prompts.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown prompt names: {', '.join(sorted(unknown))}")
        return value

    @model_validator(mode="after")
    def check_progress_markers(self):
        if not (0 <= self.extraction_progress_weight <= self.single_chunk_progress
                <= self.consolidated_progress <= 100):
            raise ValueError("progress markers must satisfy 0 <= extraction <= single chunk <= consolidated <= 100")
        return self

    def prompts(self):
        """Language prompts with any per-run overrides (keys: system_instruction, extract, consolidate, polish)."""
        prompts = get_prompts(self.language)
        if self.prompt_overrides:
            prompts = replace(prompts, **self.prompt_overrides)
        return prompts
