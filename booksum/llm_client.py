"""
Transform backends: `generate(prompt, system_instruction, model) -> Generation`.

Two backends are provided: the LM Studio SDK (talks to a local LM Studio
instance) and a plain OpenAI-compatible HTTP client, which also works with
LM Studio's REST server and with hosted APIs that need an API key.
Failures are raised as TransformError, or AuthError for HTTP 401/403.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx
import lmstudio as lms

from booksum import config
from booksum.errors import TransformError, error_for_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Generation:
    text: str
    token_count: int = 0


@runtime_checkable
class Transform(Protocol):
    """Anything that turns a prompt into text: the backends below, or a fake in tests."""

    async def generate(self, prompt: str, system_instruction: str, model: str) -> Generation:
        ...


class LMStudioTransform:
    """Runs the blocking LM Studio SDK calls in worker threads so several can be in flight."""

    def __init__(self):
        self._models = {}
        self._lock = threading.Lock()

    def _get_model(self, model):
        with self._lock:
            if model not in self._models:
                logger.info("Loading model '%s' from LM Studio...", model)
                self._models[model] = lms.llm(model)
            return self._models[model]

    def _respond(self, prompt, system_instruction, model):
        try:
            llm = self._get_model(model)
            chat = lms.Chat(system_instruction)
            chat.add_user_message(prompt)
            response = llm.respond(chat)
        except (lms.LMStudioError, OSError) as e:
            raise TransformError(f"Error communicating with LM Studio: {e}") from e
        return Generation(text=response.content or "", token_count=_lmstudio_token_count(response))

    async def generate(self, prompt, system_instruction, model):
        return await asyncio.to_thread(self._respond, prompt, system_instruction, model)


def _lmstudio_token_count(response):
    stats = getattr(response, "stats", None)
    if stats is None:
        return 0
    total = getattr(stats, "total_tokens_count", None)
    if total is None:
        total = (getattr(stats, "prompt_tokens_count", None) or 0) + (getattr(stats, "predicted_tokens_count", None) or 0)
    return total or 0


class OpenAICompatibleTransform:
    """
    Calls `POST {base_url}/chat/completions`.

    An httpx.AsyncClient may be passed in; otherwise one is created on first
    use and closed by `aclose()`.
    """

    def __init__(self, base_url=config.API_BASE_URL, api_key=None,
                 timeout_sec=config.REQUEST_TIMEOUT_SEC, client=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self._client = client
        self._owns_client = client is None

    @property
    def client(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_sec)
        return self._client

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, prompt, system_instruction, model):
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_instruction},
                {"role": "user", "content": prompt},
            ],
            "stream": False,
        }
        try:
            response = await self.client.post(f"{self.base_url}/chat/completions", json=payload,
                                              headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise error_for_status(f"LLM API returned HTTP {status}: {_error_detail(e.response)}", status) from e
        except httpx.TimeoutException as e:
            raise TransformError(f"LLM API request timed out after {self.timeout_sec}s") from e
        except httpx.HTTPError as e:
            raise TransformError(f"LLM API request failed: {e}") from e
        except ValueError as e:
            raise TransformError(f"LLM API returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise TransformError(f"Unexpected LLM API response shape: expected an object, got {type(data).__name__}")
        try:
            text = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise TransformError(f"Unexpected LLM API response shape: {e!r}") from e
        usage = data.get("usage")
        token_count = usage.get("total_tokens") if isinstance(usage, dict) else 0
        return Generation(text=text, token_count=token_count if isinstance(token_count, int) else 0)

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


def _error_detail(response):
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message", str(error))
        if error:
            return str(error)
    return str(body)[:200]


def create_transform(backend, base_url=config.API_BASE_URL, api_key=None, timeout_sec=config.REQUEST_TIMEOUT_SEC):
    if backend == "lmstudio":
        return LMStudioTransform()
    if backend == "http":
        return OpenAICompatibleTransform(base_url=base_url, api_key=api_key, timeout_sec=timeout_sec)
    raise ValueError(f"Unknown backend '{backend}'. Use 'lmstudio' or 'http'.")
