from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest

from booksum import llm_client
from booksum.errors import AuthError, ErrorKind, TransformError, error_for_status
from booksum.llm_client import LMStudioTransform, OpenAICompatibleTransform, Transform, create_transform

from conftest import ScriptedTransform


def _transform(handler, api_key="secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatibleTransform(base_url="http://llm.test/v1/", api_key=api_key, client=client)


@pytest.mark.asyncio
async def test_http_generate_sends_chat_request():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "choices": [{"message": {"role": "assistant", "content": "A summary."}}],
            "usage": {"prompt_tokens": 90, "completion_tokens": 10, "total_tokens": 100},
        })

    generation = await _transform(handler).generate("Summarize this", "Be brief", "my-model")

    assert generation.text == "A summary."
    assert generation.token_count == 100
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["model"] == "my-model"
    assert seen["body"]["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "Summarize this"},
    ]


@pytest.mark.asyncio
async def test_http_without_api_key_sends_no_auth_header():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"choices": [{"message": {"content": None}}]})

    generation = await _transform(handler, api_key=None).generate("p", "s", "m")

    assert seen["auth"] is None
    assert generation.text == ""
    assert generation.token_count == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_http_auth_failures(status):
    def handler(request):
        return httpx.Response(status, json={"error": {"message": "Invalid API key"}})

    with pytest.raises(AuthError) as excinfo:
        await _transform(handler).generate("p", "s", "m")

    assert excinfo.value.kind == ErrorKind.AUTH
    assert excinfo.value.status_code == status
    assert "Invalid API key" in excinfo.value.message
    assert not excinfo.value.is_transient


@pytest.mark.asyncio
@pytest.mark.parametrize("status, transient", [(429, True), (503, True), (400, False), (404, False)])
async def test_http_other_failures(status, transient):
    def handler(request):
        return httpx.Response(status, text="nope")

    with pytest.raises(TransformError) as excinfo:
        await _transform(handler).generate("p", "s", "m")

    assert not isinstance(excinfo.value, AuthError)
    assert excinfo.value.status_code == status
    assert excinfo.value.is_transient is transient


@pytest.mark.asyncio
async def test_http_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransformError) as excinfo:
        await _transform(handler).generate("p", "s", "m")

    assert excinfo.value.status_code is None
    assert excinfo.value.is_transient


@pytest.mark.asyncio
async def test_http_unexpected_payload():
    def handler(request):
        return httpx.Response(200, json={"choices": []})

    with pytest.raises(TransformError, match="Unexpected LLM API response"):
        await _transform(handler).generate("p", "s", "m")


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [[{"choices": []}], "just text", 42])
async def test_http_non_object_payload(body):
    def handler(request):
        return httpx.Response(200, json=body)

    with pytest.raises(TransformError, match="expected an object"):
        await _transform(handler).generate("p", "s", "m")


@pytest.mark.asyncio
async def test_http_malformed_usage_counts_zero_tokens():
    def handler(request):
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}], "usage": ["not", "a", "dict"]})

    generation = await _transform(handler).generate("p", "s", "m")

    assert generation.text == "ok"
    assert generation.token_count == 0


@pytest.mark.asyncio
async def test_http_owned_client_is_closed():
    transform = OpenAICompatibleTransform(base_url="http://llm.test/v1")
    client = transform.client

    async with transform:
        pass

    assert client.is_closed
    assert transform._client is None


@pytest.mark.asyncio
async def test_lmstudio_generate(monkeypatch):
    model = MagicMock()
    model.respond.return_value = SimpleNamespace(content="Short version.",
                                                 stats=SimpleNamespace(total_tokens_count=42))
    load = MagicMock(return_value=model)
    monkeypatch.setattr(llm_client.lms, "llm", load)
    transform = LMStudioTransform()

    first = await transform.generate("Text", "System", "qwen")
    await transform.generate("More text", "System", "qwen")

    assert first.text == "Short version."
    assert first.token_count == 42
    load.assert_called_once_with("qwen")
    assert model.respond.call_count == 2


@pytest.mark.asyncio
async def test_lmstudio_token_count_falls_back_to_parts(monkeypatch):
    model = MagicMock()
    model.respond.return_value = SimpleNamespace(
        content="ok", stats=SimpleNamespace(total_tokens_count=None, prompt_tokens_count=7, predicted_tokens_count=3))
    monkeypatch.setattr(llm_client.lms, "llm", MagicMock(return_value=model))

    generation = await LMStudioTransform().generate("Text", "System", "qwen")

    assert generation.token_count == 10


@pytest.mark.asyncio
async def test_lmstudio_connection_failure(monkeypatch):
    monkeypatch.setattr(llm_client.lms, "llm", MagicMock(side_effect=ConnectionRefusedError("LM Studio not running")))

    with pytest.raises(TransformError, match="Error communicating with LM Studio"):
        await LMStudioTransform().generate("Text", "System", "qwen")


def test_create_transform():
    assert isinstance(create_transform("lmstudio"), LMStudioTransform)
    assert isinstance(create_transform("http", api_key="k"), OpenAICompatibleTransform)
    with pytest.raises(ValueError):
        create_transform("carrier-pigeon")


def test_error_for_status():
    assert isinstance(error_for_status("x", 401), AuthError)
    assert isinstance(error_for_status("x", 403), AuthError)
    error = error_for_status("x", 500)
    assert type(error) is TransformError
    assert error.is_transient


def test_backends_and_fakes_satisfy_transform():
    assert isinstance(LMStudioTransform(), Transform)
    assert isinstance(OpenAICompatibleTransform(), Transform)
    assert isinstance(ScriptedTransform(), Transform)
    assert not isinstance(object(), Transform)
