"""Tests for the Gemini gateway using a mock HTTP transport."""

import json

import httpx
import pytest

from speakeval.services.errors import ErrorKind, MalformedResponseError, ProviderError, ProviderTimeout, classify
from speakeval.services.provider import AudioPayload, GeminiGateway


def gateway(settings, handler) -> GeminiGateway:
    return GeminiGateway(settings, transport=httpx.MockTransport(handler))


def candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


@pytest.mark.asyncio
async def test_generate_sends_prompt_then_labelled_audio(settings):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=candidate('{"ok": true}'))

    payloads = [
        AudioPayload("part1-q1", "audio/mpeg", "QUFB"),
        AudioPayload("part1-q2", "audio/webm", "QkJC"),
    ]
    text = await gateway(settings, handler).generate("key-123", "gemini-test", payloads, "Evaluate")

    assert text == '{"ok": true}'
    request = requests[0]
    assert request.url.path.endswith("/models/gemini-test:generateContent")
    assert request.headers["x-goog-api-key"] == "key-123"

    parts = json.loads(request.content)["contents"][0]["parts"]
    assert parts[0] == {"text": "Evaluate"}
    assert parts[1] == {"text": "AUDIO_0: part1-q1"}
    assert parts[2] == {"inline_data": {"mime_type": "audio/mpeg", "data": "QUFB"}}
    assert parts[3] == {"text": "AUDIO_1: part1-q2"}


@pytest.mark.asyncio
async def test_rate_limit_response_keeps_status(settings):
    def handler(request):
        return httpx.Response(
            429,
            json={"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Too many requests"}},
        )

    with pytest.raises(ProviderError) as exc_info:
        await gateway(settings, handler).generate("key", "gemini-test", [], "Evaluate")

    assert exc_info.value.status_code == 429
    assert classify(exc_info.value).kind == ErrorKind.RATE_LIMIT


@pytest.mark.asyncio
async def test_no_candidates_is_malformed(settings):
    with pytest.raises(MalformedResponseError):
        await gateway(settings, lambda request: httpx.Response(200, json={})).generate(
            "key", "gemini-test", [], "Evaluate"
        )


@pytest.mark.asyncio
async def test_blocked_prompt_is_a_provider_error(settings):
    body = {"promptFeedback": {"blockReason": "SAFETY"}}
    with pytest.raises(ProviderError, match="SAFETY"):
        await gateway(settings, lambda request: httpx.Response(200, json=body)).generate(
            "key", "gemini-test", [], "Evaluate"
        )


@pytest.mark.asyncio
async def test_transport_timeout_becomes_provider_timeout(settings):
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderTimeout):
        await gateway(settings, handler).generate("key", "gemini-test", [], "Evaluate")


@pytest.mark.asyncio
async def test_server_error_is_transient(settings):
    with pytest.raises(ProviderError) as exc_info:
        await gateway(settings, lambda request: httpx.Response(503, text="overloaded")).generate(
            "key", "gemini-test", [], "Evaluate"
        )
    assert classify(exc_info.value).kind == ErrorKind.TRANSIENT
