"""AI provider gateway (Gemini generateContent over REST)."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from speakeval.config import Settings, get_settings
from speakeval.services.errors import MalformedResponseError, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)


@dataclass
class AudioPayload:
    """One provider-ready audio clip."""

    segment_key: str
    mime_type: str
    data: str  # base64

    @classmethod
    def from_prepared(cls, segment_key: str, prepared: dict) -> "AudioPayload":
        return cls(segment_key=segment_key, mime_type=prepared["mime_type"], data=prepared["data"])


class GeminiGateway:
    """Sends prompts (and optionally inline audio) to a Gemini model."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    def _build_body(self, audio_payloads: list[AudioPayload], prompt: str) -> dict:
        parts: list[dict] = [{"text": prompt}]
        for index, payload in enumerate(audio_payloads):
            parts.append({"text": f"AUDIO_{index}: {payload.segment_key}"})
            parts.append({"inline_data": {"mime_type": payload.mime_type, "data": payload.data}})
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.settings.provider_temperature,
                "responseMimeType": "application/json",
                "maxOutputTokens": 8192,
            },
        }

    async def generate(
        self,
        api_key: str,
        model: str,
        audio_payloads: list[AudioPayload],
        prompt: str,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Run one generateContent call.

        Args:
            api_key: Credential secret
            model: Model name, e.g. "gemini-2.5-flash"
            audio_payloads: Clips in the order the prompt refers to them
            prompt: Instruction text
            timeout: Hard limit for the whole call in seconds

        Returns:
            The concatenated text of the first candidate
        """
        timeout = timeout or self.settings.provider_timeout_seconds
        try:
            return await asyncio.wait_for(
                self._post(api_key, model, self._build_body(audio_payloads, prompt), timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderTimeout(f"Provider call timed out after {timeout}s") from e

    async def _post(self, api_key: str, model: str, body: dict, timeout: float) -> str:
        url = f"{self.settings.gemini_api_base}/models/{model}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json=body,
                    headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Provider request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderError(f"Network connection error calling provider: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(_error_message(response), status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError("Provider returned a non-JSON envelope") from e

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(f"Prompt blocked by provider: {block_reason}")
            raise MalformedResponseError("Provider returned no candidates")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)
        if not text.strip():
            raise MalformedResponseError("Provider returned an empty candidate")
        return text


def _error_message(response: httpx.Response) -> str:
    try:
        error = response.json().get("error") or {}
        message = f"{error.get('code', response.status_code)} {error.get('status', '')}: {error.get('message', '')}"
        return f"{message} {response.text[:800]}"
    except ValueError:
        return f"{response.status_code}: {response.text[:800]}"
