"""Speech-synthesis provider contract and its HTTP client."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging
from typing import Any, Protocol

import httpx

from .exceptions import SpeechSynthesisError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SynthesizedAudio:
    mime_type: str
    data: bytes


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio: ...


class HttpSpeechClient:
    """Posts ``{text, voice}`` and reads ``{mimeType, data}`` (base64)."""

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        headers = {"Content-Type": "application/json"}
        if self.api_key.strip():
            headers["Authorization"] = f"Bearer {self.api_key.strip()}"
        payload: dict[str, Any] = {"text": text, "voice": voice}
        try:
            response = await self._client.post(
                self.endpoint, headers=headers, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SpeechSynthesisError(f"Speech synthesis failed: {exc}") from exc

        mime_type = data.get("mimeType") if isinstance(data, dict) else None
        encoded = data.get("data") if isinstance(data, dict) else None
        if not isinstance(mime_type, str) or not isinstance(encoded, str):
            raise SpeechSynthesisError("Speech response is missing mimeType or data.")
        try:
            audio = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise SpeechSynthesisError("Speech response data is not base64.") from exc
        LOGGER.info(
            "speech.synthesized",
            extra={
                "event": "speech.synthesized",
                "mime_type": mime_type,
                "bytes": len(audio),
            },
        )
        return SynthesizedAudio(mime_type=mime_type, data=audio)

    async def aclose(self) -> None:
        await self._client.aclose()
