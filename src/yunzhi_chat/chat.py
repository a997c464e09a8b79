"""Completion provider contract and the Ollama-backed streaming client."""

from __future__ import annotations

import base64
import binascii
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

import httpx
from ollama import AsyncClient

from .exceptions import (
    ModelNotFoundError,
    ProviderConnectionError,
    ProviderError,
    ProviderStreamingError,
)
from .models import DEFAULT_ATTACHMENT_PROMPT, InlineAttachment, Message

LOGGER = logging.getLogger(__name__)

TEXTUAL_MIME_TYPES = frozenset(
    {"application/json", "application/xml", "application/x-yaml", "application/csv"}
)


@dataclass(frozen=True)
class Part:
    """One part of a turn: either text or inline binary data."""

    text: str | None = None
    inline_data: InlineAttachment | None = None


@dataclass(frozen=True)
class Content:
    """A role-tagged ordered list of parts."""

    role: str
    parts: tuple[Part, ...] = ()


@dataclass(frozen=True)
class CompletionRequest:
    """Everything the provider needs to stream one assistant reply."""

    history: list[Content]
    message: tuple[Part, ...]
    system_instruction: str
    model: str
    options: dict[str, Any] = field(default_factory=dict)


class CompletionProvider(Protocol):
    """Streams assistant text fragments for one turn."""

    def stream(self, request: CompletionRequest) -> AsyncIterator[str]: ...


def message_to_content(message: Message) -> Content:
    """Express a stored message as provider parts (attachment first)."""
    parts: list[Part] = []
    if message.inline_attachment is not None:
        parts.append(Part(inline_data=message.inline_attachment))
    if message.content:
        parts.append(Part(text=message.content))
    return Content(role=message.role, parts=tuple(parts))


def build_history(messages: Sequence[Message]) -> list[Content]:
    return [message_to_content(m) for m in messages]


def build_turn_parts(
    text: str, attachment: InlineAttachment | None = None
) -> tuple[Part, ...]:
    """Build the new turn's parts, substituting the default prompt when needed."""
    parts: list[Part] = []
    if attachment is not None:
        parts.append(Part(inline_data=attachment))
    if text.strip():
        parts.append(Part(text=text))
    elif attachment is not None:
        parts.append(Part(text=DEFAULT_ATTACHMENT_PROMPT))
    return tuple(parts)


def _is_textual(mime_type: str) -> bool:
    base = mime_type.split(";", 1)[0].strip().lower()
    return base.startswith("text/") or base in TEXTUAL_MIME_TYPES


def _describe_document(inline: InlineAttachment) -> str:
    """Render a non-image attachment as text the chat model can read."""
    if _is_textual(inline.mime_type):
        try:
            decoded = base64.b64decode(inline.base64_payload, validate=True)
            body = decoded.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            body = ""
        if body:
            return f"[Lampiran {inline.mime_type}]\n```\n{body}\n```"
    return f"[Lampiran {inline.mime_type} tidak dapat dibaca sebagai teks]"


def content_to_ollama(content: Content) -> dict[str, Any]:
    """Convert role+parts into an Ollama chat message."""
    texts: list[str] = []
    images: list[str] = []
    for part in content.parts:
        if part.inline_data is not None:
            if part.inline_data.is_image:
                images.append(part.inline_data.base64_payload)
            else:
                texts.append(_describe_document(part.inline_data))
        if part.text:
            texts.append(part.text)
    payload: dict[str, Any] = {"role": content.role, "content": "\n\n".join(texts)}
    if images:
        payload["images"] = images
    return payload


class OllamaCompletionProvider:
    """Streams replies from an Ollama host.

    Failed requests are never retried here; a failed turn is reported once
    and the user decides whether to resend.
    """

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        client: Any | None = None,
    ) -> None:
        self.host = host
        self.timeout = timeout
        self._client = client if client is not None else AsyncClient(
            host=host, timeout=timeout
        )

    def build_messages(self, request: CompletionRequest) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if request.system_instruction.strip():
            messages.append(
                {"role": "system", "content": request.system_instruction.strip()}
            )
        messages.extend(content_to_ollama(item) for item in request.history)
        messages.append(
            content_to_ollama(Content(role="user", parts=request.message))
        )
        return messages

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Yield text fragments as they arrive from the model."""
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": self.build_messages(request),
            "stream": True,
        }
        if request.options:
            kwargs["options"] = dict(request.options)
        LOGGER.info(
            "chat.request.start",
            extra={
                "event": "chat.request.start",
                "model": request.model,
                "history_length": len(request.history),
            },
        )
        try:
            stream = await self._client.chat(**kwargs)
            async for chunk in stream:
                text = self._extract_chunk_text(chunk)
                if text:
                    yield text
        except ProviderError:
            raise
        except Exception as exc:  # noqa: BLE001 - external API can fail in many ways.
            mapped = self._map_exception(exc, request.model)
            LOGGER.warning(
                "chat.request.failed",
                extra={
                    "event": "chat.request.failed",
                    "error_type": mapped.__class__.__name__,
                    "error": str(exc),
                },
            )
            raise mapped from exc

    async def list_models(self) -> list[str]:
        """Return available model names from the host."""
        try:
            response = await self._client.list()
        except Exception as exc:  # noqa: BLE001
            raise self._map_exception(exc, "") from exc
        models: Any = getattr(response, "models", None)
        if models is None and isinstance(response, dict):
            models = response.get("models")
        names: list[str] = []
        for model in models or []:
            for key in ("model", "name"):
                value = model.get(key) if isinstance(model, dict) else getattr(
                    model, key, None
                )
                if isinstance(value, str) and value.strip():
                    names.append(value.strip())
                    break
        return names

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.close()

    @staticmethod
    def _extract_chunk_text(chunk: Any) -> str:
        """Extract streamed text from an SDK object or a plain dict chunk."""
        message_obj = getattr(chunk, "message", None)
        if message_obj is not None and not isinstance(chunk, dict):
            value = getattr(message_obj, "content", None)
            return value if isinstance(value, str) else ""
        if isinstance(chunk, dict):
            message = chunk.get("message")
            if isinstance(message, dict):
                value = message.get("content")
                return value if isinstance(value, str) else ""
            value = chunk.get("response")
            return value if isinstance(value, str) else ""
        return ""

    def _map_exception(self, exc: Exception, model: str) -> ProviderError:
        lower_message = str(exc).lower()
        if isinstance(
            exc,
            (
                httpx.ConnectError,
                httpx.ConnectTimeout,
                httpx.ReadTimeout,
                httpx.NetworkError,
                ConnectionError,
            ),
        ):
            return ProviderConnectionError(f"Unable to reach provider at {self.host}.")
        if "model" in lower_message and (
            "not found" in lower_message or "404" in lower_message
        ):
            return ModelNotFoundError(f"Model {model!r} was not found on {self.host}.")
        return ProviderStreamingError(
            f"Failed to stream response from {self.host}: {exc}"
        )
