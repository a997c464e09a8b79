"""Message and session records shared by the timeline, engine, and store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]

# Sent as the user text when a turn carries only an attachment.
DEFAULT_ATTACHMENT_PROMPT = "Tolong analisis gambar ini."
PROVIDER_ERROR_MESSAGE = (
    "Maaf, terjadi kesalahan saat menghubungi AI. Silakan coba lagi."
)
STORE_ERROR_MESSAGE = "Maaf, percakapan gagal disimpan. Silakan coba lagi."
FALLBACK_TITLE = "Analisis Lampiran"
TITLE_MAX_CHARS = 30


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid4().hex


class _Record(BaseModel):
    """Base model that reads and writes camelCase document fields."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class InlineAttachment(_Record):
    """Binary content carried inside a message part."""

    mime_type: str
    base64_payload: str

    @property
    def is_image(self) -> bool:
        return self.mime_type.lower().startswith("image/")


class ImageMarker(_Record):
    """Display hint for an image attachment."""

    kind: Literal["image"] = "image"
    ref: str


class DocumentMarker(_Record):
    """Display hint for a non-image attachment."""

    kind: Literal["document"] = "document"
    name: str


AttachmentKind = Annotated[
    Union[ImageMarker, DocumentMarker], Field(discriminator="kind")
]


class Message(_Record):
    """One entry of a conversation timeline."""

    id: str = Field(default_factory=new_message_id)
    role: Role
    content: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    inline_attachment: InlineAttachment | None = None
    attachment_marker: AttachmentKind | None = None


class SessionSummary(_Record):
    """Conversation list row."""

    id: str
    title: str
    is_public: bool = False
    updated_at: datetime


class Session(_Record):
    """Complete persisted conversation record."""

    id: str
    title: str
    messages: list[Message] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    is_public: bool = False

    def summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            title=self.title,
            is_public=self.is_public,
            updated_at=self.updated_at,
        )


def derive_title(messages: list[Message]) -> str:
    """Build the immutable session title from the first user turn."""
    first = next((m for m in messages if m.role == "user"), None)
    if first is None:
        return FALLBACK_TITLE
    text = " ".join(first.content.split())
    attachment_only = first.inline_attachment is not None and (
        not text or text == DEFAULT_ATTACHMENT_PROMPT
    )
    if attachment_only or not text:
        return FALLBACK_TITLE
    return text[:TITLE_MAX_CHARS].rstrip()
