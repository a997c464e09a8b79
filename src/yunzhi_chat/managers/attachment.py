"""Attachment handling for images and files.

Encodes a selected file into an inline payload, issues revocable preview
handles for images, and guarantees that at most one preview is held.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass
import logging
import mimetypes
from pathlib import Path
from uuid import uuid4

from ..exceptions import AttachmentReadError, AttachmentTooLargeError
from ..models import DocumentMarker, ImageMarker, InlineAttachment

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
FALLBACK_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class EncodedAttachment:
    """Transfer-safe representation of a file's bytes."""

    mime_type: str
    data: str

    def to_inline(self) -> InlineAttachment:
        return InlineAttachment(mime_type=self.mime_type, base64_payload=self.data)


@dataclass(frozen=True)
class StagedAttachment:
    """The single attachment waiting for the next turn."""

    name: str
    encoded: EncodedAttachment
    preview: ImageMarker | DocumentMarker

    @property
    def is_image(self) -> bool:
        return isinstance(self.preview, ImageMarker)

    def message_marker(self) -> ImageMarker | DocumentMarker:
        """Display hint stored on the sent message (never a live handle)."""
        if self.is_image:
            return ImageMarker(ref=self.name)
        return DocumentMarker(name=self.name)


def guess_mime_type(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or FALLBACK_MIME_TYPE


def encode_bytes(data: bytes, mime_type: str) -> EncodedAttachment:
    """Pure transform from raw bytes to a base64 payload."""
    return EncodedAttachment(
        mime_type=mime_type, data=base64.b64encode(data).decode("ascii")
    )


class PreviewRegistry:
    """Issues and revokes local preview handles for staged images."""

    def __init__(self) -> None:
        self._handles: dict[str, bytes] = {}

    @property
    def open_count(self) -> int:
        return len(self._handles)

    def acquire(self, data: bytes) -> str:
        ref = f"preview:{uuid4().hex}"
        self._handles[ref] = data
        return ref

    def resolve(self, ref: str) -> bytes | None:
        return self._handles.get(ref)

    def revoke(self, ref: str) -> None:
        self._handles.pop(ref, None)


class AttachmentManager:
    """Manages the staged attachment of the pending turn.

    Responsibilities:
    - Reading and encoding the selected file
    - Enforcing the size cap
    - Preview handle ownership (release before acquire)
    """

    def __init__(
        self,
        previews: PreviewRegistry | None = None,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.previews = previews or PreviewRegistry()
        self.max_bytes = max_bytes
        self._staged: StagedAttachment | None = None
        self._on_status_update: Callable[[str], None] | None = None

    def on_status_update(self, callback: Callable[[str], None]) -> None:
        """Register callback for status messages."""
        self._on_status_update = callback

    @property
    def staged(self) -> StagedAttachment | None:
        return self._staged

    def encode(self, path: str | Path) -> EncodedAttachment:
        """Read a file and return its mime type and base64 payload."""
        resolved = Path(path).expanduser()
        try:
            if not resolved.is_file():
                raise AttachmentReadError(f"Not a file: {path}")
            size = resolved.stat().st_size
            if size > self.max_bytes:
                max_mb = self.max_bytes / (1024 * 1024)
                raise AttachmentTooLargeError(
                    f"Attachment too large (max {max_mb:.1f}MB): {resolved.name}"
                )
            data = resolved.read_bytes()
        except OSError as exc:
            raise AttachmentReadError(f"Unable to read {path}: {exc}") from exc
        return encode_bytes(data, guess_mime_type(resolved))

    def stage(self, path: str | Path) -> StagedAttachment:
        """Encode and stage a file, replacing any previous attachment.

        A failure leaves the previously staged attachment untouched.
        """
        resolved = Path(path).expanduser()
        try:
            encoded = self.encode(resolved)
        except AttachmentReadError as exc:
            LOGGER.warning(
                "attachment.rejected",
                extra={"event": "attachment.rejected", "reason": str(exc)},
            )
            if self._on_status_update:
                self._on_status_update(str(exc))
            raise

        self.release()
        preview: ImageMarker | DocumentMarker
        if encoded.mime_type.startswith("image/"):
            preview = ImageMarker(ref=self.previews.acquire(base64.b64decode(encoded.data)))
        else:
            preview = DocumentMarker(name=resolved.name)
        self._staged = StagedAttachment(
            name=resolved.name, encoded=encoded, preview=preview
        )
        LOGGER.info(
            "attachment.staged",
            extra={
                "event": "attachment.staged",
                "mime_type": encoded.mime_type,
                "name": resolved.name,
            },
        )
        if self._on_status_update:
            self._on_status_update(f"Attached: {resolved.name}")
        return self._staged

    def take(self) -> StagedAttachment | None:
        """Hand the staged attachment to a turn and release its preview."""
        staged = self._staged
        self.release()
        return staged

    def release(self) -> None:
        """Drop the staged attachment and revoke its preview handle."""
        staged = self._staged
        self._staged = None
        if staged is not None and isinstance(staged.preview, ImageMarker):
            self.previews.revoke(staged.preview.ref)
