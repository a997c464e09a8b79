"""Stream management for assistant responses.

Drives one request/response turn against the completion provider and keeps
the in-flight assistant message of the timeline in step with the stream.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
from typing import TYPE_CHECKING

from ..exceptions import ProviderError, ProviderStreamingError
from ..models import Message
from ..stream_handler import StreamHandler

if TYPE_CHECKING:
    from ..chat import CompletionProvider, CompletionRequest
    from ..timeline import MessageTimeline

LOGGER = logging.getLogger(__name__)


class StaleTurnError(Exception):
    """Raised internally when the session was switched mid-stream."""


class StreamManager:
    """Manages streaming responses from the completion provider.

    Responsibilities:
    - Placeholder assistant message lifecycle
    - Fragment accumulation and draft publishing
    - Discarding partial text when the turn fails
    """

    def __init__(
        self,
        provider: CompletionProvider,
        timeline: MessageTimeline,
        *,
        chunk_size: int = 1,
    ) -> None:
        self.provider = provider
        self.timeline = timeline
        self.chunk_size = chunk_size
        self._on_draft: list[Callable[[Message], None]] = []

    def on_draft(self, callback: Callable[[Message], None]) -> None:
        """Register a callback invoked with every published draft."""
        self._on_draft.append(callback)

    def _publish(self, message_id: str, generation: int, text: str) -> None:
        if self.timeline.generation != generation:
            raise StaleTurnError(message_id)
        updated = self.timeline.update_content(message_id, text)
        for callback in self._on_draft:
            callback(updated)

    async def stream_response(self, request: CompletionRequest) -> Message:
        """Stream an assistant reply into a new placeholder message.

        Returns the finalized message. On provider failure the placeholder is
        removed before the mapped error is re-raised; if the session is
        switched mid-stream ``StaleTurnError`` is raised and the (new)
        timeline is left untouched.
        """
        generation = self.timeline.generation
        placeholder = self.timeline.append(Message(role="assistant"), streaming=True)
        handler = StreamHandler(
            lambda text: self._publish(placeholder.id, generation, text),
            chunk_size=self.chunk_size,
        )
        stream = self.provider.stream(request)
        try:
            async for fragment in stream:
                if self.timeline.generation != generation:
                    raise StaleTurnError(placeholder.id)
                handler.handle_fragment(fragment)
            if self.timeline.generation != generation:
                raise StaleTurnError(placeholder.id)
            handler.finalize()
        except StaleTurnError:
            LOGGER.info(
                "stream.discarded_stale",
                extra={
                    "event": "stream.discarded_stale",
                    "fragments": handler.fragment_count,
                },
            )
            raise
        except ProviderError:
            self.timeline.discard(placeholder.id)
            raise
        except Exception as exc:  # noqa: BLE001 - any provider failure aborts the turn.
            self.timeline.discard(placeholder.id)
            raise ProviderStreamingError(str(exc)) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        final = self.timeline.finalize(placeholder.id)
        LOGGER.info(
            "stream.completed",
            extra={
                "event": "stream.completed",
                "fragments": handler.fragment_count,
                "publishes": handler.publish_count,
                "chars": len(final.content),
            },
        )
        return final
