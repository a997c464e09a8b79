"""Ordered in-memory message timeline for the active session."""

from __future__ import annotations

from collections.abc import Iterable
import logging

from .exceptions import TimelineError
from .models import Message

LOGGER = logging.getLogger(__name__)


class MessageTimeline:
    """Authoritative ordered message list with a single streaming slot.

    ``generation`` increases on every wholesale replacement so callers that
    captured an older value can detect that the session was switched under
    them.
    """

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._index: dict[str, int] = {}
        self._streaming_id: str | None = None
        self._generation = 0

    @property
    def messages(self) -> list[Message]:
        """Return a shallow copy of all messages in insertion order."""
        return list(self._messages)

    @property
    def streaming_id(self) -> str | None:
        return self._streaming_id

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._messages)

    def get(self, message_id: str) -> Message | None:
        position = self._index.get(message_id)
        return None if position is None else self._messages[position]

    def append(self, message: Message, *, streaming: bool = False) -> Message:
        """Append a message; at most one may be marked streaming."""
        if message.id in self._index:
            raise TimelineError(f"Duplicate message id {message.id!r}")
        if streaming and self._streaming_id is not None:
            raise TimelineError("Another message is already streaming.")
        self._index[message.id] = len(self._messages)
        self._messages.append(message)
        if streaming:
            self._streaming_id = message.id
        return message

    def update_content(self, message_id: str, content: str) -> Message:
        """Replace the draft content of the streaming message.

        Content may only grow: the new value must extend the current one.
        """
        if message_id != self._streaming_id:
            raise TimelineError(f"Message {message_id!r} is not streaming.")
        position = self._index[message_id]
        current = self._messages[position]
        if not content.startswith(current.content):
            raise TimelineError("Streaming content is append-only.")
        updated = current.model_copy(update={"content": content})
        self._messages[position] = updated
        return updated

    def finalize(self, message_id: str) -> Message:
        if message_id != self._streaming_id:
            raise TimelineError(f"Message {message_id!r} is not streaming.")
        self._streaming_id = None
        return self._messages[self._index[message_id]]

    def discard(self, message_id: str) -> None:
        """Remove the streaming placeholder of a failed turn."""
        if message_id != self._streaming_id:
            raise TimelineError(f"Message {message_id!r} is not streaming.")
        self._streaming_id = None
        del self._messages[self._index[message_id]]
        self._reindex()

    def replace(self, messages: Iterable[Message]) -> None:
        """Swap in another session's snapshot wholesale."""
        incoming = list(messages)
        ids = [m.id for m in incoming]
        if len(set(ids)) != len(ids):
            raise TimelineError("Snapshot contains duplicate message ids.")
        self._messages = incoming
        self._streaming_id = None
        self._generation += 1
        self._reindex()
        LOGGER.debug(
            "timeline.replaced",
            extra={
                "event": "timeline.replaced",
                "generation": self._generation,
                "count": len(incoming),
            },
        )

    def reset(self) -> None:
        self.replace([])

    def _reindex(self) -> None:
        self._index = {m.id: i for i, m in enumerate(self._messages)}
