"""Fragment accumulator that publishes streaming drafts."""

from __future__ import annotations

from collections.abc import Callable


class StreamHandler:
    """Accumulates text fragments and publishes the growing draft.

    Fragments are buffered up to ``chunk_size`` before a publish; the final
    flush guarantees every received fragment reaches the draft.
    """

    def __init__(self, publish: Callable[[str], None], chunk_size: int = 1) -> None:
        self._publish = publish
        self._chunk_size = max(1, chunk_size)
        self._buffer: list[str] = []
        self._text = ""
        self.fragment_count = 0
        self.publish_count = 0

    @property
    def text(self) -> str:
        """Return everything received so far, published or not."""
        return self._text + "".join(self._buffer)

    def handle_fragment(self, text: str) -> None:
        """Buffer one fragment and publish once the batch is full."""
        if not text:
            return
        self.fragment_count += 1
        self._buffer.append(text)
        if len(self._buffer) >= self._chunk_size:
            self.flush_buffer()

    def flush_buffer(self) -> None:
        """Publish any buffered fragments as the new draft."""
        if not self._buffer:
            return
        self._text += "".join(self._buffer)
        self._buffer.clear()
        self.publish_count += 1
        self._publish(self._text)

    def finalize(self) -> str:
        """Flush the remaining buffer and return the complete text."""
        self.flush_buffer()
        return self._text
