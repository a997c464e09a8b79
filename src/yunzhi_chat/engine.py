"""Chat session engine: one active conversation and its turn lifecycle."""

from __future__ import annotations

from itertools import count
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from .chat import CompletionRequest, build_history, build_turn_parts
from .config import DEFAULT_SYSTEM_PROMPT
from .exceptions import ProviderError, StoreError, TimelineError, YunZhiError
from .managers.attachment import AttachmentManager, StagedAttachment
from .managers.stream import StaleTurnError, StreamManager
from .models import (
    DEFAULT_ATTACHMENT_PROMPT,
    PROVIDER_ERROR_MESSAGE,
    STORE_ERROR_MESSAGE,
    Message,
    SessionSummary,
)
from .state import TurnState, turn_state_manager
from .timeline import MessageTimeline

if TYPE_CHECKING:
    from .chat import CompletionProvider
    from .managers.conversation import ConversationManager
    from .managers.speech import SpeechManager

LOGGER = logging.getLogger(__name__)


class ChatEngine:
    """Owns the active session: timeline, turn state and staged attachment.

    The completion provider, store synchronizer and speech pipeline are
    injected so tests can substitute any of them.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        conversations: ConversationManager,
        *,
        attachments: AttachmentManager | None = None,
        speech: SpeechManager | None = None,
        model: str,
        system_instruction: str = DEFAULT_SYSTEM_PROMPT,
        chunk_size: int = 1,
    ) -> None:
        self.provider = provider
        self.conversations = conversations
        self.attachments = attachments or AttachmentManager()
        self.speech = speech
        self.model = model
        self.system_instruction = system_instruction
        self.timeline = MessageTimeline()
        self.streams = StreamManager(provider, self.timeline, chunk_size=chunk_size)
        self.turn_state = turn_state_manager()
        self._active_session_id: str | None = None
        self._turn_tokens = count(1)
        self._turn_owner: int | None = None

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def messages(self) -> list[Message]:
        return self.timeline.messages

    @property
    def is_busy(self) -> bool:
        return self.turn_state.current != TurnState.IDLE

    @property
    def sessions(self) -> list[SessionSummary]:
        return self.conversations.sessions

    def filter_sessions(self, query: str) -> list[SessionSummary]:
        return self.conversations.filter_sessions(query)

    async def start(self) -> None:
        await self.conversations.start()

    async def close(self) -> None:
        """Stop background work and close every client connection."""
        if self.speech is not None:
            await self.speech.close()
        await self.conversations.close()
        self.attachments.release()
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()

    def set_model(self, model_name: str) -> None:
        normalized = model_name.strip()
        if normalized:
            self.model = normalized

    def stage_attachment(self, path: str | Path) -> StagedAttachment:
        return self.attachments.stage(path)

    def clear_attachment(self) -> None:
        self.attachments.release()

    async def submit(self, text: str) -> bool:
        """Run one full turn; returns ``False`` if the submit was rejected.

        A submit is rejected when a turn is already in flight or when there
        is neither text nor a staged attachment.
        """
        if not text.strip() and self.attachments.staged is None:
            return False
        if not await self.turn_state.transition_if(TurnState.IDLE, TurnState.STREAMING):
            LOGGER.info("turn.rejected", extra={"event": "turn.rejected"})
            return False
        token = next(self._turn_tokens)
        self._turn_owner = token
        try:
            await self._run_turn(text)
        finally:
            if self._turn_owner == token:
                self._turn_owner = None
                await self.turn_state.transition_to(TurnState.IDLE)
        return True

    async def _run_turn(self, text: str) -> None:
        generation = self.timeline.generation
        staged = self.attachments.take()
        inline = staged.encoded.to_inline() if staged is not None else None
        history = build_history(self.timeline.messages)
        user_message = self.timeline.append(
            Message(
                role="user",
                content=text if text.strip() else DEFAULT_ATTACHMENT_PROMPT,
                inline_attachment=inline,
                attachment_marker=staged.message_marker() if staged else None,
            )
        )
        LOGGER.info(
            "turn.started",
            extra={
                "event": "turn.started",
                "session_id": self._active_session_id,
                "has_attachment": inline is not None,
            },
        )

        if self._active_session_id is None:
            try:
                session_id = await self.conversations.create_session(self.timeline.messages)
            except StoreError:
                # Retried with the full snapshot once the turn completes.
                session_id = None
            if self.timeline.generation != generation:
                return
            self._active_session_id = session_id

        request = CompletionRequest(
            history=history,
            message=build_turn_parts(user_message.content, inline),
            system_instruction=self.system_instruction,
            model=self.model,
        )
        try:
            await self.streams.stream_response(request)
        except StaleTurnError:
            return
        except (ProviderError, TimelineError) as exc:
            LOGGER.warning(
                "turn.failed",
                extra={
                    "event": "turn.failed",
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            if self.timeline.generation == generation:
                self.timeline.append(
                    Message(role="assistant", content=PROVIDER_ERROR_MESSAGE)
                )
            return

        await self.turn_state.transition_to(TurnState.PERSISTING)
        await self._persist(generation)

    async def _persist(self, generation: int) -> None:
        snapshot = self.timeline.messages
        try:
            if self._active_session_id is None:
                session_id = await self.conversations.create_session(snapshot)
                if self.timeline.generation == generation:
                    self._active_session_id = session_id
            else:
                await self.conversations.append_turn(self._active_session_id, snapshot)
        except StoreError as exc:
            LOGGER.error(
                "turn.persist.failed",
                extra={"event": "turn.persist.failed", "error": str(exc)},
            )
            if self.timeline.generation == generation:
                self.timeline.append(Message(role="assistant", content=STORE_ERROR_MESSAGE))

    def _switch(self, messages: list[Message], session_id: str | None) -> None:
        """Replace the timeline and drop everything staged for the old session."""
        self.attachments.release()
        self.timeline.replace(messages)
        self._active_session_id = session_id
        if self._turn_owner is not None:
            # The in-flight turn notices the new generation and stands down.
            self._turn_owner = None
            self.turn_state = turn_state_manager()

    async def new_conversation(self) -> None:
        self._switch([], None)

    async def load_session(self, session_id: str) -> list[Message]:
        session = await self.conversations.load_session(session_id)
        self._switch(session.messages, session.id)
        LOGGER.info(
            "session.loaded",
            extra={
                "event": "session.loaded",
                "session_id": session.id,
                "message_count": len(session.messages),
            },
        )
        return self.timeline.messages

    async def delete_session(self, session_id: str) -> None:
        await self.conversations.delete_session(session_id)
        if session_id == self._active_session_id:
            self._switch([], None)

    async def set_public(self, session_id: str, is_public: bool) -> None:
        await self.conversations.set_public(session_id, is_public)

    async def speak(self, message_id: str) -> None:
        """Play a finalized assistant message through the speech pipeline."""
        if self.speech is None:
            raise YunZhiError("Speech playback is not configured.")
        message = self.timeline.get(message_id)
        if message is None or message.role != "assistant":
            raise YunZhiError(f"No assistant message {message_id!r} to speak.")
        if message_id == self.timeline.streaming_id:
            raise YunZhiError("Message is still streaming.")
        await self.speech.play(message)

    async def stop_speaking(self) -> None:
        if self.speech is not None:
            await self.speech.stop()
