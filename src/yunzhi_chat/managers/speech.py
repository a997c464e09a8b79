"""Speech playback for finalized assistant messages.

Only one message's audio may be requested, decoded or playing at a time.
Starting another message stops and releases the active clip first.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
from typing import TYPE_CHECKING

from ..audio import PlaybackHandle, parse_audio_mime
from ..models import Message
from ..state import PlaybackState, playback_state_manager
from ..task_manager import TaskManager

if TYPE_CHECKING:
    from ..audio import PlaybackPort
    from ..speech import SpeechSynthesizer

LOGGER = logging.getLogger(__name__)

PLAYBACK_TASK = "speech_playback"
DEFAULT_VOICE = "Kore"


class SpeechManager:
    """Manages text-to-speech requests and exclusive playback."""

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        port: PlaybackPort,
        *,
        voice: str = DEFAULT_VOICE,
        task_manager: TaskManager | None = None,
    ) -> None:
        self.synthesizer = synthesizer
        self.port = port
        self.voice = voice
        self.task_manager = task_manager or TaskManager()
        self._state = playback_state_manager()
        self._handle: PlaybackHandle | None = None
        self._active_id: str | None = None
        self._lock = asyncio.Lock()
        self._on_state_change: Callable[[PlaybackState, str | None], None] | None = None

    def on_state_change(
        self, callback: Callable[[PlaybackState, str | None], None]
    ) -> None:
        """Register callback for playback state updates."""
        self._on_state_change = callback

    @property
    def state(self) -> PlaybackState:
        return self._state.current

    @property
    def active_message_id(self) -> str | None:
        return self._active_id

    async def _set_state(self, new_state: PlaybackState) -> None:
        await self._state.transition_to(new_state)
        if self._on_state_change:
            self._on_state_change(new_state, self._active_id)

    async def play(self, message: Message) -> None:
        """Start speaking ``message``, stopping whatever is active first."""
        if not message.content.strip():
            return
        async with self._lock:
            await self._play(message)

    async def toggle(self, message: Message) -> None:
        """Stop if ``message`` is the active clip, otherwise play it."""
        async with self._lock:
            if self._active_id == message.id and self.state != PlaybackState.IDLE:
                await self._stop()
            elif message.content.strip():
                await self._play(message)

    async def stop(self) -> None:
        """Release the active handle and return to idle."""
        async with self._lock:
            await self._stop()

    async def _play(self, message: Message) -> None:
        await self._stop()
        self._active_id = message.id
        await self._set_state(PlaybackState.REQUESTING)
        self.task_manager.add(
            asyncio.create_task(self._run(message), name=PLAYBACK_TASK),
            name=PLAYBACK_TASK,
        )

    async def _stop(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.stop()
        await self.task_manager.cancel(PLAYBACK_TASK)
        if self.state != PlaybackState.IDLE:
            await self._set_state(PlaybackState.IDLE)
        self._active_id = None

    async def wait(self) -> None:
        """Wait for the active clip to end (naturally or by failure)."""
        await self.task_manager.wait(PLAYBACK_TASK)

    async def close(self) -> None:
        """Stop playback and close the synthesizer's connection."""
        await self.stop()
        aclose = getattr(self.synthesizer, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _run(self, message: Message) -> None:
        try:
            audio = await self.synthesizer.synthesize(message.content, self.voice)
            await self._set_state(PlaybackState.DECODING)
            audio_format = parse_audio_mime(audio.mime_type)
            if audio_format.is_pcm:
                handle = await self.port.decode_and_schedule(
                    audio.data, audio_format.sample_rate, audio_format.channels
                )
            else:
                handle = await self.port.play_encoded(audio.data, audio_format.mime_type)
            self._handle = handle
            await self._set_state(PlaybackState.PLAYING)
            LOGGER.info(
                "speech.playing",
                extra={
                    "event": "speech.playing",
                    "message_id": message.id,
                    "pcm": audio_format.is_pcm,
                },
            )
            await handle.wait()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - playback failures revert to idle.
            LOGGER.warning(
                "speech.failed",
                extra={
                    "event": "speech.failed",
                    "message_id": message.id,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
        finally:
            if self._active_id == message.id:
                handle, self._handle = self._handle, None
                if handle is not None:
                    handle.stop()
                self._active_id = None
                if self.state != PlaybackState.IDLE:
                    await self._set_state(PlaybackState.IDLE)
