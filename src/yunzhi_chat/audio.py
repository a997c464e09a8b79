"""Audio payload decoding and the playback port used by the speech pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import mimetypes
from pathlib import Path
from typing import Protocol
import wave

import numpy as np

from .exceptions import AudioDecodeError

LOGGER = logging.getLogger(__name__)

PCM_MIME_TYPES = frozenset({"audio/l16", "audio/pcm", "audio/x-pcm", "audio/raw"})
DEFAULT_SAMPLE_RATE = 24_000
PCM16_SCALE = 32768.0


@dataclass(frozen=True)
class AudioFormat:
    """Decoded view of a synthesis response content type."""

    mime_type: str
    is_pcm: bool
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = 1


def parse_audio_mime(mime_type: str) -> AudioFormat:
    """Classify a content type as raw PCM or a self-describing encoding.

    ``audio/L16;codec=pcm;rate=24000`` is raw PCM at 24 kHz; ``audio/mpeg``
    or ``audio/wav`` are left to the backend's generic decoder.
    """
    pieces = [piece.strip() for piece in mime_type.split(";")]
    base = pieces[0].lower()
    params: dict[str, str] = {}
    for piece in pieces[1:]:
        key, _, value = piece.partition("=")
        params[key.strip().lower()] = value.strip().strip('"')
    if not base.startswith("audio/"):
        raise AudioDecodeError(f"Unsupported audio content type {mime_type!r}")
    if base not in PCM_MIME_TYPES:
        return AudioFormat(mime_type=base, is_pcm=False)
    try:
        rate = int(params.get("rate", DEFAULT_SAMPLE_RATE))
        channels = int(params.get("channels", 1))
    except ValueError as exc:
        raise AudioDecodeError(f"Malformed PCM parameters in {mime_type!r}") from exc
    if rate <= 0 or channels <= 0:
        raise AudioDecodeError(f"Malformed PCM parameters in {mime_type!r}")
    return AudioFormat(mime_type=base, is_pcm=True, sample_rate=rate, channels=channels)


def decode_pcm16(raw: bytes, channels: int = 1) -> np.ndarray:
    """De-interleave 16-bit little-endian PCM into float32 ``(frames, channels)``.

    Samples are scaled into ``[-1.0, 1.0)``; a trailing partial frame is dropped.
    """
    if channels <= 0:
        raise AudioDecodeError("Channel count must be positive.")
    frame_bytes = 2 * channels
    usable = len(raw) - (len(raw) % frame_bytes)
    if usable != len(raw):
        LOGGER.debug(
            "audio.pcm.truncated",
            extra={"event": "audio.pcm.truncated", "dropped_bytes": len(raw) - usable},
        )
    samples = np.frombuffer(raw[:usable], dtype="<i2").astype(np.float32) / PCM16_SCALE
    return samples.reshape(-1, channels)


class PlaybackHandle:
    """Ownership token for one scheduled clip.

    Completes naturally after ``duration`` seconds (``None`` means the backend
    finishes it) or early through ``stop``.
    """

    def __init__(self, duration: float | None = None) -> None:
        self.duration = duration
        self._done = asyncio.Event()
        self._released = False
        self._timer: asyncio.TimerHandle | None = None
        if duration is not None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(max(0.0, duration), self.finish)

    @property
    def released(self) -> bool:
        return self._released

    def finish(self) -> None:
        """Mark natural end of playback."""
        self._release()

    def stop(self) -> None:
        """Stop playback early and release the handle."""
        self._release()

    def _release(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._released = True
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()


class PlaybackPort(Protocol):
    """Platform audio backend."""

    async def decode_and_schedule(
        self, raw: bytes, sample_rate: int, channels: int = 1
    ) -> PlaybackHandle: ...

    async def play_encoded(self, payload: bytes, mime_type: str) -> PlaybackHandle: ...


class NullPlaybackBackend:
    """Headless backend: decodes and keeps time but produces no sound."""

    def __init__(self, realtime: bool = True) -> None:
        self.realtime = realtime

    async def decode_and_schedule(
        self, raw: bytes, sample_rate: int, channels: int = 1
    ) -> PlaybackHandle:
        samples = decode_pcm16(raw, channels)
        duration = samples.shape[0] / sample_rate if self.realtime else 0.0
        return PlaybackHandle(duration)

    async def play_encoded(self, payload: bytes, mime_type: str) -> PlaybackHandle:
        if not payload:
            raise AudioDecodeError(f"Empty {mime_type} payload.")
        return PlaybackHandle(0.0)


class WavFileBackend:
    """Renders each clip into ``directory`` instead of a sound device."""

    def __init__(self, directory: str | Path, realtime: bool = False) -> None:
        self.directory = Path(directory).expanduser()
        self.realtime = realtime
        self.last_path: Path | None = None
        self._counter = 0

    def _next_path(self, suffix: str) -> Path:
        self._counter += 1
        return self.directory / f"clip-{self._counter:04d}{suffix}"

    def _write_wav(
        self, target: Path, pcm: np.ndarray, sample_rate: int, channels: int
    ) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with wave.open(str(target), "wb") as writer:
            writer.setnchannels(channels)
            writer.setsampwidth(2)
            writer.setframerate(sample_rate)
            writer.writeframes(pcm.tobytes())

    def _write_bytes(self, target: Path, payload: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target.write_bytes(payload)

    async def decode_and_schedule(
        self, raw: bytes, sample_rate: int, channels: int = 1
    ) -> PlaybackHandle:
        samples = decode_pcm16(raw, channels)
        pcm = np.clip(np.round(samples * PCM16_SCALE), -32768, 32767).astype("<i2")
        target = self._next_path(".wav")
        await asyncio.to_thread(self._write_wav, target, pcm, sample_rate, channels)
        self.last_path = target
        duration = samples.shape[0] / sample_rate if self.realtime else 0.0
        return PlaybackHandle(duration)

    async def play_encoded(self, payload: bytes, mime_type: str) -> PlaybackHandle:
        if not payload:
            raise AudioDecodeError(f"Empty {mime_type} payload.")
        suffix = mimetypes.guess_extension(mime_type.split(";", 1)[0].strip()) or ".bin"
        target = self._next_path(suffix)
        await asyncio.to_thread(self._write_bytes, target, payload)
        self.last_path = target
        return PlaybackHandle(0.0)
