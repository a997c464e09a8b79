"""Tests for speech synthesis and exclusive playback."""

from __future__ import annotations

import asyncio
import base64
import json
import unittest

import httpx

from yunzhi_chat.audio import PlaybackHandle
from yunzhi_chat.exceptions import SpeechSynthesisError
from yunzhi_chat.managers.speech import SpeechManager
from yunzhi_chat.models import Message
from yunzhi_chat.speech import HttpSpeechClient, SynthesizedAudio
from yunzhi_chat.state import PlaybackState

PCM_MIME = "audio/L16;codec=pcm;rate=24000"


class FakeSynthesizer:
    """Records every request together with the port's handle states."""

    def __init__(self, port: FakePort, mime_type: str = PCM_MIME) -> None:
        self.port = port
        self.mime_type = mime_type
        self.error: Exception | None = None
        self.calls: list[tuple[str, list[bool]]] = []

    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        self.calls.append((text, [h.released for h in self.port.handles]))
        if self.error is not None:
            raise self.error
        return SynthesizedAudio(mime_type=self.mime_type, data=b"\x00\x00" * 8)


class FakePort:
    """Playback port whose clips last ``duration`` seconds."""

    def __init__(self, duration: float = 60.0) -> None:
        self.duration = duration
        self.handles: list[PlaybackHandle] = []
        self.pcm_calls: list[tuple[int, int]] = []
        self.encoded_calls: list[str] = []

    async def decode_and_schedule(
        self, raw: bytes, sample_rate: int, channels: int = 1
    ) -> PlaybackHandle:
        self.pcm_calls.append((sample_rate, channels))
        handle = PlaybackHandle(self.duration)
        self.handles.append(handle)
        return handle

    async def play_encoded(self, payload: bytes, mime_type: str) -> PlaybackHandle:
        self.encoded_calls.append(mime_type)
        handle = PlaybackHandle(self.duration)
        self.handles.append(handle)
        return handle


async def _wait_for_state(manager: SpeechManager, state: PlaybackState) -> None:
    async def _poll() -> None:
        while manager.state != state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=1)


def _reply(text: str) -> Message:
    return Message(role="assistant", content=text)


class SpeechManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate playback states and single-clip ownership."""

    async def test_natural_playback_walks_every_state(self) -> None:
        port = FakePort(duration=0.01)
        manager = SpeechManager(FakeSynthesizer(port), port)
        states: list[PlaybackState] = []
        manager.on_state_change(lambda state, _id: states.append(state))

        await manager.play(_reply("Halo"))
        await manager.wait()

        self.assertEqual(
            states,
            [
                PlaybackState.REQUESTING,
                PlaybackState.DECODING,
                PlaybackState.PLAYING,
                PlaybackState.IDLE,
            ],
        )
        self.assertEqual(port.pcm_calls, [(24000, 1)])
        self.assertTrue(port.handles[0].released)
        self.assertIsNone(manager.active_message_id)

    async def test_new_request_releases_active_clip_first(self) -> None:
        port = FakePort()
        synthesizer = FakeSynthesizer(port)
        manager = SpeechManager(synthesizer, port)

        await manager.play(_reply("first"))
        await _wait_for_state(manager, PlaybackState.PLAYING)
        second = _reply("second")
        await manager.play(second)
        await _wait_for_state(manager, PlaybackState.PLAYING)

        self.assertEqual(synthesizer.calls[1], ("second", [True]))
        self.assertEqual(manager.active_message_id, second.id)
        self.assertEqual(sum(1 for h in port.handles if not h.released), 1)
        await manager.stop()
        self.assertTrue(all(h.released for h in port.handles))
        self.assertEqual(manager.state, PlaybackState.IDLE)

    async def test_failed_synthesis_returns_to_idle(self) -> None:
        port = FakePort()
        synthesizer = FakeSynthesizer(port)
        synthesizer.error = SpeechSynthesisError("quota exceeded")
        manager = SpeechManager(synthesizer, port)

        with self.assertLogs("yunzhi_chat.managers.speech", level="WARNING") as logs:
            await manager.play(_reply("Halo"))
            await manager.wait()

        self.assertEqual(manager.state, PlaybackState.IDLE)
        self.assertEqual(port.handles, [])
        self.assertTrue(any("speech.failed" in line for line in logs.output))

    async def test_encoded_audio_uses_generic_decoder(self) -> None:
        port = FakePort(duration=0.0)
        manager = SpeechManager(FakeSynthesizer(port, mime_type="audio/mpeg"), port)
        await manager.play(_reply("Halo"))
        await manager.wait()
        self.assertEqual(port.encoded_calls, ["audio/mpeg"])
        self.assertEqual(port.pcm_calls, [])

    async def test_toggle_stops_active_message(self) -> None:
        port = FakePort()
        manager = SpeechManager(FakeSynthesizer(port), port)
        message = _reply("Halo")
        await manager.toggle(message)
        await _wait_for_state(manager, PlaybackState.PLAYING)
        await manager.toggle(message)
        self.assertEqual(manager.state, PlaybackState.IDLE)
        self.assertTrue(port.handles[0].released)

    async def test_concurrent_play_calls_hand_over_without_overlap(self) -> None:
        port = FakePort()
        synthesizer = FakeSynthesizer(port)
        manager = SpeechManager(synthesizer, port)
        first, second = _reply("first"), _reply("second")
        await manager.play(first)
        await _wait_for_state(manager, PlaybackState.PLAYING)

        results = await asyncio.gather(
            manager.play(first), manager.play(second), return_exceptions=True
        )

        self.assertEqual(results, [None, None])
        self.assertEqual(manager.active_message_id, second.id)
        await _wait_for_state(manager, PlaybackState.PLAYING)
        self.assertEqual(sum(1 for h in port.handles if not h.released), 1)
        self.assertEqual(synthesizer.calls[-1][0], "second")
        await manager.stop()
        self.assertEqual(manager.state, PlaybackState.IDLE)

    async def test_close_stops_playback_and_closes_synthesizer(self) -> None:
        port = FakePort()
        synthesizer = FakeSynthesizer(port)
        closed: list[bool] = []

        async def aclose() -> None:
            closed.append(True)

        synthesizer.aclose = aclose  # type: ignore[attr-defined]
        manager = SpeechManager(synthesizer, port)
        await manager.play(_reply("Halo"))
        await _wait_for_state(manager, PlaybackState.PLAYING)

        await manager.close()

        self.assertEqual(closed, [True])
        self.assertEqual(manager.state, PlaybackState.IDLE)
        self.assertTrue(port.handles[0].released)

    async def test_empty_message_is_not_spoken(self) -> None:
        port = FakePort()
        synthesizer = FakeSynthesizer(port)
        manager = SpeechManager(synthesizer, port)
        await manager.play(_reply("   "))
        self.assertEqual(synthesizer.calls, [])
        self.assertEqual(manager.state, PlaybackState.IDLE)


class HttpSpeechClientTests(unittest.IsolatedAsyncioTestCase):
    """Validate the synthesis HTTP contract with a mock transport."""

    async def test_synthesize_posts_text_and_voice(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "mimeType": PCM_MIME,
                    "data": base64.b64encode(b"\x01\x00").decode("ascii"),
                },
            )

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        speech = HttpSpeechClient("http://tts.local/api/tts", api_key="secret", client=client)
        audio = await speech.synthesize("Halo", "Kore")
        await speech.aclose()

        self.assertEqual(audio, SynthesizedAudio(mime_type=PCM_MIME, data=b"\x01\x00"))
        self.assertEqual(json.loads(seen[0].content), {"text": "Halo", "voice": "Kore"})
        self.assertEqual(seen[0].headers["Authorization"], "Bearer secret")

    async def test_http_error_is_synthesis_error(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500))
        )
        speech = HttpSpeechClient("http://tts.local/api/tts", client=client)
        with self.assertRaises(SpeechSynthesisError):
            await speech.synthesize("Halo", "Kore")

    async def test_missing_audio_is_synthesis_error(self) -> None:
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"mimeType": "audio/mpeg"})
            )
        )
        speech = HttpSpeechClient("http://tts.local/api/tts", client=client)
        with self.assertRaises(SpeechSynthesisError):
            await speech.synthesize("Halo", "Kore")


if __name__ == "__main__":
    unittest.main()
