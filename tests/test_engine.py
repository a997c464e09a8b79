"""End-to-end turn tests for the chat engine with in-memory fakes."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
import tempfile
from typing import Any
import unittest

from yunzhi_chat.audio import PlaybackHandle
from yunzhi_chat.chat import CompletionRequest
from yunzhi_chat.engine import ChatEngine
from yunzhi_chat.exceptions import ProviderConnectionError, TimelineError, YunZhiError
from yunzhi_chat.managers.conversation import ConversationManager
from yunzhi_chat.managers.speech import SpeechManager
from yunzhi_chat.models import (
    DEFAULT_ATTACHMENT_PROMPT,
    FALLBACK_TITLE,
    PROVIDER_ERROR_MESSAGE,
    STORE_ERROR_MESSAGE,
    ImageMarker,
    Message,
)
from yunzhi_chat.persistence import InMemoryDocumentStore
from yunzhi_chat.speech import SynthesizedAudio
from yunzhi_chat.state import PlaybackState


class FakeProvider:
    """Streams scripted replies; can pause after the first fragment."""

    def __init__(self, replies: list[list[str]] | None = None) -> None:
        self.replies = replies or []
        self.requests: list[CompletionRequest] = []
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.paused = asyncio.Event()
        self.closed = False

    async def stream(self, request: CompletionRequest) -> AsyncIterator[str]:
        self.requests.append(request)
        fragments = self.replies.pop(0) if self.replies else ["ok"]
        for index, fragment in enumerate(fragments):
            yield fragment
            if self.gate is not None and index == 0:
                self.paused.set()
                await self.gate.wait()
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        self.closed = True


class FlakyStore(InMemoryDocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False
        self.closed = False

    async def create(self, document: dict[str, Any]) -> str:
        if self.fail_writes:
            raise ConnectionError("store offline")
        return await super().create(document)

    async def update(self, doc_id: str, fields: dict[str, Any]) -> None:
        if self.fail_writes:
            raise ConnectionError("store offline")
        await super().update(doc_id, fields)

    def close(self) -> None:
        self.closed = True
        super().close()


class SilentSynthesizer:
    def __init__(self) -> None:
        self.closed = False

    async def synthesize(self, text: str, voice: str) -> SynthesizedAudio:
        return SynthesizedAudio(mime_type="audio/L16;rate=24000", data=b"\x00\x00")

    async def aclose(self) -> None:
        self.closed = True


class SilentPort:
    async def decode_and_schedule(
        self, raw: bytes, sample_rate: int, channels: int = 1
    ) -> PlaybackHandle:
        return PlaybackHandle(60)

    async def play_encoded(self, payload: bytes, mime_type: str) -> PlaybackHandle:
        return PlaybackHandle(60)


class ChatEngineTests(unittest.IsolatedAsyncioTestCase):
    """Validate the full turn lifecycle against the store."""

    def setUp(self) -> None:
        self.store = FlakyStore()
        self.provider = FakeProvider()
        self.engine = ChatEngine(
            self.provider, ConversationManager(self.store), model="test-model"
        )

    async def _records(self) -> list[dict[str, Any]]:
        rows = await self.store.list_recent()
        return [await self.store.get(row["id"]) for row in rows]

    async def test_hello_turn_is_streamed_and_saved(self) -> None:
        self.provider.replies = [["Hi", " there!"]]

        self.assertTrue(await self.engine.submit("Hello"))

        self.assertEqual(
            [(m.role, m.content) for m in self.engine.messages],
            [("user", "Hello"), ("assistant", "Hi there!")],
        )
        records = await self._records()
        self.assertEqual(len(records), 1)
        record = records[0]
        self.assertEqual(record["id"], self.engine.active_session_id)
        self.assertEqual(record["title"], "Hello")
        self.assertEqual(len(record["messages"]), 2)
        self.assertGreater(record["updatedAt"], record["createdAt"])
        self.assertFalse(self.engine.is_busy)

        request = self.provider.requests[0]
        self.assertEqual(request.history, [])
        self.assertEqual(request.model, "test-model")
        self.assertIn("Yun-Zhi", request.system_instruction)

    async def test_second_turn_sends_prior_history_and_overwrites(self) -> None:
        await self.engine.submit("Hello")
        session_id = self.engine.active_session_id
        first_saved = (await self.store.get(session_id))["updatedAt"]

        await self.engine.submit("And you?")

        history = self.provider.requests[1].history
        self.assertEqual([c.role for c in history], ["user", "assistant"])
        record = await self.store.get(session_id)
        self.assertEqual(len(record["messages"]), 4)
        self.assertGreater(record["updatedAt"], first_saved)
        self.assertEqual(len(await self.store.list_recent()), 1)

    async def test_image_only_turn(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "cat.png"
            image.write_bytes(b"\x89PNG\r\n\x1a\nfake")
            self.engine.stage_attachment(image)
            self.assertEqual(self.engine.attachments.previews.open_count, 1)

            self.assertTrue(await self.engine.submit(""))

        user = self.engine.messages[0]
        self.assertEqual(user.content, DEFAULT_ATTACHMENT_PROMPT)
        self.assertEqual(user.inline_attachment.mime_type, "image/png")
        self.assertEqual(user.attachment_marker, ImageMarker(ref="cat.png"))
        self.assertIsNone(self.engine.attachments.staged)
        self.assertEqual(self.engine.attachments.previews.open_count, 0)

        parts = self.provider.requests[0].message
        self.assertEqual(parts[0].inline_data, user.inline_attachment)
        self.assertEqual(parts[1].text, DEFAULT_ATTACHMENT_PROMPT)

        (record,) = await self._records()
        self.assertEqual(record["title"], FALLBACK_TITLE)

    async def test_failed_stream_leaves_only_error_message(self) -> None:
        self.provider.replies = [["Par", "tial"]]
        self.provider.error = ProviderConnectionError("connection reset")

        self.assertTrue(await self.engine.submit("Hello"))

        contents = [m.content for m in self.engine.messages]
        self.assertEqual(contents, ["Hello", PROVIDER_ERROR_MESSAGE])
        self.assertFalse(any("Par" in c for c in contents))
        (record,) = await self._records()
        self.assertEqual([m["content"] for m in record["messages"]], ["Hello"])
        self.assertFalse(self.engine.is_busy)

        self.provider.error = None
        self.assertTrue(await self.engine.submit("Hello again"))

    async def test_submit_rejected_while_turn_in_flight(self) -> None:
        self.provider.gate = asyncio.Event()
        first = asyncio.create_task(self.engine.submit("one"))
        await asyncio.wait_for(self.provider.paused.wait(), timeout=1)

        self.assertTrue(self.engine.is_busy)
        length, streaming_id = len(self.engine.timeline), self.engine.timeline.streaming_id
        self.assertFalse(await self.engine.submit("two"))
        self.assertEqual(len(self.engine.timeline), length)
        self.assertEqual(self.engine.timeline.streaming_id, streaming_id)

        self.provider.gate.set()
        self.assertTrue(await first)
        self.assertEqual(len(self.provider.requests), 1)
        self.assertEqual([m.content for m in self.engine.messages], ["one", "ok"])

    async def test_empty_submit_is_rejected(self) -> None:
        self.assertFalse(await self.engine.submit("   "))
        self.assertEqual(self.engine.messages, [])
        self.assertEqual(self.provider.requests, [])

    async def test_session_switch_discards_stale_stream(self) -> None:
        other_messages = [
            Message(role="user", content="older"),
            Message(role="assistant", content="answer"),
        ]
        other_id = await self.engine.conversations.create_session(other_messages)
        self.provider.replies = [["a", "b", "c"]]
        self.provider.gate = asyncio.Event()

        turn = asyncio.create_task(self.engine.submit("new question"))
        await asyncio.wait_for(self.provider.paused.wait(), timeout=1)
        abandoned_id = self.engine.active_session_id

        await self.engine.load_session(other_id)
        self.assertFalse(self.engine.is_busy)
        self.provider.gate.set()
        await turn

        self.assertEqual(self.engine.active_session_id, other_id)
        self.assertEqual(
            [m.content for m in self.engine.messages], ["older", "answer"]
        )
        other = await self.store.get(other_id)
        self.assertEqual(len(other["messages"]), 2)
        abandoned = await self.store.get(abandoned_id)
        self.assertEqual([m["content"] for m in abandoned["messages"]], ["new question"])

    async def test_store_failure_is_reported_in_timeline(self) -> None:
        await self.engine.submit("Hello")
        self.store.fail_writes = True

        self.assertTrue(await self.engine.submit("Again"))

        self.assertEqual(self.engine.messages[-1].content, STORE_ERROR_MESSAGE)
        self.assertFalse(self.engine.is_busy)

    async def test_unsaved_session_is_created_once_store_recovers(self) -> None:
        self.store.fail_writes = True
        await self.engine.submit("Hello")
        self.assertIsNone(self.engine.active_session_id)
        self.assertEqual(self.engine.messages[-1].content, STORE_ERROR_MESSAGE)

        self.store.fail_writes = False
        await self.engine.submit("Hello again")

        (record,) = await self._records()
        self.assertEqual(record["id"], self.engine.active_session_id)
        self.assertEqual(record["title"], "Hello")

    async def test_deleting_active_session_resets_timeline(self) -> None:
        await self.engine.submit("Hello")
        session_id = self.engine.active_session_id

        await self.engine.delete_session(session_id)

        self.assertIsNone(self.engine.active_session_id)
        self.assertEqual(self.engine.messages, [])
        self.assertEqual(await self.store.list_recent(), [])

    async def test_new_conversation_drops_staged_attachment(self) -> None:
        await self.engine.submit("Hi")
        with tempfile.TemporaryDirectory() as temp_dir:
            image = Path(temp_dir) / "cat.png"
            image.write_bytes(b"\x89PNG\r\n\x1a\nfake")
            self.engine.stage_attachment(image)

        await self.engine.new_conversation()

        self.assertIsNone(self.engine.active_session_id)
        self.assertEqual(self.engine.messages, [])
        self.assertIsNone(self.engine.attachments.staged)
        self.assertEqual(self.engine.attachments.previews.open_count, 0)
        self.assertEqual(len(await self.store.list_recent()), 1)

    async def test_set_public_updates_flag(self) -> None:
        await self.engine.submit("Hello")
        await self.engine.set_public(self.engine.active_session_id, True)
        (record,) = await self._records()
        self.assertTrue(record["isPublic"])

    async def test_speak_requires_finalized_assistant_message(self) -> None:
        speech = SpeechManager(SilentSynthesizer(), SilentPort())
        engine = ChatEngine(
            self.provider,
            ConversationManager(self.store),
            speech=speech,
            model="test-model",
        )
        await engine.submit("Hello")
        user, reply = engine.messages

        with self.assertRaises(YunZhiError):
            await engine.speak(user.id)

        await engine.speak(reply.id)
        self.assertEqual(speech.active_message_id, reply.id)
        await engine.stop_speaking()
        self.assertEqual(speech.state, PlaybackState.IDLE)

    async def test_late_timeline_error_stays_out_of_new_session(self) -> None:
        engine = self.engine

        class SwitchingStreams:
            async def stream_response(self, request: CompletionRequest) -> Message:
                await engine.new_conversation()
                raise TimelineError("draft already finalized")

        engine.streams = SwitchingStreams()  # type: ignore[assignment]

        with self.assertLogs("yunzhi_chat.engine", level="WARNING"):
            self.assertTrue(await engine.submit("Hello"))

        self.assertEqual(engine.messages, [])
        self.assertIsNone(engine.active_session_id)
        self.assertFalse(engine.is_busy)

    async def test_close_releases_every_client(self) -> None:
        synthesizer = SilentSynthesizer()
        engine = ChatEngine(
            self.provider,
            ConversationManager(self.store),
            speech=SpeechManager(synthesizer, SilentPort()),
            model="test-model",
        )
        await engine.start()
        await engine.submit("Hello")
        await engine.speak(engine.messages[-1].id)

        await engine.close()

        self.assertTrue(self.provider.closed)
        self.assertTrue(self.store.closed)
        self.assertTrue(synthesizer.closed)
        self.assertEqual(engine.speech.state, PlaybackState.IDLE)
        self.assertFalse(engine.conversations.task_manager.is_running("sessions_subscription"))

    async def test_speak_without_speech_pipeline(self) -> None:
        await self.engine.submit("Hello")
        with self.assertRaises(YunZhiError):
            await self.engine.speak(self.engine.messages[-1].id)


if __name__ == "__main__":
    unittest.main()
