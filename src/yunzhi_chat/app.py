"""Console chat loop built on rich."""

from __future__ import annotations

import asyncio
import base64
import logging
import shlex
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from .audio import NullPlaybackBackend, WavFileBackend
from .chat import OllamaCompletionProvider
from .config import load_config
from .engine import ChatEngine
from .exceptions import YunZhiError
from .managers.attachment import AttachmentManager
from .managers.conversation import ConversationManager
from .managers.speech import SpeechManager
from .models import Message
from .persistence import DocumentStore, InMemoryDocumentStore, MongoDocumentStore
from .speech import HttpSpeechClient
from .state import PlaybackState
from .task_manager import TaskManager

LOGGER = logging.getLogger(__name__)

HELP_TEXT = """\
/new                 start a new conversation
/list [query]        list saved conversations (optionally filtered by title)
/load ID             open a saved conversation
/delete ID           delete a saved conversation
/public ID on|off    share or unshare a conversation
/attach PATH         attach a file to the next message
/detach              drop the staged attachment
/model [NAME]        show or switch the active model
/speak [N]           read message N aloud (default: last reply)
/copy [N]            copy message N (default: last reply)
/stop                stop speech playback
/quit                exit"""


def create_store(store_config: dict[str, Any]) -> DocumentStore:
    if store_config.get("backend") == "mongodb":
        return MongoDocumentStore(
            store_config["mongodb_uri"],
            database=store_config["database"],
            collection=store_config["collection"],
        )
    return InMemoryDocumentStore()


def create_speech(
    speech_config: dict[str, Any], task_manager: TaskManager
) -> SpeechManager | None:
    if not speech_config.get("enabled"):
        return None
    port = (
        WavFileBackend(speech_config["output_dir"])
        if speech_config.get("backend") == "wav"
        else NullPlaybackBackend()
    )
    client = HttpSpeechClient(
        speech_config["endpoint"],
        api_key=speech_config.get("api_key", ""),
        timeout=float(speech_config["timeout"]),
    )
    return SpeechManager(
        client, port, voice=speech_config["voice"], task_manager=task_manager
    )


def create_engine(config: dict[str, Any]) -> ChatEngine:
    """Wire a ``ChatEngine`` from validated configuration."""
    provider_config = config["provider"]
    task_manager = TaskManager()
    conversations = ConversationManager(
        create_store(config["store"]),
        task_manager,
        retry_seconds=float(config["store"]["subscription_retry_seconds"]),
    )
    return ChatEngine(
        OllamaCompletionProvider(
            provider_config["host"], timeout=int(provider_config["timeout"])
        ),
        conversations,
        attachments=AttachmentManager(max_bytes=int(config["attachments"]["max_bytes"])),
        speech=create_speech(config["speech"], task_manager),
        model=provider_config["model"],
        system_instruction=provider_config["system_prompt"],
        chunk_size=int(config["stream"]["chunk_size"]),
    )


class ConsoleApp:
    """Line-oriented chat front end."""

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        *,
        engine: ChatEngine | None = None,
        console: Console | None = None,
    ) -> None:
        self.config = config or load_config()
        self.engine = engine or create_engine(self.config)
        self.console = console or Console()
        self._printed = 0
        self._draft_id: str | None = None
        self._running = False
        self.engine.streams.on_draft(self._render_draft)
        self.engine.attachments.on_status_update(self._status)
        if self.engine.speech is not None:
            self.engine.speech.on_state_change(self._render_playback)

    def _status(self, text: str) -> None:
        self.console.print(f"[dim]{text}[/dim]")

    def _render_draft(self, message: Message) -> None:
        self._draft_id = message.id
        delta = message.content[self._printed :]
        self._printed = len(message.content)
        if delta:
            self.console.print(delta, end="", markup=False, highlight=False)

    def _render_playback(self, state: PlaybackState, message_id: str | None) -> None:
        if state != PlaybackState.IDLE:
            self._status(f"speech: {state.value}")

    def _render_message(self, index: int, message: Message) -> None:
        label = "You" if message.role == "user" else self.config["app"]["title"]
        attachment = ""
        marker = message.attachment_marker
        if marker is not None:
            name = marker.ref if marker.kind == "image" else marker.name
            attachment = f" [dim]\\[{marker.kind}: {name}][/dim]"
        self.console.print(f"[bold]{index}. {label}[/bold]{attachment}")
        self.console.print(Markdown(message.content))

    def _render_timeline(self) -> None:
        for index, message in enumerate(self.engine.messages, start=1):
            self._render_message(index, message)

    def _render_sessions(self, query: str = "") -> None:
        sessions = self.engine.filter_sessions(query)
        if not sessions:
            self._status("No saved conversations.")
            return
        table = Table("ID", "Title", "Updated", "Public")
        for summary in sessions:
            table.add_row(
                summary.id,
                summary.title,
                summary.updated_at.strftime("%Y-%m-%d %H:%M"),
                "yes" if summary.is_public else "",
            )
        self.console.print(table)

    async def send(self, text: str) -> None:
        before = len(self.engine.messages)
        self._printed = 0
        self._draft_id = None
        accepted = await self.engine.submit(text)
        if not accepted:
            self._status("Nothing to send, or a reply is still in progress.")
            return
        new_messages = self.engine.messages[before:]
        if self._printed:
            self.console.print()
            if all(message.id != self._draft_id for message in new_messages):
                self._status("(partial reply discarded)")
        for offset, message in enumerate(new_messages[1:], start=before + 2):
            if message.id != self._draft_id:
                self._render_message(offset, message)

    def _pick_message(self, argument: str) -> Message | None:
        """Resolve ``N`` to message N, or the latest reply when empty."""
        messages = self.engine.messages
        if argument:
            try:
                return messages[int(argument) - 1]
            except (ValueError, IndexError):
                self._status(f"No message {argument}.")
                return None
        replies = [m for m in messages if m.role == "assistant"]
        if not replies:
            self._status("No reply available.")
            return None
        return replies[-1]

    async def _speak(self, argument: str) -> None:
        target = self._pick_message(argument)
        if target is not None:
            await self.engine.speak(target.id)

    def _copy(self, argument: str) -> None:
        target = self._pick_message(argument)
        if target is None:
            return
        if self.console.is_terminal:
            payload = base64.b64encode(target.content.encode("utf-8")).decode("ascii")
            self.console.file.write(f"\x1b]52;c;{payload}\a")
            self.console.file.flush()
            self._status("Copied to clipboard.")
        else:
            self.console.print(target.content, markup=False, highlight=False)

    async def handle_command(self, line: str) -> None:
        parts = shlex.split(line)
        command, args = parts[0].lower(), parts[1:]
        if command == "/new":
            await self.engine.new_conversation()
            self._status("Started a new conversation.")
        elif command == "/list":
            self._render_sessions(" ".join(args))
        elif command == "/load" and args:
            await self.engine.load_session(args[0])
            self._render_timeline()
        elif command == "/delete" and args:
            await self.engine.delete_session(args[0])
            self._status(f"Deleted {args[0]}.")
        elif command == "/public" and len(args) == 2 and args[1] in {"on", "off"}:
            await self.engine.set_public(args[0], args[1] == "on")
            self._status(f"{args[0]} is now {'public' if args[1] == 'on' else 'private'}.")
        elif command == "/attach" and args:
            self.engine.stage_attachment(" ".join(args))
        elif command == "/detach":
            self.engine.clear_attachment()
            self._status("Attachment removed.")
        elif command == "/model":
            if args:
                self.engine.set_model(args[0])
            else:
                available = await self.engine.provider.list_models()
                for name in available:
                    mark = "*" if name == self.engine.model else " "
                    self.console.print(f"{mark} {name}", markup=False)
            self._status(f"Model: {self.engine.model}")
        elif command == "/speak":
            await self._speak(args[0] if args else "")
        elif command == "/copy":
            self._copy(args[0] if args else "")
        elif command == "/stop":
            await self.engine.stop_speaking()
        elif command == "/quit":
            self._running = False
        else:
            self.console.print(HELP_TEXT, markup=False)

    async def run_async(self) -> None:
        self._running = True
        await self.engine.start()
        self.console.print(
            f"[bold]{self.config['app']['title']}[/bold] [dim]({self.engine.model}) "
            "type /help for commands[/dim]"
        )
        try:
            while self._running:
                try:
                    line = await asyncio.to_thread(self.console.input, "[bold]> [/bold]")
                except EOFError:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    if line.startswith("/"):
                        await self.handle_command(line)
                    else:
                        await self.send(line)
                except YunZhiError as exc:
                    self.console.print(f"[red]{exc}[/red]", highlight=False)
                except ValueError as exc:
                    self.console.print(f"[red]Invalid command: {exc}[/red]")
        finally:
            await self.engine.close()

    def run(self) -> None:
        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            LOGGER.info("app.interrupted", extra={"event": "app.interrupted"})
