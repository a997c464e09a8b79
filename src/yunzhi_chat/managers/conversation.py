"""Session synchronization with the remote document store.

Handles snapshot create/overwrite/load/delete and keeps a live,
recency-ordered conversation list fed by the store's change feed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
import logging
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..exceptions import (
    SessionNotFoundError,
    StoreError,
    StoreReadError,
    StoreWriteError,
)
from ..models import Message, Session, SessionSummary, derive_title, utc_now
from ..task_manager import TaskManager

if TYPE_CHECKING:
    from ..persistence import DocumentStore

LOGGER = logging.getLogger(__name__)

SUBSCRIPTION_TASK = "sessions_subscription"


def next_timestamp(previous: datetime | None) -> datetime:
    """Return a millisecond-precision UTC time strictly after ``previous``."""
    now = utc_now()
    now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
    if previous is not None and now <= previous:
        return previous + timedelta(milliseconds=1)
    return now


class ConversationManager:
    """Manages remote session snapshots and the live session list.

    Responsibilities:
    - Create, overwrite, load, delete and share sessions
    - Strictly increasing ``updatedAt`` per session
    - Live list subscription that survives store failures
    """

    def __init__(
        self,
        store: DocumentStore,
        task_manager: TaskManager | None = None,
        *,
        retry_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.task_manager = task_manager or TaskManager()
        self.retry_seconds = retry_seconds
        self._sessions: list[SessionSummary] = []
        self._updated_at: dict[str, datetime] = {}
        self._listeners: list[Callable[[list[SessionSummary]], None]] = []

    @property
    def sessions(self) -> list[SessionSummary]:
        """Return the last known session list, newest first."""
        return list(self._sessions)

    def on_sessions_changed(
        self, callback: Callable[[list[SessionSummary]], None]
    ) -> None:
        self._listeners.append(callback)

    def filter_sessions(self, query: str) -> list[SessionSummary]:
        """Return sessions whose title contains ``query`` (case-insensitive)."""
        needle = query.strip().casefold()
        if not needle:
            return self.sessions
        return [s for s in self._sessions if needle in s.title.casefold()]

    @staticmethod
    def _dump_messages(messages: Sequence[Message]) -> list[dict[str, Any]]:
        return [message.to_document() for message in messages]

    async def create_session(self, messages: Sequence[Message]) -> str:
        """Create a remote record for a new session and return its id."""
        now = next_timestamp(None)
        document = {
            "title": derive_title(list(messages)),
            "createdAt": now,
            "updatedAt": now,
            "messages": self._dump_messages(messages),
            "isPublic": False,
        }
        try:
            session_id = await self.store.create(document)
        except Exception as exc:  # noqa: BLE001 - any backend failure is a write failure.
            LOGGER.error(
                "session.create.failed",
                extra={"event": "session.create.failed", "error": str(exc)},
            )
            raise StoreWriteError(f"Unable to create session: {exc}") from exc
        self._updated_at[session_id] = now
        LOGGER.info(
            "session.created",
            extra={
                "event": "session.created",
                "session_id": session_id,
                "title": document["title"],
            },
        )
        return session_id

    async def append_turn(self, session_id: str, messages: Sequence[Message]) -> datetime:
        """Overwrite the remote message array and advance ``updatedAt``."""
        updated_at = next_timestamp(self._updated_at.get(session_id))
        try:
            await self.store.update(
                session_id,
                {"messages": self._dump_messages(messages), "updatedAt": updated_at},
            )
        except SessionNotFoundError:
            raise
        except Exception as exc:  # noqa: BLE001
            LOGGER.error(
                "session.write.failed",
                extra={
                    "event": "session.write.failed",
                    "session_id": session_id,
                    "error": str(exc),
                },
            )
            raise StoreWriteError(f"Unable to save session {session_id}: {exc}") from exc
        self._updated_at[session_id] = updated_at
        LOGGER.info(
            "session.saved",
            extra={
                "event": "session.saved",
                "session_id": session_id,
                "message_count": len(messages),
            },
        )
        return updated_at

    async def load_session(self, session_id: str) -> Session:
        """Fetch the stored snapshot of a session."""
        try:
            record = await self.store.get(session_id)
        except Exception as exc:  # noqa: BLE001
            raise StoreReadError(f"Unable to load session {session_id}: {exc}") from exc
        if record is None:
            raise SessionNotFoundError(f"Session {session_id!r} does not exist.")
        try:
            session = Session.model_validate(record)
        except ValidationError as exc:
            raise StoreReadError(f"Session {session_id!r} is malformed: {exc}") from exc
        self._updated_at[session_id] = session.updated_at
        return session

    async def delete_session(self, session_id: str) -> None:
        try:
            await self.store.delete(session_id)
        except Exception as exc:  # noqa: BLE001
            raise StoreWriteError(f"Unable to delete session {session_id}: {exc}") from exc
        self._updated_at.pop(session_id, None)
        LOGGER.info(
            "session.deleted",
            extra={"event": "session.deleted", "session_id": session_id},
        )

    async def set_public(self, session_id: str, is_public: bool) -> None:
        """Toggle the sharing flag without touching ``updatedAt``."""
        try:
            await self.store.update(session_id, {"isPublic": bool(is_public)})
        except StoreError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StoreWriteError(f"Unable to share session {session_id}: {exc}") from exc

    async def refresh_sessions(self) -> list[SessionSummary]:
        """Re-query the list; rows that fail validation are skipped."""
        rows = await self.store.list_recent()
        summaries: list[SessionSummary] = []
        for row in rows:
            try:
                summaries.append(SessionSummary.model_validate(row))
            except ValidationError:
                LOGGER.warning(
                    "sessions.row.invalid",
                    extra={"event": "sessions.row.invalid", "session_id": row.get("id")},
                )
        summaries.sort(key=lambda item: item.updated_at, reverse=True)
        self._sessions = summaries
        for callback in self._listeners:
            callback(self.sessions)
        return self.sessions

    async def _subscribe(self) -> None:
        while True:
            try:
                async with self.store.watch() as changes:
                    await self.refresh_sessions()
                    async for _ in changes:
                        await self.refresh_sessions()
                LOGGER.info(
                    "sessions.subscription.closed",
                    extra={"event": "sessions.subscription.closed"},
                )
                return
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep the last known list.
                LOGGER.warning(
                    "sessions.subscription.error",
                    extra={
                        "event": "sessions.subscription.error",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                        "known_sessions": len(self._sessions),
                    },
                )
                await asyncio.sleep(self.retry_seconds)

    async def start(self) -> None:
        """Start the live list subscription in the background."""
        if self.task_manager.is_running(SUBSCRIPTION_TASK):
            return
        self.task_manager.add(
            asyncio.create_task(self._subscribe(), name=SUBSCRIPTION_TASK),
            name=SUBSCRIPTION_TASK,
        )

    async def stop(self) -> None:
        await self.task_manager.cancel(SUBSCRIPTION_TASK)

    async def close(self) -> None:
        """Stop the live list and close the store connection."""
        await self.stop()
        self.store.close()
