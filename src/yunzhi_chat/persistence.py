"""Document store backends for the "chats" collection.

Records use camelCase fields: ``title``, ``createdAt``, ``updatedAt``,
``messages`` and ``isPublic``. Every backend supports create, point read,
wholesale update, delete, a recency-ordered listing and a change feed.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from copy import deepcopy
import logging
from typing import Any, Protocol
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient

from .exceptions import SessionNotFoundError

LOGGER = logging.getLogger(__name__)

SUMMARY_FIELDS = ("title", "isPublic", "updatedAt")


class DocumentStore(Protocol):
    """Remote append-style document store holding chat records."""

    async def create(self, document: dict[str, Any]) -> str: ...

    async def get(self, doc_id: str) -> dict[str, Any] | None: ...

    async def update(self, doc_id: str, fields: dict[str, Any]) -> None: ...

    async def delete(self, doc_id: str) -> None: ...

    async def list_recent(self) -> list[dict[str, Any]]: ...

    def watch(self) -> Any:
        """Return an async context manager yielding an iterator of change events."""
        ...

    def close(self) -> None: ...


class InMemoryDocumentStore:
    """Process-local store with an asyncio change feed."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._watchers: set[asyncio.Queue[str | None]] = set()

    def _notify(self, doc_id: str) -> None:
        for queue in list(self._watchers):
            queue.put_nowait(doc_id)

    async def create(self, document: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        self._records[doc_id] = deepcopy(document)
        self._notify(doc_id)
        return doc_id

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        record = self._records.get(doc_id)
        if record is None:
            return None
        return {"id": doc_id, **deepcopy(record)}

    async def update(self, doc_id: str, fields: dict[str, Any]) -> None:
        record = self._records.get(doc_id)
        if record is None:
            raise SessionNotFoundError(f"No chat record {doc_id!r}")
        record.update(deepcopy(fields))
        self._notify(doc_id)

    async def delete(self, doc_id: str) -> None:
        if self._records.pop(doc_id, None) is not None:
            self._notify(doc_id)

    async def list_recent(self) -> list[dict[str, Any]]:
        rows = [
            {"id": doc_id, **{key: record.get(key) for key in SUMMARY_FIELDS}}
            for doc_id, record in self._records.items()
        ]
        return sorted(rows, key=lambda row: row["updatedAt"], reverse=True)

    @asynccontextmanager
    async def watch(self) -> AsyncIterator[AsyncIterator[str]]:
        queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._watchers.add(queue)

        async def _changes() -> AsyncIterator[str]:
            while True:
                doc_id = await queue.get()
                if doc_id is None:
                    return
                yield doc_id

        try:
            yield _changes()
        finally:
            self._watchers.discard(queue)

    def close(self) -> None:
        """End every open change feed."""
        for queue in list(self._watchers):
            queue.put_nowait(None)


class MongoDocumentStore:
    """MongoDB-backed store using change streams for the live listing.

    Change streams require a replica set or sharded cluster.
    """

    def __init__(
        self,
        uri: str = "mongodb://localhost:27017",
        database: str = "yunzhi",
        collection: str = "chats",
        client: Any | None = None,
    ) -> None:
        if client is None:
            client = AsyncIOMotorClient(uri, tz_aware=True)
        self._client = client
        self._collection = self._client[database][collection]

    @staticmethod
    def _from_mongo(document: dict[str, Any]) -> dict[str, Any]:
        payload = dict(document)
        payload["id"] = str(payload.pop("_id"))
        return payload

    async def create(self, document: dict[str, Any]) -> str:
        doc_id = uuid4().hex
        await self._collection.insert_one({"_id": doc_id, **document})
        return doc_id

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        document = await self._collection.find_one({"_id": doc_id})
        return None if document is None else self._from_mongo(document)

    async def update(self, doc_id: str, fields: dict[str, Any]) -> None:
        result = await self._collection.update_one({"_id": doc_id}, {"$set": fields})
        if result.matched_count == 0:
            raise SessionNotFoundError(f"No chat record {doc_id!r}")

    async def delete(self, doc_id: str) -> None:
        await self._collection.delete_one({"_id": doc_id})

    async def list_recent(self) -> list[dict[str, Any]]:
        projection = {key: 1 for key in SUMMARY_FIELDS}
        cursor = self._collection.find({}, projection).sort("updatedAt", -1)
        return [self._from_mongo(document) async for document in cursor]

    @asynccontextmanager
    async def watch(self) -> AsyncIterator[AsyncIterator[str]]:
        async with self._collection.watch() as stream:

            async def _changes() -> AsyncIterator[str]:
                async for change in stream:
                    key = change.get("documentKey", {})
                    yield str(key.get("_id", ""))

            yield _changes()

    def close(self) -> None:
        self._client.close()
