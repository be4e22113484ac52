# src/kvcore/storage/mongo_store.py
"""
MongoDB key-value store.

Two storage strategies share the store contract and are chosen once, at
construction, by ``use_gridfs``:

- :class:`DocumentStrategy` keeps one document ``{key, value, namespace,
  expiresAt}`` per entry, with a unique ``(key, namespace)`` index and a TTL
  index on ``expiresAt`` so the server expires entries on its own.
- :class:`GridFSStrategy` stores each value as a GridFS file named after the
  key, with ``{expiresAt, lastAccessed, namespace, binary}`` metadata. Reads
  refresh ``lastAccessed`` so :meth:`MongoStore.clear_unused_for` can evict
  cold entries. Values written as bytes are read back as bytes; everything
  else comes back as UTF-8 text.

Clients are shared per (URI, driver options) through the pool registry.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any

from gridfs import AsyncGridFSBucket
from gridfs.errors import NoFile
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, UpdateOne
from pymongo.errors import OperationFailure
from pymongo.read_preferences import Nearest, Primary, PrimaryPreferred, Secondary, SecondaryPreferred

from ..config.models import MongoConfig
from ..models import Entry
from .base import BaseKeyValueStore
from .expiry import extract_expires, now_ms
from .pool import PoolRegistry

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "test"
LEGACY_KEY_INDEX = "key_1"

# Server error codes for dropping an index that (or whose collection) is missing.
INDEX_NOT_FOUND = 27
NAMESPACE_NOT_FOUND = 26

READ_PREFERENCES = {
    "primary": Primary,
    "primaryPreferred": PrimaryPreferred,
    "secondary": Secondary,
    "secondaryPreferred": SecondaryPreferred,
    "nearest": Nearest,
}


def ms_to_datetime(ms: int | None) -> datetime | None:
    """UTC datetime for epoch ``ms``; None when unset or past the datetime range."""
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.debug(f"Expiry {ms} is outside the datetime range, stored without expiry")
        return None


def payload_bytes(value: Any) -> bytes:
    """GridFS file content for ``value``."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return value.encode("utf-8")
    return json.dumps(value).encode("utf-8")


async def open_mongo_client(uri: str, options: dict[str, Any]) -> AsyncMongoClient:
    client = AsyncMongoClient(uri, **options)
    try:
        await client.admin.command("ping")
    except Exception:
        await client.close()
        raise
    logger.info("MongoDB client connected")
    return client


async def close_mongo_client(client: AsyncMongoClient) -> None:
    await client.close()


mongo_clients = PoolRegistry("mongo", open_mongo_client, close_mongo_client)


# =============================================================================
# STRATEGIES
# =============================================================================


class DocumentStrategy:
    """One document per entry in a plain collection."""

    def __init__(self, collection: Any):
        self.collection = collection

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.drop_index(LEGACY_KEY_INDEX)
            logger.info(f"Dropped legacy '{LEGACY_KEY_INDEX}' index on {self.collection.name}")
        except OperationFailure as e:
            if e.code not in (INDEX_NOT_FOUND, NAMESPACE_NOT_FOUND):
                raise
        await self.collection.create_index([("key", ASCENDING), ("namespace", ASCENDING)], unique=True)
        await self.collection.create_index("expiresAt", expireAfterSeconds=0)

    async def get(self, key: str, namespace: str) -> Any:
        doc = await self.collection.find_one({"key": key, "namespace": namespace}, {"_id": 0, "value": 1})
        return doc["value"] if doc else None

    async def get_many(self, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        cursor = self.collection.find(
            {"key": {"$in": list(keys)}, "namespace": namespace}, {"_id": 0, "key": 1, "value": 1}
        )
        return {doc["key"]: doc.get("value") for doc in await cursor.to_list()}

    async def set_many(self, rows: Sequence[tuple[str, Any, datetime | None]], namespace: str) -> None:
        operations = [
            UpdateOne(
                {"key": key, "namespace": namespace},
                {"$set": {"key": key, "value": value, "namespace": namespace, "expiresAt": expires_at}},
                upsert=True,
            )
            for key, value, expires_at in rows
        ]
        await self.collection.bulk_write(operations, ordered=False)

    async def delete_many(self, keys: Sequence[str], namespace: str) -> int:
        if len(keys) == 1:
            result = await self.collection.delete_one({"key": keys[0], "namespace": namespace})
        else:
            result = await self.collection.delete_many({"key": {"$in": list(keys)}, "namespace": namespace})
        return result.deleted_count

    async def has_many(self, keys: Sequence[str], namespace: str) -> set[str]:
        cursor = self.collection.find({"key": {"$in": list(keys)}, "namespace": namespace}, {"_id": 0, "key": 1})
        return {doc["key"] for doc in await cursor.to_list()}

    async def clear(self, namespace: str) -> None:
        await self.collection.delete_many({"namespace": namespace})

    async def fetch_page(self, namespace: str, cursor: str | None, limit: int) -> list[tuple[str, Any]]:
        query: dict[str, Any] = {"namespace": namespace}
        if cursor is not None:
            query["key"] = {"$gt": cursor}
        docs = await (
            self.collection.find(query, {"_id": 0, "key": 1, "value": 1})
            .sort("key", ASCENDING)
            .limit(limit)
            .to_list()
        )
        return [(doc["key"], doc.get("value")) for doc in docs]

    async def clear_expired(self, now: datetime) -> int:
        result = await self.collection.delete_many({"expiresAt": {"$ne": None, "$lte": now}})
        return result.deleted_count

    async def clear_unused_for(self, seconds: float, namespace: str) -> int:
        logger.debug("clear_unused_for is only supported in GridFS mode")
        return 0


class GridFSStrategy:
    """
    One GridFS file per entry.

    ``set`` uploads a new revision and then removes every older revision of
    the same ``(filename, namespace)``; readers always pick the newest one.
    """

    def __init__(self, bucket: Any, files: Any):
        self.bucket = bucket
        self.files = files

    async def ensure_indexes(self) -> None:
        await self.files.create_index([("uploadDate", DESCENDING)])
        await self.files.create_index("metadata.expiresAt")
        await self.files.create_index("metadata.lastAccessed")
        await self.files.create_index("metadata.namespace")
        await self.files.create_index("filename")

    async def _read(self, doc: dict[str, Any]) -> str | bytes | None:
        try:
            grid_out = await self.bucket.open_download_stream(doc["_id"])
            data = await grid_out.read()
        except NoFile:
            # Removed between lookup and download.
            return None
        if (doc.get("metadata") or {}).get("binary"):
            return data
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            # Written by another client without the binary flag.
            return data

    async def _remove(self, file_ids: Sequence[Any]) -> int:
        removed = 0
        for file_id in file_ids:
            try:
                await self.bucket.delete(file_id)
                removed += 1
            except NoFile:
                continue
        return removed

    async def _newest(self, query: dict[str, Any]) -> dict[str, Any]:
        """filename -> newest file document matching ``query``."""
        cursor = self.files.find(query, {"_id": 1, "filename": 1, "metadata": 1}).sort("uploadDate", ASCENDING)
        return {doc["filename"]: doc for doc in await cursor.to_list()}

    async def get(self, key: str, namespace: str) -> Any:
        found = await self.get_many([key], namespace)
        return found.get(key)

    async def get_many(self, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        newest = await self._newest({"filename": {"$in": list(keys)}, "metadata.namespace": namespace})
        if not newest:
            return {}
        ids = [doc["_id"] for doc in newest.values()]
        await self.files.update_many(
            {"_id": {"$in": ids}}, {"$set": {"metadata.lastAccessed": datetime.now(timezone.utc)}}
        )
        values = await asyncio.gather(*(self._read(doc) for doc in newest.values()))
        return {key: value for key, value in zip(newest, values) if value is not None}

    async def _set_one(self, key: str, value: Any, expires_at: datetime | None, namespace: str) -> None:
        file_id = await self.bucket.upload_from_stream(
            key,
            payload_bytes(value),
            metadata={
                "expiresAt": expires_at,
                "lastAccessed": datetime.now(timezone.utc),
                "namespace": namespace,
                "binary": isinstance(value, (bytes, bytearray)),
            },
        )
        older = await self.files.find(
            {"filename": key, "metadata.namespace": namespace, "_id": {"$ne": file_id}}, {"_id": 1}
        ).to_list()
        await self._remove([doc["_id"] for doc in older])

    async def set_many(self, rows: Sequence[tuple[str, Any, datetime | None]], namespace: str) -> None:
        await asyncio.gather(*(self._set_one(key, value, expires_at, namespace) for key, value, expires_at in rows))

    async def delete_many(self, keys: Sequence[str], namespace: str) -> int:
        docs = await self.files.find(
            {"filename": {"$in": list(keys)}, "metadata.namespace": namespace}, {"_id": 1, "filename": 1}
        ).to_list()
        removed_names = set()
        for doc in docs:
            if await self._remove([doc["_id"]]):
                removed_names.add(doc["filename"])
        return len(removed_names)

    async def has_many(self, keys: Sequence[str], namespace: str) -> set[str]:
        docs = await self.files.find(
            {"filename": {"$in": list(keys)}, "metadata.namespace": namespace}, {"_id": 0, "filename": 1}
        ).to_list()
        return {doc["filename"] for doc in docs}

    async def clear(self, namespace: str) -> None:
        docs = await self.files.find({"metadata.namespace": namespace}, {"_id": 1}).to_list()
        await self._remove([doc["_id"] for doc in docs])

    async def fetch_page(self, namespace: str, cursor: str | None, limit: int) -> list[tuple[str, Any]]:
        # Several revisions of one key may briefly coexist; keep the newest
        # and keep reading until the page is full or the data runs out.
        picked: list[dict[str, Any]] = []
        last = cursor
        while len(picked) < limit:
            query: dict[str, Any] = {"metadata.namespace": namespace}
            if last is not None:
                query["filename"] = {"$gt": last}
            wanted = limit - len(picked)
            docs = await (
                self.files.find(query, {"_id": 1, "filename": 1, "metadata": 1})
                .sort([("filename", ASCENDING), ("uploadDate", DESCENDING)])
                .limit(wanted)
                .to_list()
            )
            for doc in docs:
                if not picked or picked[-1]["filename"] != doc["filename"]:
                    picked.append(doc)
            if len(docs) < wanted:
                break
            last = docs[-1]["filename"]

        values = await asyncio.gather(*(self._read(doc) for doc in picked))
        return [(doc["filename"], value) for doc, value in zip(picked, values)]

    async def clear_expired(self, now: datetime) -> int:
        docs = await self.files.find({"metadata.expiresAt": {"$ne": None, "$lte": now}}, {"_id": 1}).to_list()
        return await self._remove([doc["_id"] for doc in docs])

    async def clear_unused_for(self, seconds: float, namespace: str) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=seconds)
        docs = await self.files.find(
            {"metadata.lastAccessed": {"$lte": cutoff}, "metadata.namespace": namespace}, {"_id": 1}
        ).to_list()
        return await self._remove([doc["_id"] for doc in docs])


# =============================================================================
# STORE
# =============================================================================


class MongoStore(BaseKeyValueStore):
    """
    Namespaced key-value store backed by a MongoDB collection or GridFS bucket.

    Unlike the relational stores, the ``ttl`` argument (milliseconds) of
    ``set``/``set_many`` is honoured: ``expiresAt`` becomes now + ttl. Without
    a ttl the payload's ``expires`` field is used.

    ``clear_expired`` removes entries with ``expiresAt <= now``, matching the
    server's TTL monitor. The relational stores use ``expires < now``, so an
    entry expiring exactly at the call instant is removed here but kept there.
    """

    dialect = "mongo"
    config_class = MongoConfig
    registry = mongo_clients

    config: MongoConfig

    def __init__(self, config: Any = None, **options: Any):
        self._strategy: DocumentStrategy | GridFSStrategy | None = None
        super().__init__(config, **options)
        self._use_gridfs = self.config.use_gridfs

    @property
    def use_gridfs(self) -> bool:
        """Fixed at construction; the storage layout differs between the modes."""
        return self._use_gridfs

    def _database(self, client: AsyncMongoClient) -> Any:
        if self.config.db:
            return client.get_database(self.config.db)
        return client.get_default_database(DEFAULT_DATABASE)

    def _build_strategy(self, client: AsyncMongoClient) -> DocumentStrategy | GridFSStrategy:
        database = self._database(client)
        read_preference = None
        if self.config.read_preference:
            read_preference = READ_PREFERENCES[self.config.read_preference]()
        if self.config.use_gridfs:
            bucket = AsyncGridFSBucket(
                database, bucket_name=self.config.collection, read_preference=read_preference
            )
            return GridFSStrategy(bucket, database.get_collection(f"{self.config.collection}.files"))
        return DocumentStrategy(database.get_collection(self.config.collection, read_preference=read_preference))

    async def _bootstrap(self, handle: AsyncMongoClient) -> None:
        strategy = self._build_strategy(handle)
        await strategy.ensure_indexes()
        self._strategy = strategy
        logger.info(
            f"MongoDB {'GridFS bucket' if self.config.use_gridfs else 'collection'} "
            f"'{self.config.collection}' ready"
        )

    def _expires_for(self, entry: Entry) -> int | None:
        if entry.ttl is not None:
            return now_ms() + entry.ttl
        return extract_expires(entry.value)

    async def _get(self, handle: Any, key: str, namespace: str) -> Any:
        return await self._strategy.get(key, namespace)

    async def _get_many(self, handle: Any, keys: Sequence[str], namespace: str) -> dict[str, Any]:
        return await self._strategy.get_many(keys, namespace)

    async def _set_many(self, handle: Any, entries: Sequence[Entry], namespace: str) -> None:
        rows = [(entry.key, entry.value, ms_to_datetime(self._expires_for(entry))) for entry in entries]
        await self._strategy.set_many(rows, namespace)

    async def _delete(self, handle: Any, key: str, namespace: str) -> bool:
        return await self._strategy.delete_many([key], namespace) > 0

    async def _delete_many(self, handle: Any, keys: Sequence[str], namespace: str) -> int:
        return await self._strategy.delete_many(keys, namespace)

    async def _has_many(self, handle: Any, keys: Sequence[str], namespace: str) -> set[str]:
        return await self._strategy.has_many(keys, namespace)

    async def _clear(self, handle: Any, namespace: str) -> None:
        await self._strategy.clear(namespace)

    async def _fetch_page(self, handle: Any, namespace: str, cursor: str | None, limit: int) -> list[tuple[str, Any]]:
        return await self._strategy.fetch_page(namespace, cursor, limit)

    async def _clear_expired(self, handle: Any, now: int) -> int:
        return await self._strategy.clear_expired(ms_to_datetime(now))

    async def clear_unused_for(self, seconds: float) -> int:
        """
        Delete GridFS entries of the current namespace not read for ``seconds``.

        Returns:
            The number of removed files; always 0 in document mode.
        """
        await self._connected()
        return await self._strategy.clear_unused_for(seconds, self._namespace_value())
