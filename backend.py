import asyncio
import copy
import json
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis
import redis.asyncio as aioredis

from constants import REDIS_HOST, REDIS_PORT, REDIS_URL, ROOM_GRACE_SECONDS, RETRY_BACKOFF_SECONDS, STORAGE_BACKEND
from errors import InternalError, StorageError
from logging_config import get_logger
from redis_keys import COLLECTION_KEYS, FIELD_INDEX_KEYS, REDIS_INDEX_KEY

logger = get_logger(__name__)

ROOMS = "rooms"
SESSIONS = "sessions"
MESSAGES = "messages"

T = TypeVar("T")


def _matches(record: dict, match: Dict[str, Any]) -> bool:
    return all(record.get(k) == v for k, v in match.items())


class StorageBackend(ABC):
    """Uniform record store the coordinator talks to.

    Records are flat dicts keyed by their ``id`` field and grouped into
    collections (rooms, sessions, messages). Implementations raise
    ``StorageError`` on infrastructure failures.
    """

    name = "abstract"

    @abstractmethod
    async def create(self, collection: str, record_id: str, fields: dict) -> bool:
        """Insert a record. Returns False if the id is already taken."""

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[dict]:
        ...

    @abstractmethod
    async def find(self, collection: str, **match) -> List[dict]:
        ...

    @abstractmethod
    async def update_fields(self, collection: str, record_id: str, fields: dict) -> bool:
        """Merge fields into an existing record. Returns False if it is gone."""

    @abstractmethod
    async def delete(self, collection: str, *record_ids: str) -> int:
        ...

    async def find_active(self, collection: str, **match) -> List[dict]:
        return await self.find(collection, active=True, **match)

    async def select_expired(self, collection: str, now: float) -> List[dict]:
        return [r for r in await self.find(collection) if r.get("expires_at") is not None and r["expires_at"] <= now]

    async def delete_expired(
        self,
        collection: str,
        now: float,
        predicate: Optional[Callable[[dict], bool]] = None,
    ) -> Tuple[int, int]:
        """Delete expired records one at a time; returns (deleted, failed).

        A failure on one record is logged and does not stop the others.
        """
        deleted = failed = 0
        for record in await self.select_expired(collection, now):
            if predicate is not None and not predicate(record):
                continue
            try:
                deleted += await self.delete(collection, record["id"])
            except Exception as e:
                failed += 1
                logger.error(f"Failed to delete expired {collection} record {record.get('id')}: {e}", exc_info=True)
        return deleted, failed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryBackend(StorageBackend):
    """Process-local store. Every method completes without yielding, so each call is atomic on the event loop."""

    name = "memory"

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {ROOMS: {}, SESSIONS: {}, MESSAGES: {}}
        logger.info("Initializing InMemoryBackend")

    def _bucket(self, collection: str) -> Dict[str, dict]:
        return self._collections.setdefault(collection, {})

    async def create(self, collection: str, record_id: str, fields: dict) -> bool:
        bucket = self._bucket(collection)
        if record_id in bucket:
            logger.debug(f"{collection} record {record_id} already exists")
            return False
        record = copy.deepcopy(fields)
        record["id"] = record_id
        bucket[record_id] = record
        return True

    async def get(self, collection: str, record_id: str) -> Optional[dict]:
        record = self._bucket(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find(self, collection: str, **match) -> List[dict]:
        return [copy.deepcopy(r) for r in self._bucket(collection).values() if _matches(r, match)]

    async def update_fields(self, collection: str, record_id: str, fields: dict) -> bool:
        record = self._bucket(collection).get(record_id)
        if record is None:
            return False
        record.update(copy.deepcopy(fields))
        return True

    async def delete(self, collection: str, *record_ids: str) -> int:
        bucket = self._bucket(collection)
        return sum(1 for record_id in record_ids if bucket.pop(record_id, None) is not None)


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except redis.RedisError as e:
        logger.error(f"Redis {operation} failed: {e}")
        raise StorageError(f"redis {operation} failed: {e}") from e


class RedisBackend(StorageBackend):
    name = "redis"

    def __init__(self, client: aioredis.Redis, key_grace_seconds: int = ROOM_GRACE_SECONDS):
        self.redis_client = client
        self.key_grace_seconds = key_grace_seconds
        logger.info("Initializing RedisBackend")

    @classmethod
    def from_settings(cls) -> "RedisBackend":
        client = aioredis.from_url(REDIS_URL, decode_responses=True)
        return cls(client)

    @staticmethod
    def _key(collection: str, record_id: str) -> str:
        return COLLECTION_KEYS[collection].format(record_id=record_id)

    @staticmethod
    def _encode(fields: dict) -> Dict[str, str]:
        # JSON for every value so ints, bools and lists keep their type
        return {k: json.dumps(v) for k, v in fields.items()}

    @staticmethod
    def _decode(raw: Dict[str, str]) -> dict:
        result = {}
        for k, v in raw.items():
            try:
                result[k] = json.loads(v)
            except (json.JSONDecodeError, TypeError):
                result[k] = v
        return result

    @staticmethod
    def _indexed_fields(collection: str) -> List[str]:
        return [field for (coll, field) in FIELD_INDEX_KEYS if coll == collection]

    @staticmethod
    def _field_index_key(collection: str, field: str, value: Any) -> str:
        return FIELD_INDEX_KEYS[(collection, field)].format(value=value)

    def _field_index_keys(self, collection: str, record: dict) -> List[str]:
        return [
            self._field_index_key(collection, field, record[field])
            for field in self._indexed_fields(collection)
            if record.get(field) is not None
        ]

    def _lookup_index(self, collection: str, match: Dict[str, Any]) -> str:
        for field in self._indexed_fields(collection):
            if match.get(field) is not None:
                return self._field_index_key(collection, field, match[field])
        return REDIS_INDEX_KEY.format(collection=collection)

    async def _indexed_values(self, collection: str, record_id: str) -> dict:
        fields = self._indexed_fields(collection)
        if not fields:
            return {}
        values = await self.redis_client.hmget(self._key(collection, record_id), fields)
        return self._decode({f: v for f, v in zip(fields, values) if v is not None})

    def _deadline(self, expires_at: float) -> int:
        return int(expires_at + self.key_grace_seconds) + 1

    async def _expire_at(self, key: str, fields: dict) -> None:
        expires_at = fields.get("expires_at")
        if expires_at is not None:
            await self.redis_client.expireat(key, self._deadline(expires_at))

    async def _extend_expiry(self, key: str, expires_at: Optional[float]) -> None:
        """Push a shared index set's expiry out to ``expires_at`` + grace, never earlier."""
        if expires_at is None:
            return
        deadline = self._deadline(expires_at)
        remaining = await self.redis_client.ttl(key)
        if remaining >= 0 and time.time() + remaining >= deadline:
            return
        await self.redis_client.expireat(key, deadline)

    async def create(self, collection: str, record_id: str, fields: dict) -> bool:
        key = self._key(collection, record_id)
        record = dict(fields, id=record_id)
        with _redis_errors("create"):
            # reserve the id atomically before writing the remaining fields
            reserved = await self.redis_client.hsetnx(key, "id", json.dumps(record_id))
            if not reserved:
                logger.debug(f"{collection} record {record_id} already exists")
                return False
            await self.redis_client.hset(key, mapping=self._encode(record))
            await self.redis_client.sadd(REDIS_INDEX_KEY.format(collection=collection), record_id)
            for index_key in self._field_index_keys(collection, record):
                await self.redis_client.sadd(index_key, record_id)
                await self._extend_expiry(index_key, record.get("expires_at"))
            await self._expire_at(key, record)
        logger.debug(f"{collection} record {record_id} created with key: {key}")
        return True

    async def get(self, collection: str, record_id: str) -> Optional[dict]:
        with _redis_errors("get"):
            raw = await self.redis_client.hgetall(self._key(collection, record_id))
        if not raw:
            return None
        return self._decode(raw)

    async def find(self, collection: str, **match) -> List[dict]:
        # per-room / per-session index when the match allows it, else the whole collection
        index_key = self._lookup_index(collection, match)
        with _redis_errors("find"):
            record_ids = list(await self.redis_client.smembers(index_key))
            if not record_ids:
                return []
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for record_id in record_ids:
                    pipe.hgetall(self._key(collection, record_id))
                raw_records = await pipe.execute()
            stale = [rid for rid, raw in zip(record_ids, raw_records) if not raw]
            if stale:
                # keys expired by Redis itself
                await self.redis_client.srem(index_key, *stale)
        records = [self._decode(raw) for raw in raw_records if raw]
        return [r for r in records if _matches(r, match)]

    async def update_fields(self, collection: str, record_id: str, fields: dict) -> bool:
        key = self._key(collection, record_id)
        with _redis_errors("update"):
            if not await self.redis_client.exists(key):
                return False
            old = await self._indexed_values(collection, record_id)
            await self.redis_client.hset(key, mapping=self._encode(fields))
            await self._expire_at(key, fields)

            indexed = self._indexed_fields(collection)
            new = dict(old)
            new.update({f: fields[f] for f in indexed if f in fields})
            for field in indexed:
                if old.get(field) != new.get(field):
                    if old.get(field) is not None:
                        await self.redis_client.srem(self._field_index_key(collection, field, old[field]), record_id)
                    if new.get(field) is not None:
                        await self.redis_client.sadd(self._field_index_key(collection, field, new[field]), record_id)
            for index_key in self._field_index_keys(collection, new):
                await self._extend_expiry(index_key, fields.get("expires_at"))
        return True

    async def delete(self, collection: str, *record_ids: str) -> int:
        if not record_ids:
            return 0
        with _redis_errors("delete"):
            for record_id in record_ids:
                values = await self._indexed_values(collection, record_id)
                for index_key in self._field_index_keys(collection, values):
                    await self.redis_client.srem(index_key, record_id)
            deleted = await self.redis_client.delete(*(self._key(collection, rid) for rid in record_ids))
            await self.redis_client.srem(REDIS_INDEX_KEY.format(collection=collection), *record_ids)
        return int(deleted)

    async def ping(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    async def close(self) -> None:
        await self.redis_client.aclose()


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    description: str,
    retries: int = 1,
    backoff: float = RETRY_BACKOFF_SECONDS,
) -> T:
    """Run a backend write, retrying StorageError with linear backoff, then raise InternalError."""
    attempt = 0
    while True:
        try:
            return await operation()
        except StorageError as e:
            if attempt >= retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise InternalError(f"{description} failed") from e
            attempt += 1
            logger.warning(f"{description} failed ({e}), retrying in {backoff * attempt:.2f}s")
            await asyncio.sleep(backoff * attempt)


async def build_backend(kind: str = STORAGE_BACKEND) -> StorageBackend:
    """Pick the storage backend once at startup."""
    if kind == "memory":
        return InMemoryBackend()
    if kind != "redis":
        raise ValueError(f"Unknown storage backend: {kind}")

    backend = RedisBackend.from_settings()
    if await backend.ping():
        logger.info(f"Redis backend connected to {REDIS_HOST}:{REDIS_PORT}")
        return backend
    logger.warning(f"Redis at {REDIS_HOST}:{REDIS_PORT} unreachable, running with in-memory storage")
    await backend.close()
    return InMemoryBackend()
