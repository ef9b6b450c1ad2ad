"""
Tracking Record Store - WBS-R5.1

Persists one ExecutionTrackingRecord per top-level execution.

Reference Documents:
- GUIDELINES pp. 949: Repository pattern - "hides the boring details of data access"
- GUIDELINES pp. 2153: "production systems often require external state stores (Redis)"

Operations:
- create(**fields): new record with a store-assigned id
- update(id, **fields): unconditional update
- update_if_running(id, **fields): conditional update, applied only while the
  stored status is still "running"; returns whether it was applied
- get(id): record or None

Pattern: Repository pattern (Percival & Gregory pp. 86)
Pattern: Dependency injection for Redis client (Sinha pp. 89-90)
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

from llm_reliability.core.config import Settings, get_settings
from llm_reliability.core.exceptions import TrackingStoreError
from llm_reliability.models.execution import ExecutionStatus, ExecutionTrackingRecord

MAX_TRANSACTION_RETRIES = 20


def new_record_id() -> str:
    return uuid.uuid4().hex


def _apply(record: ExecutionTrackingRecord, fields: dict[str, Any]) -> ExecutionTrackingRecord:
    """Validated copy of record with fields replaced."""
    data = record.model_dump()
    data.update(fields)
    data["id"] = record.id
    return ExecutionTrackingRecord.model_validate(data)


def _build(fields: dict[str, Any]) -> ExecutionTrackingRecord:
    data = dict(fields)
    data.setdefault("started_at", datetime.now(timezone.utc))
    data["id"] = new_record_id()
    return ExecutionTrackingRecord.model_validate(data)


# =============================================================================
# WBS-R5.1.1: TrackingRecordStore Interface
# =============================================================================


class TrackingRecordStore(ABC):
    """Abstract repository for execution tracking records."""

    @abstractmethod
    async def create(self, **fields: Any) -> ExecutionTrackingRecord:
        """
        Create a record.

        Raises:
            TrackingStoreError: If the record could not be persisted
        """
        ...

    @abstractmethod
    async def update(self, record_id: str, **fields: Any) -> ExecutionTrackingRecord:
        """
        Unconditionally update a record.

        Raises:
            TrackingStoreError: If the record is missing or the write failed
        """
        ...

    @abstractmethod
    async def update_if_running(self, record_id: str, **fields: Any) -> bool:
        """
        Update a record only while its stored status is running.

        Returns:
            True if the update was applied, False if the record is missing or
            already terminal

        Raises:
            TrackingStoreError: If the write failed
        """
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[ExecutionTrackingRecord]:
        ...


# =============================================================================
# WBS-R5.1.2: In-Memory Store
# =============================================================================


class InMemoryTrackingStore(TrackingRecordStore):
    """
    Process-local store, mainly for tests and single-process deployments.

    A single asyncio.Lock makes the conditional update atomic.
    """

    def __init__(self) -> None:
        self._records: dict[str, ExecutionTrackingRecord] = {}
        self._lock = asyncio.Lock()

    @property
    def records(self) -> list[ExecutionTrackingRecord]:
        return list(self._records.values())

    async def create(self, **fields: Any) -> ExecutionTrackingRecord:
        try:
            record = _build(fields)
        except ValueError as e:
            raise TrackingStoreError(f"Invalid tracking record: {e}") from e
        async with self._lock:
            self._records[record.id] = record
        return record

    async def update(self, record_id: str, **fields: Any) -> ExecutionTrackingRecord:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise TrackingStoreError(
                    f"Tracking record {record_id} not found", record_id=record_id
                )
            try:
                updated = _apply(record, fields)
            except ValueError as e:
                raise TrackingStoreError(
                    f"Invalid update for {record_id}: {e}", record_id=record_id
                ) from e
            self._records[record_id] = updated
            return updated

    async def update_if_running(self, record_id: str, **fields: Any) -> bool:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None or record.status is not ExecutionStatus.RUNNING:
                return False
            try:
                self._records[record_id] = _apply(record, fields)
            except ValueError as e:
                raise TrackingStoreError(
                    f"Invalid update for {record_id}: {e}", record_id=record_id
                ) from e
            return True

    async def get(self, record_id: str) -> Optional[ExecutionTrackingRecord]:
        return self._records.get(record_id)


# =============================================================================
# WBS-R5.1.3: Redis Store
# =============================================================================


class RedisTrackingStore(TrackingRecordStore):
    """
    Redis-based tracking record storage.

    Records are stored as JSON with a TTL. The conditional update runs inside
    a WATCH/MULTI transaction so a record that became terminal concurrently is
    never overwritten.

    Attributes:
        _redis: The Redis client instance.
        _key_prefix: Prefix for Redis keys.
        _ttl_seconds: TTL applied on every write.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.from_url("redis://localhost:6379")
        >>> store = RedisTrackingStore(redis_client=client)
        >>> record = await store.create(candidates=["openai:gpt-4o"])
        >>> await store.update_if_running(record.id, status="error")
        True
    """

    def __init__(
        self,
        redis_client: Redis,
        key_prefix: str = "tracking:",
        ttl_seconds: Optional[int] = None,
    ) -> None:
        """
        Initialize RedisTrackingStore with Redis client.

        Args:
            redis_client: Async Redis client instance.
            key_prefix: Prefix for all record keys in Redis.
            ttl_seconds: Record TTL. Defaults to settings.tracking_record_ttl_seconds.
        """
        self._redis: Redis = redis_client
        self._key_prefix: str = key_prefix

        if ttl_seconds is None:
            settings = get_settings()
            self._ttl_seconds: int = settings.tracking_record_ttl_seconds
        else:
            self._ttl_seconds = ttl_seconds

    def _make_key(self, record_id: str) -> str:
        return f"{self._key_prefix}{record_id}"

    async def create(self, **fields: Any) -> ExecutionTrackingRecord:
        try:
            record = _build(fields)
            await self._redis.set(
                self._make_key(record.id), record.model_dump_json(), ex=self._ttl_seconds
            )
            return record
        except Exception as e:
            raise TrackingStoreError(f"Failed to create tracking record: {e}") from e

    async def get(self, record_id: str) -> Optional[ExecutionTrackingRecord]:
        try:
            json_data = await self._redis.get(self._make_key(record_id))
            if json_data is None:
                return None
            return ExecutionTrackingRecord.model_validate_json(json_data)
        except Exception as e:
            raise TrackingStoreError(
                f"Failed to get tracking record {record_id}: {e}", record_id=record_id
            ) from e

    async def update(self, record_id: str, **fields: Any) -> ExecutionTrackingRecord:
        updated = await self._update(record_id, fields, only_running=False)
        if updated is None:
            raise TrackingStoreError(
                f"Tracking record {record_id} not found", record_id=record_id
            )
        return updated

    async def update_if_running(self, record_id: str, **fields: Any) -> bool:
        return await self._update(record_id, fields, only_running=True) is not None

    async def _update(
        self,
        record_id: str,
        fields: dict[str, Any],
        only_running: bool,
    ) -> Optional[ExecutionTrackingRecord]:
        """
        Read-modify-write of one record under WATCH.

        Returns:
            The updated record, or None when it is missing (or terminal while
            only_running is set)
        """
        key = self._make_key(record_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for _ in range(MAX_TRANSACTION_RETRIES):
                    try:
                        await pipe.watch(key)
                        json_data = await pipe.get(key)
                        if json_data is None:
                            await pipe.unwatch()
                            return None

                        record = ExecutionTrackingRecord.model_validate_json(json_data)
                        if only_running and record.status is not ExecutionStatus.RUNNING:
                            await pipe.unwatch()
                            return None

                        updated = _apply(record, fields)
                        pipe.multi()
                        pipe.set(key, updated.model_dump_json(), ex=self._ttl_seconds)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        continue
        except Exception as e:
            raise TrackingStoreError(
                f"Failed to update tracking record {record_id}: {e}", record_id=record_id
            ) from e

        raise TrackingStoreError(
            f"Tracking record {record_id} kept changing during update",
            record_id=record_id,
        )


# =============================================================================
# Factory
# =============================================================================


def create_tracking_store(
    settings: Settings,
    redis_client: Optional[Redis] = None,
) -> TrackingRecordStore:
    """
    Build the store selected by settings.tracking_store_backend.

    Raises:
        ValueError: If the Redis backend is selected without a client
    """
    if settings.tracking_store_backend == "redis":
        if redis_client is None:
            raise ValueError("tracking_store_backend=redis requires a Redis client")
        return RedisTrackingStore(
            redis_client, ttl_seconds=settings.tracking_record_ttl_seconds
        )
    return InMemoryTrackingStore()
