"""Durable offline queue -- an ordered log of local mutations awaiting push.

Items are appended with a monotonically increasing ``sequence`` and always
drained in that order. The whole queue is persisted as one JSON blob after
every change, so a crash loses nothing that enqueue() returned for.

Lifecycle of an item:

    pending --mark_syncing--> syncing --remove--> (gone)
                                 |
                                 +--mark_retry--> pending   (retry_count < max)
                                 |            \\-> failed    (retry_count >= max)
                                 +--mark_fatal--> failed    (non-retryable)

A failed item stays in the queue until the user retries or dismisses it.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel, Field, TypeAdapter

from src.circles.config import get_settings
from src.circles.contacts.schemas import utcnow
from src.circles.core.storage import KeyValueStore, StorageKeys

logger = structlog.get_logger(__name__)


class QueueItemType(str, Enum):
    ADD_CONTACT = "add_contact"
    EDIT_CONTACT = "edit_contact"
    DELETE_CONTACT = "delete_contact"
    ADD_GROUP = "add_group"
    EDIT_GROUP = "edit_group"
    DELETE_GROUP = "delete_group"


class QueueItemStatus(str, Enum):
    PENDING = "pending"
    SYNCING = "syncing"
    FAILED = "failed"


class OfflineQueueItem(BaseModel):
    id: str
    type: QueueItemType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    status: QueueItemStatus = QueueItemStatus.PENDING
    retry_count: int = 0
    sequence: int
    last_error: str | None = None
    fatal: bool = False


class QueueStatus(BaseModel):
    """Counts surfaced to the UI (badge, failed-items list)."""

    total: int = 0
    pending: int = 0
    syncing: int = 0
    failed: int = 0


_ITEM_LIST = TypeAdapter(list[OfflineQueueItem])


class QueueItemNotFoundError(KeyError):
    """No queue item with the given id."""


class OfflineQueue:
    """Append-only queue of OfflineQueueItems with explicit ordering.

    Args:
        storage: Durable key-value store.
        max_retries: Failed attempts after which an item stops being
            retried automatically. Defaults to SYNC_MAX_RETRIES.
    """

    def __init__(self, storage: KeyValueStore, max_retries: int | None = None) -> None:
        self._storage = storage
        self.max_retries = max_retries if max_retries is not None else get_settings().SYNC_MAX_RETRIES
        self._items: list[OfflineQueueItem] = []
        self._next_sequence = 1
        self._write_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._items)

    # ── Persistence ─────────────────────────────────────────────────────

    async def load(self) -> None:
        """Load the persisted queue. Items interrupted mid-push go back to pending."""
        raw = await self._storage.get(StorageKeys.OFFLINE_QUEUE)
        items = _ITEM_LIST.validate_json(raw) if raw else []
        items.sort(key=lambda item: item.sequence)

        recovered = 0
        for item in items:
            if item.status == QueueItemStatus.SYNCING:
                item.status = QueueItemStatus.PENDING
                recovered += 1

        self._items = items
        self._next_sequence = max((i.sequence for i in items), default=0) + 1
        if recovered:
            await self.persist()
        logger.info("queue.loaded", items=len(items), recovered=recovered)

    async def persist(self) -> None:
        async with self._write_lock:
            await self._storage.set(StorageKeys.OFFLINE_QUEUE, _ITEM_LIST.dump_json(self._items))

    # ── Producer side ───────────────────────────────────────────────────

    async def enqueue(self, item_type: QueueItemType, payload: dict[str, Any]) -> OfflineQueueItem:
        item = OfflineQueueItem(
            id=f"offline_{uuid.uuid4().hex}",
            type=item_type,
            payload=payload,
            sequence=self._next_sequence,
        )
        self._next_sequence += 1
        self._items.append(item)
        await self.persist()
        logger.info(
            "queue.enqueued",
            item_id=item.id,
            type=item_type.value,
            sequence=item.sequence,
        )
        return item

    # ── Reads ───────────────────────────────────────────────────────────

    def items(self) -> list[OfflineQueueItem]:
        return list(self._items)

    def get(self, item_id: str) -> OfflineQueueItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise QueueItemNotFoundError(item_id)

    def is_eligible(self, item: OfflineQueueItem) -> bool:
        if item.status == QueueItemStatus.PENDING:
            return True
        return (
            item.status == QueueItemStatus.FAILED
            and not item.fatal
            and item.retry_count < self.max_retries
        )

    def eligible(self) -> list[OfflineQueueItem]:
        """Items the next drain should process, in sequence order."""
        return [item for item in self._items if self.is_eligible(item)]

    def failed(self) -> list[OfflineQueueItem]:
        return [item for item in self._items if item.status == QueueItemStatus.FAILED]

    def status(self) -> QueueStatus:
        counts = QueueStatus(total=len(self._items))
        for item in self._items:
            if item.status == QueueItemStatus.PENDING:
                counts.pending += 1
            elif item.status == QueueItemStatus.SYNCING:
                counts.syncing += 1
            else:
                counts.failed += 1
        return counts

    # ── Consumer side (sync engine only) ────────────────────────────────

    async def mark_syncing(self, item_id: str) -> OfflineQueueItem:
        item = self.get(item_id)
        item.status = QueueItemStatus.SYNCING
        await self.persist()
        return item

    async def mark_retry(self, item_id: str, error: str) -> QueueItemStatus:
        """Record a transient failure; returns the item's new status."""
        item = self.get(item_id)
        item.retry_count += 1
        item.last_error = error
        if item.retry_count >= self.max_retries:
            item.status = QueueItemStatus.FAILED
            logger.warning(
                "queue.retries_exhausted",
                item_id=item_id,
                retry_count=item.retry_count,
                error=error,
            )
        else:
            item.status = QueueItemStatus.PENDING
        await self.persist()
        return item.status

    async def mark_fatal(self, item_id: str, error: str) -> OfflineQueueItem:
        """Fail an item permanently; retrying cannot change its outcome."""
        item = self.get(item_id)
        item.retry_count += 1
        item.last_error = error
        item.status = QueueItemStatus.FAILED
        item.fatal = True
        await self.persist()
        logger.warning("queue.item_failed_fatal", item_id=item_id, error=error)
        return item

    async def remove(self, item_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != item_id]
        if len(self._items) == before:
            return False
        await self.persist()
        return True

    # ── User actions on failed items ────────────────────────────────────

    async def retry(self, item_id: str) -> OfflineQueueItem:
        """Manual retry: reset the item so the next drain picks it up again."""
        item = self.get(item_id)
        item.status = QueueItemStatus.PENDING
        item.retry_count = 0
        item.fatal = False
        item.last_error = None
        await self.persist()
        logger.info("queue.item_retry_requested", item_id=item_id)
        return item

    async def dismiss(self, item_id: str) -> None:
        """Drop an item the user chose not to sync."""
        self.get(item_id)
        await self.remove(item_id)
        logger.info("queue.item_dismissed", item_id=item_id)

    async def clear(self) -> None:
        self._items = []
        await self.persist()
        logger.info("queue.cleared")
