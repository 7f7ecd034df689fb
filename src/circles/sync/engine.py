"""Sync engine -- the offline-first write path.

Every local mutation is applied to the LocalContactStore first. If the device
is online and a CRM connection is active, the change is pushed immediately;
otherwise (or if that push fails) it is enqueued on the OfflineQueue so no
mutation is silently lost.

drain() is the single consumer of the queue:
- single-flight: a drain started while another is running returns at once
  with success=False;
- items are processed sequentially in enqueue order, and one item's failure
  never aborts the rest of the pass;
- ValidationError fails an item permanently on the first attempt; any other
  failure counts toward the queue's retry bound.

Two timers run independently: the push drain and the pull reconciliation.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog

from src.circles.config import get_settings
from src.circles.contacts.schemas import Contact, ContactGroup, IdentifierType, ImportedContact, utcnow
from src.circles.contacts.store import LocalContactStore
from src.circles.core.storage import KeyValueStore, StorageKeys
from src.circles.crm.errors import ValidationError
from src.circles.crm.registry import ConnectionRegistry
from src.circles.crm.schemas import CRMConnection, PushOutcome
from src.circles.sync.queue import (
    OfflineQueue,
    OfflineQueueItem,
    QueueItemStatus,
    QueueItemType,
    QueueStatus,
)
from src.circles.sync.reconcile import ReconciliationEngine
from src.circles.sync.scheduler import ConnectivityProbe, PeriodicTask, always_online
from src.circles.sync.schemas import SyncResult

logger = structlog.get_logger(__name__)

ALREADY_IN_PROGRESS = "Sync already in progress"

CONTACT_ITEM_TYPES = frozenset({
    QueueItemType.ADD_CONTACT,
    QueueItemType.EDIT_CONTACT,
    QueueItemType.DELETE_CONTACT,
})


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if not value:
        raise ValidationError(f"queue payload is missing '{key}'")
    return value


class SyncEngine:
    """Owns the push path: mutation facade, queue drain, and both timers.

    Args:
        store: Local contact store.
        queue: Offline queue of pending mutations.
        connections: CRM connection registry.
        storage: Key-value store used for the last-drain timestamp.
        reconciler: Pull-path engine driven by the reconciliation timer.
            Built from store and connections when omitted.
        is_online: Async connectivity probe. Defaults to always online.
        sync_interval: Seconds between drains (SYNC_INTERVAL_SECONDS).
        reconcile_interval: Seconds between pulls (RECONCILE_INTERVAL_SECONDS).
    """

    def __init__(
        self,
        store: LocalContactStore,
        queue: OfflineQueue,
        connections: ConnectionRegistry,
        storage: KeyValueStore,
        *,
        reconciler: ReconciliationEngine | None = None,
        is_online: ConnectivityProbe = always_online,
        sync_interval: float | None = None,
        reconcile_interval: float | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._queue = queue
        self._connections = connections
        self._storage = storage
        self._is_online = is_online
        self.reconciler = reconciler or ReconciliationEngine(store, connections)

        self.is_processing = False
        self.last_drain_at: datetime | None = None

        self._drain_timer = PeriodicTask(
            "sync_drain",
            self.drain,
            sync_interval or settings.SYNC_INTERVAL_SECONDS,
            is_online,
        )
        self._reconcile_timer = PeriodicTask(
            "reconcile",
            self.reconciler.reconcile,
            reconcile_interval or settings.RECONCILE_INTERVAL_SECONDS,
            is_online,
        )

    @property
    def store(self) -> LocalContactStore:
        return self._store

    @property
    def queue(self) -> OfflineQueue:
        return self._queue

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def load(self) -> None:
        """Load store, queue, connections and the last-drain timestamp."""
        await self._store.load()
        await self._queue.load()
        await self._connections.load()
        raw = await self._storage.get(StorageKeys.LAST_SYNC)
        self.last_drain_at = datetime.fromisoformat(raw.decode()) if raw else None

    def start(self) -> None:
        self._drain_timer.start()
        self._reconcile_timer.start()
        logger.info("sync.engine_started")

    async def stop(self) -> None:
        await self._drain_timer.stop()
        await self._reconcile_timer.stop()
        logger.info("sync.engine_stopped")

    async def sync_now(self) -> SyncResult:
        """Manual trigger: drain the queue, then pull remote changes."""
        result = await self.drain()
        await self.reconciler.reconcile()
        return result

    def queue_status(self) -> QueueStatus:
        return self._queue.status()

    async def retry_item(self, item_id: str) -> OfflineQueueItem:
        return await self._queue.retry(item_id)

    async def dismiss_item(self, item_id: str) -> None:
        await self._queue.dismiss(item_id)

    # ── Drain ───────────────────────────────────────────────────────────

    async def drain(self) -> SyncResult:
        if self.is_processing:
            logger.info("sync.drain_skipped_in_progress")
            return SyncResult(success=False, errors=[ALREADY_IN_PROGRESS])

        self.is_processing = True
        try:
            return await self._drain()
        finally:
            self.is_processing = False

    async def _drain(self) -> SyncResult:
        result = SyncResult()
        items = self._queue.eligible()
        if not items:
            return result

        has_connection = bool(self._connections.active())
        logger.info("sync.drain_started", items=len(items))

        for item in items:
            if item.type in CONTACT_ITEM_TYPES and not has_connection:
                logger.debug("sync.item_deferred_no_connection", item_id=item.id)
                continue

            await self._queue.mark_syncing(item.id)
            try:
                await self._dispatch(item)
            except ValidationError as exc:
                await self._queue.mark_fatal(item.id, str(exc))
                self._mark_contact_failed(item, str(exc))
                result.failed += 1
                result.errors.append(f"{item.type.value} {item.id}: {exc}")
            except Exception as exc:
                status = await self._queue.mark_retry(item.id, str(exc))
                if status == QueueItemStatus.FAILED:
                    self._mark_contact_failed(item, str(exc))
                result.failed += 1
                result.errors.append(f"{item.type.value} {item.id}: {exc}")
                logger.warning(
                    "sync.item_failed",
                    item_id=item.id,
                    type=item.type.value,
                    error=str(exc),
                    status=status.value,
                )
            else:
                await self._queue.remove(item.id)
                result.processed += 1

        result.success = result.failed == 0
        await self._store.persist()
        if result.processed:
            self.last_drain_at = utcnow()
            await self._storage.set(StorageKeys.LAST_SYNC, self.last_drain_at.isoformat().encode())
            await self._connections.persist()

        logger.info(
            "sync.drain_completed",
            processed=result.processed,
            failed=result.failed,
        )
        return result

    async def _dispatch(self, item: OfflineQueueItem) -> None:
        if item.type in (QueueItemType.ADD_CONTACT, QueueItemType.EDIT_CONTACT):
            contact = self._store.find(_require(item.payload, "contact_id"))
            if contact is None or contact.is_deleted:
                logger.info("sync.contact_gone", item_id=item.id)
                return
            await self._push(contact)
        elif item.type == QueueItemType.DELETE_CONTACT:
            _require(item.payload, "contact_id")
            await self._remove_remote(item.payload.get("remote_id"))
        else:
            # Groups are local-only; nothing to send.
            logger.debug("sync.group_item_acknowledged", item_id=item.id, type=item.type.value)

    def _mark_contact_failed(self, item: OfflineQueueItem, error: str) -> None:
        contact_id = item.payload.get("contact_id")
        if item.type in CONTACT_ITEM_TYPES and contact_id:
            self._store.mark_failed(contact_id, error)

    # ── Push ────────────────────────────────────────────────────────────

    async def _push(self, contact: Contact) -> PushOutcome | None:
        """Push a contact to every active connection.

        The contact's ``remote_id`` tracks the primary (first active)
        connection. Secondary connections resolve by email search, so a
        contact without an email is only sent to connections that cannot
        search (webhooks upsert by local id).
        """
        connections = self._connections.active()
        if not connections:
            return None

        primary_outcome: PushOutcome | None = None
        for index, connection in enumerate(connections):
            adapter = self._connections.adapter_for(connection)
            if index == 0:
                primary_outcome = await adapter.push_contact(contact)
                # Refresh the sync timestamp right away so a racing pull does
                # not overwrite this push with stale remote data.
                self._store.mark_synced(contact.id, primary_outcome.remote_id, utcnow())
            else:
                if adapter.supports_search and not contact.email:
                    logger.debug(
                        "sync.secondary_skipped_no_email",
                        contact_id=contact.id,
                        connection_id=connection.id,
                    )
                    continue
                await adapter.push_contact(contact.model_copy(update={"remote_id": None}))
            self._touch(connection)

        logger.info(
            "sync.contact_pushed",
            contact_id=contact.id,
            action=primary_outcome.action.value if primary_outcome else None,
            connections=len(connections),
        )
        return primary_outcome

    async def _remove_remote(self, remote_id: str | None) -> None:
        if not remote_id:
            return
        connection = self._connections.primary()
        if connection is None:
            return
        await self._connections.adapter_for(connection).remove_contact(remote_id)
        self._touch(connection)

    def _touch(self, connection: CRMConnection) -> None:
        connection.last_sync = utcnow()

    async def _can_push_now(self) -> bool:
        return bool(self._connections.active()) and await self._is_online()

    async def _push_or_enqueue(
        self,
        item_type: QueueItemType,
        payload: dict[str, Any],
    ) -> OfflineQueueItem | None:
        """Push immediately when possible, otherwise record a queue item.

        Returns the queue item, or None when the change reached every active
        connection.
        """
        contact_id = payload["contact_id"]
        if await self._can_push_now():
            try:
                await self._push(self._store.get(contact_id))
                await self._store.persist()
                await self._connections.persist()
                return None
            except ValidationError as exc:
                item = await self._queue.enqueue(item_type, payload)
                await self._queue.mark_fatal(item.id, str(exc))
                self._store.mark_failed(contact_id, str(exc))
                await self._store.persist()
                return item
            except Exception as exc:
                # Anything short of a validation failure leaves the change queued.
                logger.warning(
                    "sync.immediate_push_failed",
                    contact_id=contact_id,
                    type=item_type.value,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        self._store.mark_pending(contact_id)
        await self._store.persist()
        return await self._queue.enqueue(item_type, payload)

    async def _record_group_change(
        self,
        item_type: QueueItemType,
        payload: dict[str, Any],
    ) -> OfflineQueueItem | None:
        await self._store.persist()
        if await self._is_online():
            return None
        return await self._queue.enqueue(item_type, payload)

    # ── Mutation facade ─────────────────────────────────────────────────

    async def add_contact(self, contact: Contact) -> Contact:
        self._store.add(contact)
        await self._push_or_enqueue(
            QueueItemType.ADD_CONTACT,
            {"contact_id": contact.id, "contact": contact.model_dump(mode="json")},
        )
        return self._store.get(contact.id)

    async def update_contact(self, contact_id: str, partial: dict[str, Any]) -> Contact:
        self._store.update(contact_id, partial)
        await self._push_or_enqueue(
            QueueItemType.EDIT_CONTACT,
            {"contact_id": contact_id, "fields": sorted(partial)},
        )
        return self._store.get(contact_id)

    async def toggle_star(self, contact_id: str) -> Contact:
        self._store.toggle_star(contact_id)
        await self._push_or_enqueue(
            QueueItemType.EDIT_CONTACT,
            {"contact_id": contact_id, "fields": ["starred"]},
        )
        return self._store.get(contact_id)

    async def delete_contact(self, contact_id: str) -> Contact:
        contact = self._store.delete(contact_id)
        payload = {"contact_id": contact_id, "remote_id": contact.remote_id}
        if await self._can_push_now():
            try:
                await self._remove_remote(contact.remote_id)
            except Exception as exc:
                logger.warning(
                    "sync.immediate_delete_failed",
                    contact_id=contact_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            else:
                await self._store.persist()
                return contact
        await self._store.persist()
        await self._queue.enqueue(QueueItemType.DELETE_CONTACT, payload)
        return contact

    async def add_group(self, group: ContactGroup) -> ContactGroup:
        self._store.add_group(group)
        await self._record_group_change(QueueItemType.ADD_GROUP, {"group_id": group.id})
        return group

    async def update_group(self, group_id: str, partial: dict[str, Any]) -> ContactGroup:
        group = self._store.update_group(group_id, partial)
        await self._record_group_change(
            QueueItemType.EDIT_GROUP,
            {"group_id": group_id, "fields": sorted(partial)},
        )
        return group

    async def delete_group(self, group_id: str) -> ContactGroup:
        group = self._store.delete_group(group_id)
        await self._record_group_change(
            QueueItemType.DELETE_GROUP,
            {"group_id": group_id, "name": group.name},
        )
        return group

    async def import_contacts(self, records: list[ImportedContact]) -> list[Contact]:
        """Seed contacts from the device address book, skipping known emails/phones."""
        created: list[Contact] = []
        for record in records:
            contact = Contact(
                id=uuid.uuid4().hex,
                name=record.name,
                identifiers=record.identifiers,
                company=record.company,
                title=record.title,
                notes=record.note or None,
                tags=set(record.tags),
            )
            if self._is_known(contact):
                logger.debug("sync.import_skipped_duplicate", name=record.name)
                continue
            created.append(await self.add_contact(contact))
        logger.info("sync.contacts_imported", received=len(records), created=len(created))
        return created

    def _is_known(self, contact: Contact) -> bool:
        if contact.email and self._store.find_by_email(contact.email):
            return True
        phone = contact.identifier(IdentifierType.PHONE)
        if not phone:
            return False
        digits = "".join(ch for ch in phone if ch.isdigit())
        for existing in self._store.contacts():
            other = existing.identifier(IdentifierType.PHONE)
            if other and "".join(ch for ch in other if ch.isdigit()) == digits:
                return True
        return False
