"""Pull-path reconciliation: merge remote edits into the local store.

Policy is last-write-wins by timestamp. A remote record is applied only when
its modified time is strictly newer than the later of the contact's
``last_synced_at`` and ``updated_at``; otherwise local is at least as fresh.
Only fields sourced from the remote record are overwritten.
"""

from __future__ import annotations

from datetime import datetime

import structlog

from src.circles.contacts.schemas import Contact, utcnow
from src.circles.contacts.store import LocalContactStore
from src.circles.crm.errors import CRMError, RemoteNotFoundError
from src.circles.crm.registry import ConnectionRegistry
from src.circles.sync.schemas import ReconcileResult

logger = structlog.get_logger(__name__)

ALREADY_IN_PROGRESS = "Reconciliation already in progress"


def freshness_baseline(contact: Contact) -> datetime:
    """The local timestamp a remote change has to beat."""
    if contact.last_synced_at is None:
        return contact.updated_at
    return max(contact.last_synced_at, contact.updated_at)


class ReconciliationEngine:
    """Polls the primary CRM connection for changes to linked contacts.

    Args:
        store: Local contact store to merge into.
        connections: Registry providing the primary connection's adapter.
    """

    def __init__(self, store: LocalContactStore, connections: ConnectionRegistry) -> None:
        self._store = store
        self._connections = connections
        self.is_processing = False
        self.last_reconcile_at: datetime | None = None

    async def reconcile(self) -> ReconcileResult:
        if self.is_processing:
            logger.info("reconcile.skipped_in_progress")
            return ReconcileResult(success=False, errors=[ALREADY_IN_PROGRESS])

        self.is_processing = True
        try:
            return await self._reconcile()
        finally:
            self.is_processing = False

    async def _reconcile(self) -> ReconcileResult:
        result = ReconcileResult()
        connection = self._connections.primary()
        if connection is None:
            return result

        adapter = self._connections.adapter_for(connection)
        if not adapter.supports_pull:
            logger.debug("reconcile.pull_unsupported", provider=connection.provider.value)
            return result

        for contact in self._store.contacts():
            if not contact.remote_id:
                continue
            result.checked += 1

            try:
                remote = await adapter.fetch_contact(contact.remote_id)
            except RemoteNotFoundError:
                result.missing += 1
                logger.info(
                    "reconcile.remote_missing",
                    contact_id=contact.id,
                    remote_id=contact.remote_id,
                )
                continue
            except CRMError as exc:
                result.errors.append(f"Reconcile failed for {contact.id}: {exc}")
                logger.warning(
                    "reconcile.fetch_error",
                    contact_id=contact.id,
                    error=str(exc),
                )
                continue

            # Re-read: the contact may have changed while the fetch was in flight.
            current = self._store.find(contact.id)
            if current is None or current.is_deleted or current.remote_id != remote.remote_id:
                continue

            if remote.updated_at is None or remote.updated_at <= freshness_baseline(current):
                result.skipped += 1
                continue

            fields = adapter.local_fields(remote, current)
            self._store.apply_remote(current.id, fields, synced_at=utcnow())
            result.updated += 1
            logger.info(
                "reconcile.contact_updated",
                contact_id=current.id,
                fields=sorted(fields),
            )

        if result.updated:
            await self._store.persist()

        result.success = not result.errors
        self.last_reconcile_at = utcnow()
        logger.info(
            "reconcile.completed",
            checked=result.checked,
            updated=result.updated,
            skipped=result.skipped,
            missing=result.missing,
            errors=len(result.errors),
        )
        return result
