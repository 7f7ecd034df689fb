"""Inbound HubSpot webhook events -> local store.

Handles contact events only:

- propertyChange: acted on only for namespaced (``amc_``) properties that
  map to a local field of an already-mirrored contact.
- creation: the record is fetched and imported only if it already carries
  namespaced data and is not mirrored yet.
- deletion: the local mirror is soft-deleted.

Anything else (other object types, unknown subscription types, malformed
events, contacts we do not mirror) is counted as ignored. One event failing
never stops the rest of the batch.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from pydantic import BaseModel, Field

from src.circles.contacts.schemas import Contact, SyncStatus, utcnow
from src.circles.contacts.store import LocalContactStore
from src.circles.crm.adapter import CRMAdapter
from src.circles.crm.errors import CRMError, RemoteNotFoundError
from src.circles.crm.field_mapping import (
    DEFAULT_FIELD_MAPPINGS,
    from_remote_properties,
    is_namespaced_field,
)
from src.circles.crm.registry import ConnectionRegistry
from src.circles.crm.schemas import CRMProvider, FieldMapping

logger = structlog.get_logger(__name__)


class WebhookResult(BaseModel):
    received: int = 0
    processed: int = 0
    ignored: int = 0
    errors: list[str] = Field(default_factory=list)


def _event_kind(event: dict[str, Any]) -> tuple[str | None, str | None]:
    """Return (object_type, action) for new-style and legacy subscription types.

    ``object.propertyChange`` carries the type in ``objectType``; legacy
    ``contact.propertyChange`` carries it in the prefix.
    """
    subscription = event.get("subscriptionType")
    if not isinstance(subscription, str) or "." not in subscription:
        return None, None
    prefix, action = subscription.split(".", 1)
    if prefix == "object":
        object_type = event.get("objectType")
        return (str(object_type).lower() if object_type else None), action
    return prefix.lower(), action


class WebhookEventProcessor:
    """Applies HubSpot contact events to the local store.

    Args:
        store: Local contact store.
        connections: Registry used to find the active HubSpot connection,
            whose adapter reads newly created records.
    """

    def __init__(self, store: LocalContactStore, connections: ConnectionRegistry | None = None) -> None:
        self._store = store
        self._connections = connections

    def _adapter(self) -> CRMAdapter | None:
        if self._connections is None:
            return None
        for connection in self._connections.active():
            if connection.provider == CRMProvider.HUBSPOT:
                return self._connections.adapter_for(connection)
        return None

    def _mappings(self) -> list[FieldMapping]:
        adapter = self._adapter()
        return adapter.mappings if adapter is not None else DEFAULT_FIELD_MAPPINGS[CRMProvider.HUBSPOT]

    async def process(self, events: list[Any]) -> WebhookResult:
        result = WebhookResult(received=len(events))

        for event in events:
            try:
                handled = await self._process_event(event)
            except (CRMError, ValueError) as exc:
                result.errors.append(f"{event.get('eventId', '?')}: {exc}")
                logger.warning("webhook.event_failed", event_id=event.get("eventId"), error=str(exc))
                continue
            if handled:
                result.processed += 1
            else:
                result.ignored += 1

        if result.processed:
            await self._store.persist()
        logger.info(
            "webhook.batch_processed",
            received=result.received,
            processed=result.processed,
            ignored=result.ignored,
            errors=len(result.errors),
        )
        return result

    async def _process_event(self, event: Any) -> bool:
        if not isinstance(event, dict) or event.get("objectId") is None:
            logger.debug("webhook.malformed_event")
            return False

        object_type, action = _event_kind(event)
        if object_type != "contact":
            logger.debug("webhook.ignored_object_type", object_type=object_type)
            return False

        remote_id = str(event["objectId"])
        if action == "propertyChange":
            return self._handle_property_change(remote_id, event)
        if action == "creation":
            return await self._handle_creation(remote_id)
        if action == "deletion":
            return self._handle_deletion(remote_id)
        logger.debug("webhook.unhandled_subscription", action=action)
        return False

    def _handle_property_change(self, remote_id: str, event: dict[str, Any]) -> bool:
        property_name = event.get("propertyName")
        if not is_namespaced_field(property_name):
            return False

        contact = self._store.find_by_remote_id(remote_id)
        if contact is None or contact.is_deleted:
            logger.debug("webhook.contact_not_mirrored", remote_id=remote_id)
            return False

        mappings = [m for m in self._mappings() if m.crm_field == property_name]
        if not mappings:
            logger.debug("webhook.unmapped_property", property=property_name)
            return False

        fields = from_remote_properties({property_name: event.get("propertyValue")}, mappings, contact)
        if not fields:
            return False
        # Unpushed local edits keep the contact pending.
        in_sync = contact.sync_status == SyncStatus.SYNCED
        self._store.apply_remote(contact.id, fields, mark_synced=in_sync)
        logger.info(
            "webhook.contact_property_updated",
            contact_id=contact.id,
            property=property_name,
        )
        return True

    async def _handle_creation(self, remote_id: str) -> bool:
        if self._store.find_by_remote_id(remote_id) is not None:
            return False
        adapter = self._adapter()
        if adapter is None:
            logger.warning("webhook.no_hubspot_connection", remote_id=remote_id)
            return False

        try:
            remote = await adapter.fetch_contact(remote_id)
        except RemoteNotFoundError:
            return False

        has_namespaced_data = any(
            is_namespaced_field(name) and value not in (None, "")
            for name, value in remote.properties.items()
        )
        if not has_namespaced_data:
            logger.debug("webhook.creation_without_namespaced_data", remote_id=remote_id)
            return False

        fields = adapter.local_fields(remote)
        contact = Contact(
            id=uuid.uuid4().hex,
            **fields,
            remote_id=remote.remote_id,
            sync_status=SyncStatus.SYNCED,
            last_synced_at=utcnow(),
        )
        self._store.add(contact)
        logger.info("webhook.contact_imported", contact_id=contact.id, remote_id=remote_id)
        return True

    def _handle_deletion(self, remote_id: str) -> bool:
        contact = self._store.find_by_remote_id(remote_id)
        if contact is None or contact.is_deleted:
            return False
        self._store.soft_delete_by_remote_id(remote_id)
        return True
