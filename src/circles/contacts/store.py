"""Local contact store -- optimistic in-memory CRUD persisted as JSON blobs.

All mutations are synchronous and immediately visible to readers. Durability
is a separate, awaited step (``persist()``) so callers decide when to pay for
the storage round trip. Referential cleanup between contacts and groups is
done here:

- Deleting a contact removes its id from every group's ``members``.
- Deleting a group removes its name from every member contact's ``groups``.
- Adding a contact that names an unknown group creates that group.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any

import structlog
from pydantic import TypeAdapter

from src.circles.contacts.schemas import (
    Contact,
    ContactGroup,
    GroupType,
    SyncStatus,
    utcnow,
)
from src.circles.core.storage import KeyValueStore, StorageKeys

logger = structlog.get_logger(__name__)

_CONTACT_LIST = TypeAdapter(list[Contact])
_GROUP_LIST = TypeAdapter(list[ContactGroup])

# Fields maintained by the store itself; callers cannot patch them via update().
_PROTECTED_FIELDS = frozenset({"id", "created_at", "updated_at", "deleted_at"})


class ContactNotFoundError(KeyError):
    """No contact with the given id exists in the store."""


class GroupNotFoundError(KeyError):
    """No group with the given id exists in the store."""


class DuplicateGroupError(ValueError):
    """A group with the same name already exists."""


class LocalContactStore:
    """Owns the Contact and ContactGroup collections.

    Args:
        storage: Durable key-value store used by load() and persist().
    """

    def __init__(self, storage: KeyValueStore) -> None:
        self._storage = storage
        self._contacts: dict[str, Contact] = {}
        self._groups: dict[str, ContactGroup] = {}
        self._write_lock = asyncio.Lock()

    # ── Persistence ─────────────────────────────────────────────────────

    async def load(self) -> None:
        """Replace in-memory state with the persisted blobs."""
        contacts_raw = await self._storage.get(StorageKeys.CONTACTS)
        groups_raw = await self._storage.get(StorageKeys.GROUPS)

        contacts = _CONTACT_LIST.validate_json(contacts_raw) if contacts_raw else []
        groups = _GROUP_LIST.validate_json(groups_raw) if groups_raw else []

        self._contacts = {c.id: c for c in contacts}
        self._groups = {g.id: g for g in groups}
        logger.info(
            "store.loaded",
            contacts=len(self._contacts),
            groups=len(self._groups),
        )

    async def persist(self) -> None:
        """Write both collections. Serialization happens under the write lock
        so the last writer always stores the latest state."""
        async with self._write_lock:
            contacts_blob = _CONTACT_LIST.dump_json(list(self._contacts.values()))
            groups_blob = _GROUP_LIST.dump_json(list(self._groups.values()))
            await self._storage.set(StorageKeys.CONTACTS, contacts_blob)
            await self._storage.set(StorageKeys.GROUPS, groups_blob)

    # ── Contact reads ───────────────────────────────────────────────────

    def get(self, contact_id: str) -> Contact:
        try:
            return self._contacts[contact_id]
        except KeyError:
            raise ContactNotFoundError(contact_id) from None

    def find(self, contact_id: str) -> Contact | None:
        return self._contacts.get(contact_id)

    def contacts(self, include_deleted: bool = False) -> list[Contact]:
        return [
            c for c in self._contacts.values()
            if include_deleted or not c.is_deleted
        ]

    def find_by_remote_id(self, remote_id: str) -> Contact | None:
        for contact in self._contacts.values():
            if contact.remote_id == remote_id:
                return contact
        return None

    def find_by_email(self, email: str) -> Contact | None:
        needle = email.strip().lower()
        for contact in self._contacts.values():
            if contact.email and contact.email.strip().lower() == needle:
                return contact
        return None

    # ── Contact mutations ───────────────────────────────────────────────

    def add(self, contact: Contact) -> Contact:
        """Insert a contact and register it with the groups it names."""
        if contact.id in self._contacts:
            raise ValueError(f"contact {contact.id} already exists")

        self._contacts[contact.id] = contact
        for group_name in contact.groups:
            group = self.find_group_by_name(group_name)
            if group is None:
                group = ContactGroup(
                    id=f"g{uuid.uuid4().hex[:12]}",
                    name=group_name,
                    type=GroupType.CUSTOM,
                )
                self._groups[group.id] = group
                logger.debug("store.group_autocreated", group=group_name)
            group.members.add(contact.id)

        logger.debug("store.contact_added", contact_id=contact.id)
        return contact

    def update(self, contact_id: str, partial: dict[str, Any]) -> Contact:
        """Merge ``partial`` into the contact. Fields absent from partial are kept."""
        current = self.get(contact_id)
        unknown = set(partial) - set(Contact.model_fields)
        if unknown:
            raise ValueError(f"unknown contact fields: {sorted(unknown)}")
        blocked = set(partial) & _PROTECTED_FIELDS
        if blocked:
            raise ValueError(f"fields cannot be updated directly: {sorted(blocked)}")

        merged = {**current.model_dump(), **partial, "updated_at": utcnow()}
        updated = Contact.model_validate(merged)
        self._contacts[contact_id] = updated

        if "groups" in partial:
            self._sync_memberships(updated)

        logger.debug(
            "store.contact_updated",
            contact_id=contact_id,
            fields=sorted(partial),
        )
        return updated

    def delete(self, contact_id: str) -> Contact:
        """Remove a contact and strip it from every group's members."""
        contact = self._contacts.pop(contact_id, None)
        if contact is None:
            raise ContactNotFoundError(contact_id)
        for group in self._groups.values():
            group.members.discard(contact_id)
        logger.debug("store.contact_deleted", contact_id=contact_id)
        return contact

    def toggle_star(self, contact_id: str) -> Contact:
        contact = self.get(contact_id)
        return self.update(contact_id, {"starred": not contact.starred})

    def soft_delete_by_remote_id(self, remote_id: str) -> Contact | None:
        """Mark the local mirror of a remote record as deleted."""
        contact = self.find_by_remote_id(remote_id)
        if contact is None or contact.is_deleted:
            return contact
        now = utcnow()
        updated = contact.model_copy(update={"deleted_at": now, "updated_at": now})
        self._contacts[contact.id] = updated
        logger.info("store.contact_soft_deleted", contact_id=contact.id, remote_id=remote_id)
        return updated

    # ── Sync bookkeeping ────────────────────────────────────────────────
    # These do not touch updated_at: they record sync state, not user edits.

    def mark_pending(self, contact_id: str) -> Contact | None:
        return self._set_sync_state(contact_id, sync_status=SyncStatus.PENDING, sync_error=None)

    def mark_synced(
        self,
        contact_id: str,
        remote_id: str | None,
        synced_at: datetime | None = None,
    ) -> Contact | None:
        contact = self.find(contact_id)
        if contact is None:
            return None
        return self._set_sync_state(
            contact_id,
            remote_id=remote_id or contact.remote_id,
            sync_status=SyncStatus.SYNCED,
            sync_error=None,
            last_synced_at=synced_at or utcnow(),
        )

    def mark_failed(self, contact_id: str, error: str) -> Contact | None:
        return self._set_sync_state(contact_id, sync_status=SyncStatus.FAILED, sync_error=error)

    def apply_remote(
        self,
        contact_id: str,
        fields: dict[str, Any],
        synced_at: datetime | None = None,
        mark_synced: bool = True,
    ) -> Contact:
        """Overwrite remote-sourced fields, leaving local-only fields untouched.

        With ``mark_synced=False`` the sync bookkeeping is kept as is, so a
        contact with an unpushed local edit stays pending.
        """
        current = self.get(contact_id)
        allowed = {k: v for k, v in fields.items() if k in Contact.model_fields and k not in _PROTECTED_FIELDS}
        merged = {**current.model_dump(), **allowed}
        if mark_synced:
            merged.update(
                sync_status=SyncStatus.SYNCED,
                sync_error=None,
                last_synced_at=synced_at or utcnow(),
            )
        updated = Contact.model_validate(merged)
        self._contacts[contact_id] = updated
        logger.debug(
            "store.remote_applied",
            contact_id=contact_id,
            fields=sorted(allowed),
        )
        return updated

    def _set_sync_state(self, contact_id: str, **changes: Any) -> Contact | None:
        contact = self.find(contact_id)
        if contact is None:
            return None
        updated = Contact.model_validate({**contact.model_dump(), **changes})
        self._contacts[contact_id] = updated
        return updated

    # ── Groups ──────────────────────────────────────────────────────────

    def get_group(self, group_id: str) -> ContactGroup:
        try:
            return self._groups[group_id]
        except KeyError:
            raise GroupNotFoundError(group_id) from None

    def groups(self) -> list[ContactGroup]:
        return list(self._groups.values())

    def find_group_by_name(self, name: str) -> ContactGroup | None:
        for group in self._groups.values():
            if group.name == name:
                return group
        return None

    def add_group(self, group: ContactGroup) -> ContactGroup:
        if group.id in self._groups:
            raise ValueError(f"group {group.id} already exists")
        if self.find_group_by_name(group.name) is not None:
            raise DuplicateGroupError(group.name)
        missing = [m for m in group.members if m not in self._contacts]
        if missing:
            raise ContactNotFoundError(missing[0])

        self._groups[group.id] = group
        for member_id in group.members:
            contact = self._contacts[member_id]
            if group.name not in contact.groups:
                self._contacts[member_id] = contact.model_copy(
                    update={"groups": [*contact.groups, group.name]}
                )
        return group

    def update_group(self, group_id: str, partial: dict[str, Any]) -> ContactGroup:
        """Update a group. Renames and member changes are propagated to contacts."""
        current = self.get_group(group_id)
        new_name = partial.get("name", current.name)
        if new_name != current.name and self.find_group_by_name(new_name) is not None:
            raise DuplicateGroupError(new_name)
        if "members" in partial:
            missing = [m for m in partial["members"] if m not in self._contacts]
            if missing:
                raise ContactNotFoundError(missing[0])

        updated = ContactGroup.model_validate(
            {**current.model_dump(), **partial, "id": group_id}
        )
        self._groups[group_id] = updated

        if new_name != current.name:
            for contact in self._contacts.values():
                if current.name in contact.groups:
                    renamed = [new_name if g == current.name else g for g in contact.groups]
                    self._contacts[contact.id] = contact.model_copy(update={"groups": renamed})

        for member_id in current.members - updated.members:
            contact = self._contacts.get(member_id)
            if contact is not None and new_name in contact.groups:
                self._contacts[member_id] = contact.model_copy(
                    update={"groups": [g for g in contact.groups if g != new_name]}
                )
        for member_id in updated.members - current.members:
            contact = self._contacts[member_id]
            if new_name not in contact.groups:
                self._contacts[member_id] = contact.model_copy(
                    update={"groups": [*contact.groups, new_name]}
                )
        return updated

    def delete_group(self, group_id: str) -> ContactGroup:
        """Remove a group and its name from every contact's ``groups``."""
        group = self._groups.pop(group_id, None)
        if group is None:
            raise GroupNotFoundError(group_id)
        for contact in list(self._contacts.values()):
            if group.name in contact.groups:
                self._contacts[contact.id] = contact.model_copy(
                    update={"groups": [g for g in contact.groups if g != group.name]}
                )
        logger.debug("store.group_deleted", group_id=group_id, name=group.name)
        return group

    def _sync_memberships(self, contact: Contact) -> None:
        """Make group membership match ``contact.groups`` after an edit."""
        names = set(contact.groups)
        for group in self._groups.values():
            if group.name in names:
                group.members.add(contact.id)
            else:
                group.members.discard(contact.id)
        for name in names:
            if self.find_group_by_name(name) is None:
                group = ContactGroup(id=f"g{uuid.uuid4().hex[:12]}", name=name, members={contact.id})
                self._groups[group.id] = group
