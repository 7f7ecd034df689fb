"""Pydantic schemas for the local contact store.

Defines:
- Enums: IdentifierType, SyncStatus, GroupType
- Contact, ContactIdentifier, ContactGroup
- ImportedContact: record produced by the device address-book importer
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ───────────────────────────────────────────────────────────────────


class IdentifierType(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    LINKEDIN = "linkedin"
    URL = "url"


class SyncStatus(str, Enum):
    """Push state of a contact relative to its CRM record."""

    NONE = "none"
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class GroupType(str, Enum):
    EVENT = "event"
    LOCATION = "location"
    CUSTOM = "custom"
    CONFERENCE = "conference"
    CLIENT = "client"
    PROSPECT = "prospect"
    TEAM = "team"
    SALES_MEETING = "sales-meeting"


# ── Contacts ────────────────────────────────────────────────────────────────


class ContactIdentifier(BaseModel):
    type: IdentifierType
    value: str


class Contact(BaseModel):
    """A contact in the local store.

    ``groups`` holds group *names* in display order; ``tags`` is a set whose
    order carries no meaning. ``remote_id`` links the contact to its record
    in the primary CRM connection.
    """

    id: str
    name: str = ""
    company: str = ""
    title: str = ""
    city: str = ""
    country: str = ""
    identifiers: list[ContactIdentifier] = Field(default_factory=list)
    tags: set[str] = Field(default_factory=set)
    groups: list[str] = Field(default_factory=list)
    starred: bool = False
    last_interaction: datetime | None = None

    # Networking context carried to CRMs through namespaced custom fields
    first_met_location: str | None = None
    first_met_date: str | None = None
    notes: str | None = None

    # CRM sync tracking
    remote_id: str | None = None
    sync_status: SyncStatus = SyncStatus.NONE
    sync_error: str | None = None
    last_synced_at: datetime | None = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @model_validator(mode="after")
    def _synced_requires_remote_id(self) -> Contact:
        if self.sync_status == SyncStatus.SYNCED and not self.remote_id:
            raise ValueError("a synced contact must carry a remote_id")
        return self

    def identifier(self, kind: IdentifierType) -> str | None:
        """Return the first identifier value of the given type."""
        for ident in self.identifiers:
            if ident.type == kind:
                return ident.value
        return None

    @property
    def email(self) -> str | None:
        return self.identifier(IdentifierType.EMAIL)

    @property
    def phone(self) -> str | None:
        return self.identifier(IdentifierType.PHONE)

    @property
    def linkedin(self) -> str | None:
        return self.identifier(IdentifierType.LINKEDIN)

    @property
    def first_name(self) -> str:
        return self.name.strip().split(" ", 1)[0] if self.name.strip() else ""

    @property
    def last_name(self) -> str:
        parts = self.name.strip().split(" ", 1)
        return parts[1].strip() if len(parts) > 1 else ""

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ContactGroup(BaseModel):
    """A named group. ``members`` holds contact ids."""

    id: str
    name: str
    type: GroupType = GroupType.CUSTOM
    members: set[str] = Field(default_factory=set)
    location: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class ImportedContact(BaseModel):
    """Candidate contact supplied by the device address-book importer."""

    name: str
    identifiers: list[ContactIdentifier] = Field(default_factory=list)
    company: str = ""
    title: str = ""
    note: str = ""
    tags: list[str] = Field(default_factory=list)
