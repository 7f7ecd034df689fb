"""Pydantic schemas for CRM connections, field mappings, and push outcomes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from src.circles.contacts.schemas import utcnow


class CRMProvider(str, Enum):
    HUBSPOT = "hubspot"
    SALESFORCE = "salesforce"
    PIPEDRIVE = "pipedrive"
    WEBHOOK = "webhook"


class Transform(str, Enum):
    NONE = "none"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    PHONE_FORMAT = "phone_format"


class FieldMapping(BaseModel):
    """Maps one local contact field to one provider field."""

    local_field: str
    crm_field: str
    is_required: bool = False
    transform: Transform = Transform.NONE


class CRMConnection(BaseModel):
    """A configured link to one CRM account.

    ``credentials`` is provider-specific and opaque to the sync engine; only
    the owning adapter reads or rewrites it. ``owner_id`` is the local user's
    identity inside the provider (the owner assigned to records it creates).
    """

    id: str
    provider: CRMProvider
    name: str
    is_active: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict)
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    owner_id: str | None = None
    owner_display_name: str | None = None
    last_sync: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RemoteContact(BaseModel):
    """Provider-neutral view of a remote contact record.

    ``properties`` is keyed by provider field name, so it can be fed through
    the connection's field mappings in either direction.
    """

    remote_id: str
    owner_id: str | None = None
    properties: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None


class PushAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    CLAIMED_AND_UPDATED = "claimed_and_updated"
    NOTE_ADDED = "note_added"


class PushOutcome(BaseModel):
    """Result of pushing one contact to one connection."""

    action: PushAction
    remote_id: str
    existing_owner: str | None = None
