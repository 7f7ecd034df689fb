"""Table-driven field mapping between local contacts and CRM records.

Defines:
- DEFAULT_FIELD_MAPPINGS: per-provider mapping tables used when a connection
  does not configure its own.
- to_remote_properties(): Contact -> provider property dict (validates
  required fields before any network call).
- from_remote_properties(): provider property dict -> local Contact fields.
- Namespaced custom fields (``amc_`` prefix) carry networking data the
  providers have no native field for.

Besides real Contact attributes, mappings may name these derived local
fields: ``first_name``, ``last_name``, ``email``, ``phone``, ``linkedin``,
``url`` (first identifier of that type) and ``tags`` (comma-joined).
"""

from __future__ import annotations

import re
from typing import Any

from src.circles.contacts.schemas import (
    Contact,
    ContactIdentifier,
    IdentifierType,
)
from src.circles.crm.errors import ValidationError
from src.circles.crm.schemas import CRMProvider, FieldMapping, Transform

NAMESPACE_PREFIX = "amc_"

_IDENTIFIER_FIELDS = {
    "email": IdentifierType.EMAIL,
    "phone": IdentifierType.PHONE,
    "linkedin": IdentifierType.LINKEDIN,
    "url": IdentifierType.URL,
}


def _m(local: str, crm: str, required: bool = False, transform: Transform = Transform.NONE) -> FieldMapping:
    return FieldMapping(local_field=local, crm_field=crm, is_required=required, transform=transform)


# ── Default Mapping Tables ─────────────────────────────────────────────────

DEFAULT_FIELD_MAPPINGS: dict[CRMProvider, list[FieldMapping]] = {
    CRMProvider.HUBSPOT: [
        _m("first_name", "firstname"),
        _m("last_name", "lastname"),
        _m("email", "email", transform=Transform.LOWERCASE),
        _m("phone", "phone", transform=Transform.PHONE_FORMAT),
        _m("company", "company"),
        _m("title", "jobtitle"),
        _m("city", "city"),
        _m("country", "country"),
        _m("linkedin", "hs_linkedin_url"),
        _m("first_met_location", "amc_first_met_location"),
        _m("first_met_date", "amc_first_met_date"),
        _m("tags", "amc_networking_tags"),
        _m("notes", "amc_networking_notes"),
    ],
    CRMProvider.SALESFORCE: [
        _m("first_name", "FirstName"),
        _m("last_name", "LastName", required=True),
        _m("email", "Email", transform=Transform.LOWERCASE),
        _m("phone", "Phone", transform=Transform.PHONE_FORMAT),
        _m("title", "Title"),
        _m("city", "MailingCity"),
        _m("country", "MailingCountry"),
        _m("notes", "Description"),
        _m("first_met_location", "AMC_First_Met_Location__c"),
        _m("first_met_date", "AMC_First_Met_Date__c"),
        _m("tags", "AMC_Networking_Tags__c"),
    ],
    CRMProvider.PIPEDRIVE: [
        _m("name", "name", required=True),
        _m("email", "email", transform=Transform.LOWERCASE),
        _m("phone", "phone", transform=Transform.PHONE_FORMAT),
        _m("title", "job_title"),
        _m("company", "org_name"),
    ],
    CRMProvider.WEBHOOK: [
        _m("name", "name", required=True),
        _m("email", "email"),
        _m("phone", "phone"),
        _m("company", "company"),
        _m("title", "title"),
        _m("city", "city"),
        _m("country", "country"),
        _m("linkedin", "linkedin"),
        _m("first_met_location", "first_met_location"),
        _m("first_met_date", "first_met_date"),
        _m("tags", "tags"),
        _m("notes", "notes"),
    ],
}


def mappings_for(provider: CRMProvider, configured: list[FieldMapping] | None = None) -> list[FieldMapping]:
    """Return the connection's own mappings, or the provider default table."""
    if configured:
        return configured
    return DEFAULT_FIELD_MAPPINGS[provider]


def is_namespaced_field(name: str | None) -> bool:
    return bool(name) and name.lower().startswith(NAMESPACE_PREFIX)


# ── Transforms ─────────────────────────────────────────────────────────────


def format_phone_number(phone: str) -> str:
    """Format 10-digit US numbers as (XXX) XXX-XXXX; return others unchanged."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return phone


def apply_transform(value: Any, transform: Transform) -> Any:
    if not isinstance(value, str):
        return value
    if transform == Transform.UPPERCASE:
        return value.upper()
    if transform == Transform.LOWERCASE:
        return value.lower()
    if transform == Transform.PHONE_FORMAT:
        return format_phone_number(value)
    return value


# ── Conversion Functions ───────────────────────────────────────────────────


def local_value(contact: Contact, field: str) -> Any:
    """Read a (possibly derived) local field from a contact."""
    if field in _IDENTIFIER_FIELDS:
        return contact.identifier(_IDENTIFIER_FIELDS[field])
    if field == "tags":
        return ", ".join(sorted(contact.tags)) if contact.tags else None
    if field in ("first_name", "last_name"):
        return getattr(contact, field)
    if field in Contact.model_fields:
        return getattr(contact, field)
    raise ValidationError(f"unknown local field in mapping: {field}")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def to_remote_properties(contact: Contact, mappings: list[FieldMapping]) -> dict[str, Any]:
    """Convert a contact to provider properties.

    Raises:
        ValidationError: if any required mapped field is empty. Raised before
            the caller makes a network call.
    """
    properties: dict[str, Any] = {}
    missing: list[str] = []

    for mapping in mappings:
        value = local_value(contact, mapping.local_field)
        if _is_empty(value):
            if mapping.is_required:
                missing.append(mapping.local_field)
            continue
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        properties[mapping.crm_field] = apply_transform(value, mapping.transform)

    if missing:
        raise ValidationError(
            f"contact {contact.id} is missing required fields: {', '.join(missing)}"
        )
    return properties


def from_remote_properties(
    properties: dict[str, Any],
    mappings: list[FieldMapping],
    current: Contact | None = None,
) -> dict[str, Any]:
    """Convert provider properties to a partial dict of Contact fields.

    Only fields present (non-empty) on the remote side are returned, so
    applying the result never blanks a local value. Identifier fields replace
    the first local identifier of the same type and keep the rest.
    """
    result: dict[str, Any] = {}
    first_name: str | None = None
    last_name: str | None = None
    identifiers = list(current.identifiers) if current is not None else []
    identifiers_changed = False

    for mapping in mappings:
        value = properties.get(mapping.crm_field)
        if _is_empty(value):
            continue
        field = mapping.local_field

        if field == "first_name":
            first_name = str(value).strip()
        elif field == "last_name":
            last_name = str(value).strip()
        elif field in _IDENTIFIER_FIELDS:
            identifiers = _replace_identifier(identifiers, _IDENTIFIER_FIELDS[field], str(value))
            identifiers_changed = True
        elif field == "tags":
            result["tags"] = split_tags(value)
        elif field in Contact.model_fields and field not in ("id", "remote_id"):
            result[field] = value

    if first_name is not None or last_name is not None:
        result["name"] = " ".join(p for p in (first_name, last_name) if p)
    if identifiers_changed:
        result["identifiers"] = identifiers
    return result


def split_tags(value: Any) -> set[str]:
    if isinstance(value, (list, tuple, set)):
        return {str(v).strip() for v in value if str(v).strip()}
    return {tag.strip() for tag in str(value).split(",") if tag.strip()}


def _replace_identifier(
    identifiers: list[ContactIdentifier],
    kind: IdentifierType,
    value: str,
) -> list[ContactIdentifier]:
    replaced = False
    result: list[ContactIdentifier] = []
    for ident in identifiers:
        if ident.type == kind and not replaced:
            result.append(ContactIdentifier(type=kind, value=value))
            replaced = True
        else:
            result.append(ident)
    if not replaced:
        result.append(ContactIdentifier(type=kind, value=value))
    return result
