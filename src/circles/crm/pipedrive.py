"""Pipedrive CRM adapter -- persons and notes via the v1 REST API.

Authenticates with a static API token passed as a query parameter. API
tokens cannot be refreshed, so an expired token surfaces as AuthError and
the queue's retry counter takes over.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.circles.crm.adapter import CRMAdapter, parse_timestamp
from src.circles.crm.errors import AuthError, RemoteNotFoundError
from src.circles.crm.schemas import CRMProvider, RemoteContact

logger = structlog.get_logger(__name__)


def _primary_value(entries: Any) -> str | None:
    """Pick the primary value out of Pipedrive's ``[{value, primary}]`` lists."""
    if isinstance(entries, str):
        return entries or None
    if not isinstance(entries, list):
        return None
    values = [e for e in entries if isinstance(e, dict) and e.get("value")]
    for entry in values:
        if entry.get("primary"):
            return entry["value"]
    return values[0]["value"] if values else None


def _owner_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id") or value.get("value")
    return str(value) if value else None


def _as_id(value: str) -> int | str:
    return int(value) if value.isdigit() else value


class PipedriveAdapter(CRMAdapter):
    """Adapter for a Pipedrive company account.

    Expected credentials: ``api_token`` and ``company_domain`` (the
    ``<domain>.pipedrive.com`` subdomain).
    """

    provider = CRMProvider.PIPEDRIVE

    @property
    def _base_url(self) -> str:
        domain = self.credentials.get("company_domain") or "api"
        return f"https://{domain}.pipedrive.com/api/v1"

    def _auth_params(self) -> dict[str, str]:
        token = self.credentials.get("api_token")
        if not token:
            raise AuthError("Pipedrive connection has no API token")
        return {"api_token": token}

    def _to_remote(self, person: dict[str, Any]) -> RemoteContact:
        properties = dict(person)
        properties["email"] = _primary_value(person.get("email"))
        properties["phone"] = _primary_value(person.get("phone"))
        return RemoteContact(
            remote_id=str(person["id"]),
            owner_id=_owner_id(person.get("owner_id")),
            properties=properties,
            updated_at=parse_timestamp(person.get("update_time")),
        )

    def _payload(self, properties: dict[str, Any], owner_id: str | None) -> dict[str, Any]:
        payload = dict(properties)
        for key in ("email", "phone"):
            if key in payload:
                payload[key] = [{"value": payload[key], "primary": True}]
        if owner_id:
            payload["owner_id"] = _as_id(owner_id)
        return payload

    async def search_by_email(self, email: str) -> RemoteContact | None:
        response = await self._request(
            "GET",
            f"{self._base_url}/persons/search",
            params={"term": email, "fields": "email", "exact_match": "true", "limit": 1},
        )
        items = (response.json().get("data") or {}).get("items") or []
        if not items:
            return None
        person_id = str(items[0]["item"]["id"])
        return await self.get_contact(person_id)

    async def get_contact(self, remote_id: str) -> RemoteContact:
        response = await self._request("GET", f"{self._base_url}/persons/{remote_id}")
        person = response.json().get("data")
        if not person or person.get("active_flag") is False:
            raise RemoteNotFoundError(f"Pipedrive person {remote_id} is deleted", status_code=404)
        return self._to_remote(person)

    async def create_contact(self, properties: dict[str, Any], owner_id: str | None) -> str:
        response = await self._request(
            "POST",
            f"{self._base_url}/persons",
            json=self._payload(properties, owner_id),
        )
        return str(response.json()["data"]["id"])

    async def update_contact(
        self,
        remote_id: str,
        properties: dict[str, Any],
        owner_id: str | None = None,
    ) -> None:
        await self._request(
            "PUT",
            f"{self._base_url}/persons/{remote_id}",
            json=self._payload(properties, owner_id),
        )

    async def create_note(self, remote_id: str, body: str, owner_id: str | None) -> str | None:
        response = await self._request(
            "POST",
            f"{self._base_url}/notes",
            json={"content": body, "person_id": _as_id(remote_id)},
        )
        note = response.json().get("data") or {}
        return str(note["id"]) if note.get("id") is not None else None

    async def refresh_credentials(self) -> None:
        raise AuthError("Pipedrive API tokens cannot be refreshed; reconnect the account")
