"""HubSpot CRM adapter -- CRM v3 objects API with OAuth refresh.

Contacts are owned through the ``hubspot_owner_id`` property. Networking
notes are created as note engagements associated to the contact
(HUBSPOT_DEFINED association type 202, note -> contact).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from src.circles.config import get_settings
from src.circles.crm.adapter import CRMAdapter, parse_timestamp
from src.circles.crm.errors import AuthError, CRMError
from src.circles.crm.schemas import CRMProvider, RemoteContact

logger = structlog.get_logger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
OWNER_PROPERTY = "hubspot_owner_id"
MODIFIED_PROPERTY = "hs_lastmodifieddate"
NOTE_TO_CONTACT_ASSOCIATION = 202


class HubSpotAdapter(CRMAdapter):
    """Adapter for a HubSpot portal.

    Expected credentials: ``access_token``, ``refresh_token``. ``client_id``
    and ``client_secret`` fall back to HUBSPOT_CLIENT_ID / HUBSPOT_CLIENT_SECRET.
    """

    provider = CRMProvider.HUBSPOT

    def _auth_headers(self) -> dict[str, str]:
        token = self.credentials.get("access_token")
        if not token:
            raise AuthError("HubSpot connection has no access token")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _requested_properties(self) -> list[str]:
        names = {m.crm_field for m in self.mappings}
        names.update((OWNER_PROPERTY, MODIFIED_PROPERTY))
        return sorted(names)

    def _to_remote(self, record: dict[str, Any]) -> RemoteContact:
        properties = record.get("properties") or {}
        return RemoteContact(
            remote_id=str(record["id"]),
            owner_id=properties.get(OWNER_PROPERTY) or None,
            properties=properties,
            updated_at=parse_timestamp(properties.get(MODIFIED_PROPERTY) or record.get("updatedAt")),
        )

    async def search_by_email(self, email: str) -> RemoteContact | None:
        response = await self._request(
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts/search",
            json={
                "filterGroups": [
                    {"filters": [{"propertyName": "email", "operator": "EQ", "value": email}]}
                ],
                "properties": self._requested_properties(),
                "limit": 1,
            },
        )
        results = response.json().get("results") or []
        if not results:
            return None
        return self._to_remote(results[0])

    async def get_contact(self, remote_id: str) -> RemoteContact:
        response = await self._request(
            "GET",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts/{remote_id}",
            params={"properties": ",".join(self._requested_properties())},
        )
        return self._to_remote(response.json())

    async def create_contact(self, properties: dict[str, Any], owner_id: str | None) -> str:
        payload = dict(properties)
        if owner_id:
            payload[OWNER_PROPERTY] = owner_id
        response = await self._request(
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts",
            json={"properties": payload},
        )
        return str(response.json()["id"])

    async def update_contact(
        self,
        remote_id: str,
        properties: dict[str, Any],
        owner_id: str | None = None,
    ) -> None:
        payload = dict(properties)
        if owner_id:
            payload[OWNER_PROPERTY] = owner_id
        await self._request(
            "PATCH",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/contacts/{remote_id}",
            json={"properties": payload},
        )

    async def create_note(self, remote_id: str, body: str, owner_id: str | None) -> str | None:
        note_properties: dict[str, Any] = {
            "hs_note_body": body,
            "hs_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if owner_id:
            note_properties[OWNER_PROPERTY] = owner_id
        response = await self._request(
            "POST",
            f"{HUBSPOT_API_BASE}/crm/v3/objects/notes",
            json={
                "properties": note_properties,
                "associations": [
                    {
                        "to": {"id": remote_id},
                        "types": [
                            {
                                "associationCategory": "HUBSPOT_DEFINED",
                                "associationTypeId": NOTE_TO_CONTACT_ASSOCIATION,
                            }
                        ],
                    }
                ],
            },
        )
        note_id = response.json().get("id")
        return str(note_id) if note_id is not None else None

    async def refresh_credentials(self) -> None:
        """Exchange the refresh token at HubSpot's OAuth token endpoint."""
        settings = get_settings()
        refresh_token = self.credentials.get("refresh_token")
        if not refresh_token:
            raise AuthError("HubSpot connection has no refresh token")

        try:
            response = await self._client.post(
                f"{HUBSPOT_API_BASE}/oauth/v1/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.credentials.get("client_id") or settings.HUBSPOT_CLIENT_ID,
                    "client_secret": self.credentials.get("client_secret") or settings.HUBSPOT_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                },
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"HubSpot token refresh failed: {exc}") from exc
        if response.is_error:
            raise AuthError(
                f"HubSpot token refresh rejected: {response.status_code}",
                status_code=response.status_code,
            )

        tokens = response.json()
        if not tokens.get("access_token"):
            raise CRMError("HubSpot token response carried no access token")
        self.credentials["access_token"] = tokens["access_token"]
        if tokens.get("refresh_token"):
            self.credentials["refresh_token"] = tokens["refresh_token"]
        if tokens.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(tokens["expires_in"]))
            self.credentials["expires_at"] = expires_at.isoformat()
        logger.info("hubspot.token_refreshed", connection_id=self.connection.id)
