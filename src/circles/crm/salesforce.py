"""Salesforce CRM adapter -- REST sObjects API with OAuth refresh.

Every Salesforce Contact has an ``OwnerId``, so a matched record is either
already ours (update) or someone else's (note). Notes are classic ``Note``
sObjects parented to the contact.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from src.circles.config import get_settings
from src.circles.crm.adapter import CRMAdapter, parse_timestamp
from src.circles.crm.errors import AuthError, CRMError
from src.circles.crm.schemas import CRMProvider, RemoteContact

logger = structlog.get_logger(__name__)

API_VERSION = "v59.0"
NOTE_TITLE = "Networking contact"


def soql_quote(value: str) -> str:
    """Quote a string literal for a SOQL WHERE clause."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class SalesforceAdapter(CRMAdapter):
    """Adapter for a Salesforce org.

    Expected credentials: ``instance_url``, ``access_token``,
    ``refresh_token``. ``client_id`` / ``client_secret`` / ``login_url`` fall
    back to the SALESFORCE_* settings.
    """

    provider = CRMProvider.SALESFORCE

    @property
    def _base_url(self) -> str:
        instance_url = (self.credentials.get("instance_url") or "").rstrip("/")
        if not instance_url:
            raise AuthError("Salesforce connection has no instance_url")
        return f"{instance_url}/services/data/{API_VERSION}"

    def _auth_headers(self) -> dict[str, str]:
        token = self.credentials.get("access_token")
        if not token:
            raise AuthError("Salesforce connection has no access token")
        return {"Authorization": f"Bearer {token}"}

    def _field_list(self) -> list[str]:
        fields = {"Id", "OwnerId", "LastModifiedDate"}
        fields.update(m.crm_field for m in self.mappings)
        return sorted(fields)

    def _to_remote(self, record: dict[str, Any]) -> RemoteContact:
        properties = {k: v for k, v in record.items() if k != "attributes"}
        return RemoteContact(
            remote_id=str(record["Id"]),
            owner_id=record.get("OwnerId") or None,
            properties=properties,
            updated_at=parse_timestamp(record.get("LastModifiedDate")),
        )

    async def search_by_email(self, email: str) -> RemoteContact | None:
        query = (
            f"SELECT {', '.join(self._field_list())} FROM Contact "
            f"WHERE Email = {soql_quote(email)} LIMIT 1"
        )
        response = await self._request("GET", f"{self._base_url}/query", params={"q": query})
        records = response.json().get("records") or []
        if not records:
            return None
        return self._to_remote(records[0])

    async def get_contact(self, remote_id: str) -> RemoteContact:
        response = await self._request(
            "GET",
            f"{self._base_url}/sobjects/Contact/{remote_id}",
            params={"fields": ",".join(self._field_list())},
        )
        return self._to_remote(response.json())

    async def create_contact(self, properties: dict[str, Any], owner_id: str | None) -> str:
        payload = dict(properties)
        if owner_id:
            payload["OwnerId"] = owner_id
        response = await self._request(
            "POST",
            f"{self._base_url}/sobjects/Contact",
            json=payload,
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
            payload["OwnerId"] = owner_id
        await self._request(
            "PATCH",
            f"{self._base_url}/sobjects/Contact/{remote_id}",
            json=payload,
        )

    async def create_note(self, remote_id: str, body: str, owner_id: str | None) -> str | None:
        response = await self._request(
            "POST",
            f"{self._base_url}/sobjects/Note",
            json={"ParentId": remote_id, "Title": NOTE_TITLE, "Body": body},
        )
        note_id = response.json().get("id")
        return str(note_id) if note_id is not None else None

    async def refresh_credentials(self) -> None:
        settings = get_settings()
        refresh_token = self.credentials.get("refresh_token")
        if not refresh_token:
            raise AuthError("Salesforce connection has no refresh token")
        login_url = (self.credentials.get("login_url") or settings.SALESFORCE_LOGIN_URL).rstrip("/")

        try:
            response = await self._client.post(
                f"{login_url}/services/oauth2/token",
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.credentials.get("client_id") or settings.SALESFORCE_CLIENT_ID,
                    "client_secret": self.credentials.get("client_secret") or settings.SALESFORCE_CLIENT_SECRET,
                    "refresh_token": refresh_token,
                },
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Salesforce token refresh failed: {exc}") from exc
        if response.is_error:
            raise AuthError(
                f"Salesforce token refresh rejected: {response.status_code}",
                status_code=response.status_code,
            )

        tokens = response.json()
        if not tokens.get("access_token"):
            raise CRMError("Salesforce token response carried no access token")
        self.credentials["access_token"] = tokens["access_token"]
        if tokens.get("instance_url"):
            self.credentials["instance_url"] = tokens["instance_url"]
        logger.info("salesforce.token_refreshed", connection_id=self.connection.id)
