"""Generic webhook adapter -- pushes contact events to a user-supplied URL.

The receiving end is write-only from our side: there is no search, no read
and no notes. Every push is an idempotent upsert event keyed by the local
contact id, so repeated delivery is safe.
"""

from __future__ import annotations

from typing import Any

import structlog

from src.circles.contacts.schemas import Contact, utcnow
from src.circles.crm.adapter import CRMAdapter
from src.circles.crm.errors import AuthError, RemoteNotFoundError, ValidationError
from src.circles.crm.field_mapping import to_remote_properties
from src.circles.crm.schemas import CRMProvider, PushAction, PushOutcome, RemoteContact

logger = structlog.get_logger(__name__)


class WebhookAdapter(CRMAdapter):
    """Adapter for a generic JSON webhook.

    Expected credentials: ``url`` and optional ``headers`` (dict sent with
    every request, e.g. a shared-secret header).
    """

    provider = CRMProvider.WEBHOOK
    supports_search = False
    supports_pull = False
    supports_notes = False

    @property
    def _url(self) -> str:
        url = self.credentials.get("url")
        if not url:
            raise ValidationError("webhook connection has no url")
        return url

    def _auth_headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update(self.credentials.get("headers") or {})
        return headers

    async def _send(self, event: str, data: dict[str, Any]) -> dict[str, Any]:
        response = await self._request(
            "POST",
            self._url,
            json={"event": event, "sent_at": utcnow().isoformat(), **data},
        )
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def push_contact(self, contact: Contact) -> PushOutcome:
        """Send a ``contact.upsert`` event. The receiver may answer with an
        ``id``; otherwise a stable id derived from the local id is used."""
        properties = to_remote_properties(contact, self.mappings)
        payload = {
            "local_id": contact.id,
            "remote_id": contact.remote_id,
            "owner_id": self.connection.owner_id,
            "contact": properties,
        }
        body = await self._call(lambda: self._send("contact.upsert", payload))
        remote_id = str(body.get("id") or contact.remote_id or f"wh_{contact.id}")
        action = PushAction.UPDATED if contact.remote_id else PushAction.CREATED
        logger.info(
            "webhook.contact_pushed",
            contact_id=contact.id,
            remote_id=remote_id,
            action=action.value,
        )
        return PushOutcome(action=action, remote_id=remote_id)

    async def remove_contact(self, remote_id: str) -> None:
        await self._call(lambda: self._send("contact.deleted", {"remote_id": remote_id}))
        logger.info("webhook.contact_removed", remote_id=remote_id)

    async def search_by_email(self, email: str) -> RemoteContact | None:
        return None

    async def get_contact(self, remote_id: str) -> RemoteContact:
        raise RemoteNotFoundError("webhook connections cannot read records back")

    async def create_contact(self, properties: dict[str, Any], owner_id: str | None) -> str:
        body = await self._send("contact.created", {"owner_id": owner_id, "contact": properties})
        if not body.get("id"):
            raise ValidationError("webhook receiver did not return an id for the created contact")
        return str(body["id"])

    async def update_contact(
        self,
        remote_id: str,
        properties: dict[str, Any],
        owner_id: str | None = None,
    ) -> None:
        await self._send(
            "contact.updated",
            {"remote_id": remote_id, "owner_id": owner_id, "contact": properties},
        )

    async def create_note(self, remote_id: str, body: str, owner_id: str | None) -> str | None:
        await self._send("contact.note", {"remote_id": remote_id, "body": body})
        return None

    async def refresh_credentials(self) -> None:
        raise AuthError("webhook credentials cannot be refreshed")
