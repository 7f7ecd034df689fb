"""CRM adapter abstract base class -- defines the interface every provider implements.

Each provider (HubSpot, Salesforce, Pipedrive, generic webhook) implements a
small set of primitives: search by email, get by id, create, update, create
note, and refresh credentials. The provider-independent parts live here:

- push_contact(): find-or-create-or-claim resolution with ownership safety.
  A record owned by someone else is never overwritten; a networking note is
  attached instead.
- fetch_contact(): pull-path read used by reconciliation.
- _call(): on an expired credential, refresh exactly once and retry exactly
  once. A second failure surfaces as AuthError.
- _request(): one HTTP call through httpx with tenacity retry for transient
  failures, mapping every non-2xx response to the CRM error taxonomy.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.circles.config import get_settings
from src.circles.contacts.schemas import Contact
from src.circles.crm.errors import (
    AuthError,
    AuthExpiredError,
    CRMError,
    NetworkError,
    RemoteNotFoundError,
    ValidationError,
    classify_http_error,
)
from src.circles.crm.field_mapping import (
    from_remote_properties,
    mappings_for,
    to_remote_properties,
)
from src.circles.crm.schemas import (
    CRMConnection,
    CRMProvider,
    FieldMapping,
    PushAction,
    PushOutcome,
    RemoteContact,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CredentialsCallback = Callable[[CRMConnection], Awaitable[None]]


def parse_timestamp(value: Any) -> datetime | None:
    """Parse provider timestamps (ISO strings, epoch millis) into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        # Salesforce sends +0000 style offsets
        text = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_networking_note(contact: Contact, connection: CRMConnection) -> str:
    """Summarize the local networking context for a record owned by someone else."""
    who = connection.owner_display_name or connection.owner_id or "an All My Circles user"
    header = f"Additional networking contact made by {who}"

    details: list[str] = []
    if contact.first_met_location:
        details.append(f"Location: {contact.first_met_location}")
    met_on = contact.first_met_date or (
        contact.last_interaction.date().isoformat() if contact.last_interaction else None
    )
    if met_on:
        details.append(f"Date: {met_on}")
    if contact.notes:
        details.append(f"Notes: {contact.notes}")
    if contact.tags:
        details.append(f"Tags: {', '.join(sorted(contact.tags))}")

    return f"{header}\n\n" + "\n".join(details) if details else header


class CRMAdapter(ABC):
    """Abstract interface for one CRM connection.

    Args:
        connection: The connection this adapter serves. Credentials are read
            from it on every request and rewritten in place on refresh.
        http_client: Optional shared httpx client (tests inject a
            MockTransport-backed client here).
        max_attempts: Attempts per HTTP call for transient failures.
        on_credentials_refreshed: Awaited after a successful refresh so the
            owner can persist the new credentials.
    """

    provider: CRMProvider
    supports_search: bool = True
    supports_pull: bool = True
    supports_notes: bool = True

    def __init__(
        self,
        connection: CRMConnection,
        *,
        http_client: httpx.AsyncClient | None = None,
        max_attempts: int | None = None,
        timeout: float | None = None,
        on_credentials_refreshed: CredentialsCallback | None = None,
    ) -> None:
        settings = get_settings()
        self._connection = connection
        self._mappings = mappings_for(connection.provider, connection.field_mappings)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout or settings.HTTP_TIMEOUT_SECONDS,
        )
        self._max_attempts = max_attempts or settings.HTTP_MAX_ATTEMPTS
        self._on_credentials_refreshed = on_credentials_refreshed

    @property
    def connection(self) -> CRMConnection:
        return self._connection

    @property
    def mappings(self) -> list[FieldMapping]:
        return self._mappings

    @property
    def credentials(self) -> dict[str, Any]:
        return self._connection.credentials

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self._connection.name}>"

    # ── Provider primitives ─────────────────────────────────────────────

    @abstractmethod
    async def search_by_email(self, email: str) -> RemoteContact | None:
        """Return the remote record with this email, or None."""
        ...

    @abstractmethod
    async def get_contact(self, remote_id: str) -> RemoteContact:
        """Fetch a record by id. Raises RemoteNotFoundError if it is gone."""
        ...

    @abstractmethod
    async def create_contact(self, properties: dict[str, Any], owner_id: str | None) -> str:
        """Create a record owned by owner_id, return its remote id."""
        ...

    @abstractmethod
    async def update_contact(
        self,
        remote_id: str,
        properties: dict[str, Any],
        owner_id: str | None = None,
    ) -> None:
        """Patch a record. A non-None owner_id also assigns ownership."""
        ...

    @abstractmethod
    async def create_note(self, remote_id: str, body: str, owner_id: str | None) -> str | None:
        """Attach an immutable note/engagement to a record."""
        ...

    @abstractmethod
    async def refresh_credentials(self) -> None:
        """Exchange the stored refresh credential for a new access credential.

        Implementations update ``self.credentials`` in place and raise
        AuthError when no refresh is possible.
        """
        ...

    async def remove_contact(self, remote_id: str) -> None:
        """React to a local delete. CRM records belong to the CRM, so the
        default is to leave them in place."""
        logger.info(
            "crm.remove_skipped",
            provider=self.provider.value,
            remote_id=remote_id,
        )

    # ── Template operations ─────────────────────────────────────────────

    async def push_contact(self, contact: Contact) -> PushOutcome:
        """Find-or-create-or-claim the remote record for a local contact.

        Resolution order: the linked ``remote_id`` (falls through if the
        record was deleted), then an email search, then create. A matched
        record owned by another user only gets a networking note; an unowned
        record is claimed and updated in one call. A 409 on create means the
        record appeared after the search, so the search is repeated once and
        the matched record takes the note or update path.

        Raises:
            ValidationError: required mapped fields are missing (before any
                network call) or the provider rejected the payload.
            NetworkError / AuthError: transient failures.
        """
        properties = to_remote_properties(contact, self._mappings)
        local_owner = self._connection.owner_id

        existing: RemoteContact | None = None
        if contact.remote_id:
            try:
                existing = await self._call(lambda: self.get_contact(contact.remote_id))
            except RemoteNotFoundError:
                logger.info(
                    "crm.linked_record_missing",
                    provider=self.provider.value,
                    contact_id=contact.id,
                    remote_id=contact.remote_id,
                )

        email = contact.email
        if existing is None and email and self.supports_search:
            existing = await self._call(lambda: self.search_by_email(email.strip().lower()))

        if existing is None:
            try:
                remote_id = await self._call(lambda: self.create_contact(properties, local_owner))
            except ValidationError as exc:
                if exc.status_code != 409 or not (email and self.supports_search):
                    raise
                # Someone created the record since our search: resolve against it.
                logger.info(
                    "crm.create_conflict",
                    provider=self.provider.value,
                    contact_id=contact.id,
                )
                existing = await self._call(lambda: self.search_by_email(email.strip().lower()))
                if existing is None:
                    raise
            else:
                logger.info(
                    "crm.contact_created",
                    provider=self.provider.value,
                    contact_id=contact.id,
                    remote_id=remote_id,
                )
                return PushOutcome(action=PushAction.CREATED, remote_id=remote_id)

        if existing.owner_id and existing.owner_id != local_owner:
            body = build_networking_note(contact, self._connection)
            await self._call(lambda: self.create_note(existing.remote_id, body, existing.owner_id))
            logger.info(
                "crm.note_added",
                provider=self.provider.value,
                contact_id=contact.id,
                remote_id=existing.remote_id,
                existing_owner=existing.owner_id,
            )
            return PushOutcome(
                action=PushAction.NOTE_ADDED,
                remote_id=existing.remote_id,
                existing_owner=existing.owner_id,
            )

        claim = not existing.owner_id and local_owner is not None
        await self._call(
            lambda: self.update_contact(
                existing.remote_id,
                properties,
                owner_id=local_owner if claim else None,
            )
        )
        action = PushAction.CLAIMED_AND_UPDATED if claim else PushAction.UPDATED
        logger.info(
            "crm.contact_updated",
            provider=self.provider.value,
            contact_id=contact.id,
            remote_id=existing.remote_id,
            action=action.value,
        )
        return PushOutcome(action=action, remote_id=existing.remote_id)

    async def fetch_contact(self, remote_id: str) -> RemoteContact:
        """Pull-path read. RemoteNotFoundError propagates to the caller."""
        return await self._call(lambda: self.get_contact(remote_id))

    def local_fields(self, remote: RemoteContact, current: Contact | None = None) -> dict[str, Any]:
        """Map a remote record onto the local Contact fields it sources."""
        return from_remote_properties(remote.properties, self._mappings, current)

    # ── Auth refresh ────────────────────────────────────────────────────

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation, refreshing credentials once on AuthExpiredError."""
        try:
            return await operation()
        except AuthExpiredError:
            logger.info(
                "crm.auth_expired",
                provider=self.provider.value,
                connection_id=self._connection.id,
            )

        try:
            await self.refresh_credentials()
        except AuthError:
            raise
        except CRMError as exc:
            raise AuthError(f"credential refresh failed: {exc}") from exc

        if self._on_credentials_refreshed is not None:
            await self._on_credentials_refreshed(self._connection)
        logger.info(
            "crm.credentials_refreshed",
            provider=self.provider.value,
            connection_id=self._connection.id,
        )

        try:
            return await operation()
        except AuthExpiredError as exc:
            raise AuthError(
                f"{self.provider.value} rejected refreshed credentials",
                status_code=exc.status_code,
            ) from exc

    # ── HTTP ────────────────────────────────────────────────────────────

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _auth_params(self) -> dict[str, str]:
        return {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request; retry transient failures with exponential backoff."""
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        params = {**self._auth_params(), **(kwargs.pop("params", None) or {})}

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(NetworkError),
            reraise=True,
        ):
            with attempt:
                try:
                    response = await self._client.request(
                        method,
                        url,
                        headers=headers,
                        params=params or None,
                        **kwargs,
                    )
                except httpx.TimeoutException as exc:
                    raise NetworkError(f"{method} {url} timed out") from exc
                except httpx.TransportError as exc:
                    raise NetworkError(f"{method} {url} failed: {exc}") from exc

                if response.is_error:
                    error = classify_http_error(response)
                    logger.warning(
                        "crm.request_failed",
                        provider=self.provider.value,
                        method=method,
                        status_code=response.status_code,
                        error_type=type(error).__name__,
                    )
                    raise error
                return response
        raise NetworkError(f"{method} {url} failed")  # pragma: no cover

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
