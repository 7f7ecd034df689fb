"""Registry of configured CRM connections and their adapters.

Connections are persisted as one JSON blob. Each connection gets exactly one
adapter instance, chosen by provider when the connection is first used; the
adapter writes refreshed credentials back through the registry.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog
from pydantic import TypeAdapter

from src.circles.core.storage import KeyValueStore, StorageKeys
from src.circles.crm.adapter import CRMAdapter, CredentialsCallback
from src.circles.crm.hubspot import HubSpotAdapter
from src.circles.crm.pipedrive import PipedriveAdapter
from src.circles.crm.salesforce import SalesforceAdapter
from src.circles.crm.schemas import CRMConnection, CRMProvider
from src.circles.crm.webhook import WebhookAdapter

logger = structlog.get_logger(__name__)

ADAPTER_CLASSES: dict[CRMProvider, type[CRMAdapter]] = {
    CRMProvider.HUBSPOT: HubSpotAdapter,
    CRMProvider.SALESFORCE: SalesforceAdapter,
    CRMProvider.PIPEDRIVE: PipedriveAdapter,
    CRMProvider.WEBHOOK: WebhookAdapter,
}

AdapterFactory = Callable[..., CRMAdapter]

_CONNECTION_LIST = TypeAdapter(list[CRMConnection])


def build_adapter(
    connection: CRMConnection,
    *,
    on_credentials_refreshed: CredentialsCallback | None = None,
    **kwargs: Any,
) -> CRMAdapter:
    """Instantiate the adapter class registered for the connection's provider."""
    adapter_cls = ADAPTER_CLASSES[connection.provider]
    return adapter_cls(connection, on_credentials_refreshed=on_credentials_refreshed, **kwargs)


class ConnectionRegistry:
    """Owns CRMConnection records and the adapter cache.

    Args:
        storage: Durable key-value store for the connection list.
        adapter_factory: Builds an adapter for a connection. Called with the
            connection and an ``on_credentials_refreshed`` keyword.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        adapter_factory: AdapterFactory = build_adapter,
    ) -> None:
        self._storage = storage
        self._adapter_factory = adapter_factory
        self._connections: dict[str, CRMConnection] = {}
        self._adapters: dict[str, CRMAdapter] = {}

    async def load(self) -> None:
        raw = await self._storage.get(StorageKeys.CRM_CONNECTIONS)
        connections = _CONNECTION_LIST.validate_json(raw) if raw else []
        self._connections = {c.id: c for c in connections}
        self._adapters.clear()
        logger.info("registry.loaded", connections=len(self._connections))

    async def persist(self) -> None:
        blob = _CONNECTION_LIST.dump_json(list(self._connections.values()))
        await self._storage.set(StorageKeys.CRM_CONNECTIONS, blob)

    # ── Connections ─────────────────────────────────────────────────────

    async def add(self, connection: CRMConnection) -> CRMConnection:
        if connection.id in self._connections:
            raise ValueError(f"connection {connection.id} already exists")
        self._connections[connection.id] = connection
        await self.persist()
        logger.info(
            "registry.connection_added",
            connection_id=connection.id,
            provider=connection.provider.value,
        )
        return connection

    async def remove(self, connection_id: str) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return False
        adapter = self._adapters.pop(connection_id, None)
        if adapter is not None:
            await adapter.aclose()
        await self.persist()
        logger.info("registry.connection_removed", connection_id=connection_id)
        return True

    async def set_active(self, connection_id: str, is_active: bool) -> CRMConnection:
        connection = self.get(connection_id)
        connection.is_active = is_active
        await self.persist()
        return connection

    def get(self, connection_id: str) -> CRMConnection:
        try:
            return self._connections[connection_id]
        except KeyError:
            raise KeyError(f"unknown CRM connection: {connection_id}") from None

    def connections(self) -> list[CRMConnection]:
        return list(self._connections.values())

    def active(self) -> list[CRMConnection]:
        return [c for c in self._connections.values() if c.is_active]

    def primary(self) -> CRMConnection | None:
        """The first active connection; contacts' ``remote_id`` refers to it."""
        active = self.active()
        return active[0] if active else None

    # ── Adapters ────────────────────────────────────────────────────────

    def adapter_for(self, connection: CRMConnection) -> CRMAdapter:
        adapter = self._adapters.get(connection.id)
        if adapter is None:
            adapter = self._adapter_factory(
                connection,
                on_credentials_refreshed=self._credentials_refreshed,
            )
            self._adapters[connection.id] = adapter
        return adapter

    async def _credentials_refreshed(self, connection: CRMConnection) -> None:
        self._connections[connection.id] = connection
        await self.persist()
        logger.info("registry.credentials_persisted", connection_id=connection.id)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()
