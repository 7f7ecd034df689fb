"""Tests for ConnectionRegistry and adapter construction."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.circles.core.storage import StorageKeys
from src.circles.crm.hubspot import HubSpotAdapter
from src.circles.crm.pipedrive import PipedriveAdapter
from src.circles.crm.registry import ConnectionRegistry, build_adapter
from src.circles.crm.salesforce import SalesforceAdapter
from src.circles.crm.schemas import CRMProvider
from src.circles.crm.webhook import WebhookAdapter
from tests.factories import make_connection


class TestBuildAdapter:
    @pytest.mark.parametrize(
        ("provider", "adapter_cls"),
        [
            (CRMProvider.HUBSPOT, HubSpotAdapter),
            (CRMProvider.SALESFORCE, SalesforceAdapter),
            (CRMProvider.PIPEDRIVE, PipedriveAdapter),
            (CRMProvider.WEBHOOK, WebhookAdapter),
        ],
    )
    async def test_adapter_class_per_provider(self, provider, adapter_cls):
        adapter = build_adapter(make_connection(provider=provider))
        try:
            assert type(adapter) is adapter_cls
        finally:
            await adapter.aclose()


class TestConnectionRegistry:
    async def test_add_persists_and_load_restores(self, storage):
        registry = ConnectionRegistry(storage)
        await registry.add(make_connection())

        assert await storage.get(StorageKeys.CRM_CONNECTIONS) is not None

        restored = ConnectionRegistry(storage)
        await restored.load()
        assert [c.id for c in restored.connections()] == ["conn-hubspot"]
        assert restored.get("conn-hubspot").credentials["access_token"] == "token-1"

    async def test_duplicate_connection_rejected(self, storage):
        registry = ConnectionRegistry(storage)
        await registry.add(make_connection())

        with pytest.raises(ValueError):
            await registry.add(make_connection())

    async def test_unknown_connection_raises(self, storage):
        with pytest.raises(KeyError):
            ConnectionRegistry(storage).get("missing")

    async def test_primary_is_first_active(self, storage):
        """remote_id on contacts refers to the first active connection."""
        registry = ConnectionRegistry(storage)
        await registry.add(make_connection(id="a"))
        await registry.add(make_connection(id="b", provider=CRMProvider.WEBHOOK, name="Hook"))

        assert registry.primary().id == "a"

        await registry.set_active("a", False)

        assert registry.primary().id == "b"
        assert [c.id for c in registry.active()] == ["b"]

    async def test_adapter_is_cached_per_connection(self, storage):
        built = []

        def factory(connection, **kwargs):
            adapter = AsyncMock()
            built.append((connection.id, kwargs))
            return adapter

        registry = ConnectionRegistry(storage, adapter_factory=factory)
        connection = await registry.add(make_connection())

        first = registry.adapter_for(connection)
        second = registry.adapter_for(connection)

        assert first is second
        assert len(built) == 1
        assert "on_credentials_refreshed" in built[0][1]

    async def test_refreshed_credentials_are_persisted(self, storage):
        """The adapter's refresh callback writes new tokens back to storage."""
        captured = {}

        def factory(connection, on_credentials_refreshed=None, **kwargs):
            captured["callback"] = on_credentials_refreshed
            return AsyncMock()

        registry = ConnectionRegistry(storage, adapter_factory=factory)
        connection = await registry.add(make_connection())
        registry.adapter_for(connection)

        connection.credentials["access_token"] = "token-2"
        await captured["callback"](connection)

        restored = ConnectionRegistry(storage)
        await restored.load()
        assert restored.get("conn-hubspot").credentials["access_token"] == "token-2"

    async def test_remove_closes_adapter(self, storage):
        adapter = AsyncMock()
        registry = ConnectionRegistry(storage, adapter_factory=lambda conn, **kwargs: adapter)
        connection = await registry.add(make_connection())
        registry.adapter_for(connection)

        assert await registry.remove("conn-hubspot") is True

        adapter.aclose.assert_awaited_once()
        assert registry.connections() == []
        assert await registry.remove("conn-hubspot") is False

    async def test_aclose_closes_all_adapters(self, storage):
        adapter = AsyncMock()
        registry = ConnectionRegistry(storage, adapter_factory=lambda conn, **kwargs: adapter)
        registry.adapter_for(await registry.add(make_connection()))

        await registry.aclose()

        adapter.aclose.assert_awaited_once()
