"""Shared fixtures for sync engine tests.

Provides:
- In-memory key-value storage (no Redis)
- LocalContactStore and OfflineQueue bound to that storage
- A HubSpot CRMConnection owned by "user-1"
- Mock adapter wired into a ConnectionRegistry
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.circles.contacts.store import LocalContactStore
from src.circles.core.storage import InMemoryKeyValueStore
from src.circles.crm.adapter import CRMAdapter
from src.circles.crm.field_mapping import DEFAULT_FIELD_MAPPINGS
from src.circles.crm.registry import ConnectionRegistry
from src.circles.crm.schemas import CRMProvider
from src.circles.sync.queue import OfflineQueue
from tests.factories import make_connection


@pytest.fixture
def storage():
    return InMemoryKeyValueStore()


@pytest.fixture
def store(storage):
    return LocalContactStore(storage)


@pytest.fixture
def queue(storage):
    return OfflineQueue(storage, max_retries=3)


@pytest.fixture
def connection():
    return make_connection()


@pytest.fixture
def mock_adapter(connection):
    """A CRMAdapter mock; push/fetch behavior is set per test."""
    adapter = AsyncMock(spec=CRMAdapter)
    adapter.connection = connection
    adapter.mappings = DEFAULT_FIELD_MAPPINGS[CRMProvider.HUBSPOT]
    adapter.supports_search = True
    adapter.supports_pull = True
    adapter.supports_notes = True
    return adapter


@pytest.fixture
async def registry(storage, connection, mock_adapter):
    """ConnectionRegistry with one active HubSpot connection backed by mock_adapter."""
    registry = ConnectionRegistry(storage, adapter_factory=lambda conn, **kwargs: mock_adapter)
    await registry.add(connection)
    return registry
