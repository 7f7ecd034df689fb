"""CRM adapter layer: one adapter per provider behind the CRMAdapter interface.

Exports CRMAdapter, the provider adapters, ConnectionRegistry, and the error
taxonomy used by the sync engine to decide retry behavior.
"""

from src.circles.crm.adapter import CRMAdapter
from src.circles.crm.errors import (
    AuthError,
    AuthExpiredError,
    CRMError,
    NetworkError,
    RemoteNotFoundError,
    ValidationError,
)
from src.circles.crm.hubspot import HubSpotAdapter
from src.circles.crm.pipedrive import PipedriveAdapter
from src.circles.crm.registry import ConnectionRegistry
from src.circles.crm.salesforce import SalesforceAdapter
from src.circles.crm.webhook import WebhookAdapter

__all__ = [
    "AuthError",
    "AuthExpiredError",
    "CRMAdapter",
    "CRMError",
    "ConnectionRegistry",
    "HubSpotAdapter",
    "NetworkError",
    "PipedriveAdapter",
    "RemoteNotFoundError",
    "SalesforceAdapter",
    "ValidationError",
    "WebhookAdapter",
]
