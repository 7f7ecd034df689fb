"""Inbound CRM webhooks: HubSpot signature validation and event processing."""
