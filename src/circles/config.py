"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Durable key-value storage
    REDIS_URL: str = "redis://localhost:6379/0"
    STORAGE_KEY_PREFIX: str = "circles"

    # Sync timers and retry policy
    SYNC_INTERVAL_SECONDS: int = 30
    RECONCILE_INTERVAL_SECONDS: int = 30
    SYNC_MAX_RETRIES: int = 3

    # Outbound HTTP to CRM providers
    HTTP_TIMEOUT_SECONDS: float = 30.0
    HTTP_MAX_ATTEMPTS: int = 3  # transient retries for a single call

    # HubSpot OAuth app
    HUBSPOT_CLIENT_ID: str = ""
    HUBSPOT_CLIENT_SECRET: str = ""

    # Salesforce connected app
    SALESFORCE_CLIENT_ID: str = ""
    SALESFORCE_CLIENT_SECRET: str = ""
    SALESFORCE_LOGIN_URL: str = "https://login.salesforce.com"

    # Inbound HubSpot webhooks
    HUBSPOT_WEBHOOK_SECRET: str = ""  # app client secret used for v3 signatures
    WEBHOOK_MAX_AGE_SECONDS: int = 300


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
