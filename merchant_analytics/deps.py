"""Dependency providers and settings management."""

import base64
import binascii
import os
from functools import lru_cache
from typing import Optional

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from redis.asyncio import Redis

from . import state


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    ENVIRONMENT: str = "development"

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"
    ARQ_QUEUE_NAME: str = "arq:analytics"

    # Run lifecycle
    LOCK_TTL_SECONDS: int = 12 * 60 * 60  # 12 hours
    TOP_N: int = 10
    UNKNOWN_MERCHANT_NAME: str = "Unknown"

    # Retry policies (exponential backoff: base, 2x base, 4x base, ...)
    USER_RUN_MAX_TRIES: int = 1
    MERCHANT_TASK_MAX_TRIES: int = 3
    MERCHANT_TASK_BACKOFF_SECONDS: int = 30
    FINALIZATION_MAX_TRIES: int = 2
    FINALIZATION_BACKOFF_SECONDS: int = 5

    # Dispatch to Salesforce
    PENDING_DISPATCH_KEY: str = "salesforce-update-batch"
    DISPATCH_LOCK_KEY: str = "salesforce-update-lock"
    DISPATCH_LOCK_TTL_SECONDS: int = 4 * 60  # shorter than the 5-min cycle
    DAILY_RUN_HOUR_UTC: int = 2

    # Salesforce (directory + downstream)
    SALESFORCE_CLIENT_ID: Optional[str] = None
    SALESFORCE_CLIENT_SECRET: Optional[str] = None
    SALESFORCE_AUTH_URL: Optional[str] = None
    SALESFORCE_BASE_URL: Optional[str] = None

    # Processor integrations
    PAYROC_BASE_URL: Optional[str] = None
    PAYROC_AUTH_URL: str = "https://identity.payroc.com/authorize"
    ARGYLE_API_TOKEN: Optional[str] = None
    ARGYLE_BASE_URL: Optional[str] = None
    MERCHANT_LYNX_API_TOKEN: Optional[str] = None
    MERCHANT_LYNX_BASE_URL: Optional[str] = None

    # HTTP
    HTTP_TIMEOUT_SECONDS: float = 30.0

    SENTRY_DSN: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    def payroc_api_key(self, office_code: str) -> Optional[str]:
        """Return the decoded Payroc API key for an office code.

        Keys are provisioned per office as PAYROC_<office>_API_TOKEN_B64, so
        the set of offices is open-ended and can't be declared as fields.
        """
        encoded = os.getenv(f"PAYROC_{office_code}_API_TOKEN_B64")
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_redis(settings: Settings = Depends(get_settings)) -> Redis:
    """Shared Redis client for lock/aggregate/join state."""
    return state.get_redis_client(settings.REDIS_URL)


async def get_task_queue(settings: Settings = Depends(get_settings)):
    """arq-backed task queue used by the trigger endpoint."""
    from .workers.arq_enqueue import ArqTaskQueue, get_arq_pool

    pool = await get_arq_pool()
    return ArqTaskQueue(pool, queue_name=settings.ARQ_QUEUE_NAME)


def get_orchestrator(
    redis: Redis = Depends(get_redis),
    task_queue=Depends(get_task_queue),
    settings: Settings = Depends(get_settings),
):
    """Orchestrator for request handlers (trigger + introspection only)."""
    from .services.flow_orchestrator import FlowOrchestrator

    return FlowOrchestrator(redis=redis, task_queue=task_queue, settings=settings)
