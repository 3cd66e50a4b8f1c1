"""
Process-wide MongoDB handle. Created once, read-only afterwards.
"""
from __future__ import annotations

import logging

from motor.motor_asyncio import AsyncIOMotorClient

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class AIProxyClient:
    """Holds the async Mongo client and the database name for this process."""

    def __init__(self, settings: Settings):
        self.env = settings.env
        self.db_name = settings.mongo_db_name
        self.mongodb_async = AsyncIOMotorClient(settings.mongo_uri)

    def close(self) -> None:
        self.mongodb_async.close()


_client: AIProxyClient | None = None


def get_client(settings: Settings | None = None) -> AIProxyClient:
    """Return the process client, creating it on first use."""
    global _client
    if _client is None:
        settings = settings or get_settings()
        logger.info(f"Connecting to MongoDB database {settings.mongo_db_name!r} (env={settings.env})")
        _client = AIProxyClient(settings)
    return _client


def close_client() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_async_db(client: AIProxyClient):
    return client.mongodb_async[client.db_name]
