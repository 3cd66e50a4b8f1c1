from .config import Settings, get_settings
from .setup import setup
from .client import AIProxyClient, get_client, get_async_db, close_client
from .id import is_valid_object_id

__all__ = [
    "Settings",
    "get_settings",
    "setup",
    "AIProxyClient",
    "get_client",
    "get_async_db",
    "close_client",
    "is_valid_object_id",
]
