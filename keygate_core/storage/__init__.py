# keygate_core/storage/__init__.py

from .models import AssetKeyRecord, Listing, Order, OrderState, PaymentRecord
from .provider import StorageProvider
from .providers.memory_provider import InMemoryStorage
from .providers.sqlite_provider import SQLiteStorage
from keygate_core.errors import ConfigurationError
import os


def load_storage_provider(config: dict | None = None) -> StorageProvider:
    """
    Factory resolver for selecting the runtime storage backend.

        - sqlite (default)
        - memory
    """
    config = config or {}
    provider = config.get("provider") or os.getenv("KEYGATE_STORAGE_PROVIDER", "sqlite")

    if provider == "memory":
        return InMemoryStorage()

    if provider == "sqlite":
        db_path = config.get("sqlite_path") or os.getenv("KEYGATE_DB_PATH", "db/keygate.db")
        return SQLiteStorage(db_path)

    raise ConfigurationError(f"Unknown storage provider: {provider}")


__all__ = [
    "AssetKeyRecord",
    "Listing",
    "Order",
    "OrderState",
    "PaymentRecord",
    "StorageProvider",
    "InMemoryStorage",
    "SQLiteStorage",
    "load_storage_provider",
]
