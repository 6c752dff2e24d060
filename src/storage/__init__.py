"""
Storage abstraction layer for Punto Settlement.

This package provides a pluggable Entity Store so the engine can be
persisted to different storage systems:

- Memory (default for tests and demos)
- JSON file (single-operator deployments)
- PostgreSQL (production, multiple reviewers across processes)

Usage:
    from storage import get_storage_backend

    store = get_storage_backend()
    store.insert("payments", payment.to_dict())
    store.update_where("payments", payment_id, {"status": "PENDING"}, {"status": "PAID", ...})
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    DuplicateRecordError,
    StorageBackend,
    StorageConnectionError,
    StorageError,
    StorageReadError,
    StorageWriteError,
)
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage

# Lazy import for PostgreSQL so psycopg2 is only loaded when configured
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLStorage

__all__ = [
    "DuplicateRecordError",
    "JSONFileStorage",
    "MemoryStorage",
    "StorageBackend",
    "StorageConnectionError",
    "StorageError",
    "StorageReadError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend(
    backend_type: str | None = None,
    data_file: str | None = None,
    database_url: str | None = None,
) -> StorageBackend:
    """
    Get the configured storage backend.

    Arguments override the environment variables:
        STORAGE_BACKEND: Backend type ("memory", "json", "postgresql")
        DATA_FILE: Path for JSON file storage (default: punto_data.json)
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Configured StorageBackend instance
    """
    backend_type = (backend_type or os.getenv("STORAGE_BACKEND", "memory")).lower()

    if backend_type == "json":
        return JSONFileStorage(data_file or os.getenv("DATA_FILE", "punto_data.json"))

    elif backend_type == "postgresql" or backend_type == "postgres":
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLStorage

        return PostgreSQLStorage(database_url)

    elif backend_type == "memory":
        return MemoryStorage()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
