"""
Abstract base class for entity storage backends.

This module defines the interface that all storage backends must implement.
Every mutation is single-row; updates are guarded by an equality check on
the fields being transitioned (compare-and-set).
"""

from abc import ABC, abstractmethod
from typing import Any


class StorageError(Exception):
    """Base exception for storage-related errors."""
    pass


class StorageConnectionError(StorageError):
    """Raised when connection to storage backend fails."""
    pass


class StorageReadError(StorageError):
    """Raised when reading from storage fails."""
    pass


class StorageWriteError(StorageError):
    """Raised when writing to storage fails."""
    pass


class DuplicateRecordError(StorageWriteError):
    """Raised when an insert violates a primary key or unique constraint."""

    def __init__(self, table: str, column: str, value: Any):
        super().__init__(f"Duplicate {table}.{column}: {value}")
        self.table = table
        self.column = column
        self.value = value


class StorageBackend(ABC):
    """
    Abstract base class for entity storage backends.

    Rows are plain dictionaries keyed by column name; every row has an
    ``id`` column.
    """

    @abstractmethod
    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """
        Insert a new row.

        Args:
            table: Table name
            row: Row data including ``id``

        Returns:
            The stored row

        Raises:
            DuplicateRecordError: If ``id`` or a unique column already exists
            StorageWriteError: If writing fails
        """
        pass

    @abstractmethod
    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        """
        Get a single row by id.

        Returns:
            Row data or None if not found
        """
        pass

    @abstractmethod
    def find(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: tuple[str, ...] = ("created_at", "id"),
    ) -> list[dict[str, Any]]:
        """
        Get all rows matching every filter.

        A filter value that is a list/tuple/set matches any of its members.

        Args:
            table: Table name
            filters: Column -> expected value
            order_by: Columns to sort by, ascending

        Returns:
            List of matching rows
        """
        pass

    @abstractmethod
    def update_where(
        self,
        table: str,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Guarded single-row update.

        Equivalent to ``UPDATE table SET changes WHERE id = row_id AND
        <every expected column equals its value>``.

        Returns:
            The updated row, or None if the row is missing or any expected
            value no longer matches (nothing is written in that case)
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """
        Check if the storage backend is available and ready.

        Returns:
            True if storage is accessible, False otherwise
        """
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type, status, and configuration
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        """
        Count rows matching the filters.

        Default implementation loads the matching rows - backends should
        override for efficiency.
        """
        return len(self.find(table, filters))


def row_matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """Check a row against equality / membership filters."""
    if not filters:
        return True
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def sort_key(order_by: tuple[str, ...]):
    """Build a sort key that places None before any value."""
    def key(row: dict[str, Any]):
        parts = []
        for col in order_by:
            value = row.get(col)
            parts.append((False, 0) if value is None else (True, value))
        return tuple(parts)
    return key
