"""
In-memory storage backend.

This backend keeps every table in memory only, useful for:
- Unit testing
- Development
- Single-process demos
"""

import copy
import threading
from typing import Any

from entities import ALL_TABLES, UNIQUE_CONSTRAINTS
from storage.base import (
    DuplicateRecordError,
    StorageBackend,
    StorageWriteError,
    row_matches,
    sort_key,
)


class MemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    All data is lost when the process exits. Thread-safe operations: every
    read-check-write runs under one lock, which is what makes
    ``update_where`` a true compare-and-set.
    """

    def __init__(self):
        """Initialize empty memory storage."""
        self._tables: dict[str, dict[str, dict[str, Any]]] = {t: {} for t in ALL_TABLES}
        # RLock so subclasses can call back into public methods while holding it
        self._lock = threading.RLock()

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        if table not in self._tables:
            raise StorageWriteError(f"Unknown table: {table}")
        return self._tables[table]

    def _check_unique(self, table: str, row: dict[str, Any], ignore_id: str | None = None) -> None:
        rows = self._table(table)
        for column in UNIQUE_CONSTRAINTS.get(table, ()):
            value = row.get(column)
            if value is None:
                continue
            for other_id, other in rows.items():
                if other_id != ignore_id and other.get(column) == value:
                    raise DuplicateRecordError(table, column, value)

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert a row, enforcing id and unique-column constraints."""
        with self._lock:
            rows = self._table(table)
            if row["id"] in rows:
                raise DuplicateRecordError(table, "id", row["id"])
            self._check_unique(table, row)
            rows[row["id"]] = copy.deepcopy(row)
            try:
                self._after_write()
            except StorageWriteError:
                del rows[row["id"]]
                raise
            return copy.deepcopy(row)

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._table(table).get(row_id)
            return copy.deepcopy(row) if row is not None else None

    def find(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order_by: tuple[str, ...] = ("created_at", "id"),
    ) -> list[dict[str, Any]]:
        with self._lock:
            matches = [
                copy.deepcopy(row)
                for row in self._table(table).values()
                if row_matches(row, filters)
            ]
        return sorted(matches, key=sort_key(order_by))

    def update_where(
        self,
        table: str,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Apply changes only if every expected column still matches."""
        with self._lock:
            rows = self._table(table)
            current = rows.get(row_id)
            if current is None or not row_matches(current, expected):
                return None
            updated = {**current, **copy.deepcopy(changes)}
            self._check_unique(table, updated, ignore_id=row_id)
            rows[row_id] = updated
            try:
                self._after_write()
            except StorageWriteError:
                rows[row_id] = current
                raise
            return copy.deepcopy(updated)

    def count(self, table: str, filters: dict[str, Any] | None = None) -> int:
        with self._lock:
            return sum(1 for row in self._table(table).values() if row_matches(row, filters))

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        with self._lock:
            info["row_counts"] = {name: len(rows) for name, rows in self._tables.items()}
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._tables = {t: {} for t in ALL_TABLES}
            self._after_write()

    def _after_write(self) -> None:
        """Hook for persistent subclasses; called with the lock held."""
        pass
