"""
JSON file storage backend.

Persists every table to a single local JSON file. Useful for development
and single-operator deployments where PostgreSQL is overkill; the whole
file is rewritten atomically after each mutation.
"""

import json
import os
import threading
from typing import Any

from entities import ALL_TABLES
from storage.base import StorageReadError, StorageWriteError
from storage.memory import MemoryStorage


class JSONFileStorage(MemoryStorage):
    """
    JSON file storage backend.

    Serves reads from memory and writes through to disk. Thread-safe
    within one process; not safe for several processes sharing a file.
    """

    def __init__(self, file_path: str = "punto_data.json"):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
        """
        super().__init__()
        self.file_path = file_path
        self._file_lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        """
        Load tables from the JSON file.

        Raises:
            StorageReadError: If reading fails
        """
        try:
            if not os.path.exists(self.file_path):
                return

            with open(self.file_path, 'r', encoding='utf-8') as f:
                raw_data = f.read()

            if not raw_data.strip():
                return

            data = json.loads(raw_data)

        except PermissionError as e:
            raise StorageReadError(f"Permission denied: {self.file_path}") from e
        except json.JSONDecodeError as e:
            raise StorageReadError(f"Invalid JSON format: {e}") from e
        except OSError as e:
            raise StorageReadError(f"Failed to load data: {e}") from e

        tables = data.get("tables", {})
        with self._lock:
            for name in ALL_TABLES:
                self._tables[name] = {row["id"]: row for row in tables.get(name, [])}

    def _after_write(self) -> None:
        """
        Rewrite the JSON file.

        Raises:
            StorageWriteError: If writing fails
        """
        payload = {
            "version": 1,
            "tables": {name: list(rows.values()) for name, rows in self._tables.items()},
        }
        with self._file_lock:
            try:
                data = json.dumps(payload, indent=2, ensure_ascii=False)

                # Write to file atomically (write to temp, then rename)
                temp_path = f"{self.file_path}.tmp"
                with open(temp_path, 'w', encoding='utf-8') as f:
                    f.write(data)

                os.replace(temp_path, self.file_path)

            except PermissionError as e:
                raise StorageWriteError(
                    f"Permission denied: {self.file_path}"
                ) from e
            except (OSError, TypeError, ValueError) as e:
                raise StorageWriteError(f"Failed to save data: {e}") from e

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the file path is writable
        """
        directory = os.path.dirname(self.file_path) or "."
        if not os.path.exists(directory):
            return False
        return os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })

        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass

        return info
