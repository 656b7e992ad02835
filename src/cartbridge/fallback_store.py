"""Local key-value store for data the upstream platform does not hold.

Holds locally registered accounts and saved payment method references.
Records live in named tables; every record carries an integer-like string
``id`` and the ``user_id`` it belongs to.
"""

from pathlib import Path
from typing import Any, Protocol

from .errors import DuplicateEntryError, NotFoundError
from .json_store import JsonFileStore
from .models import _now_ms

FALLBACK_FILE = "fallback.json"


class FallbackStore(Protocol):
    """The four record operations the local store supports."""

    def fetch_by_user(self, table: str, user_id: str) -> list[dict[str, Any]]:
        ...

    def insert(self, table: str, record: dict[str, Any], unique: tuple[str, ...] = ()) -> dict[str, Any]:
        ...

    def update(self, table: str, record_id: str, user_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete(self, table: str, record_id: str, user_id: str) -> bool:
        ...


class JsonFallbackStore(JsonFileStore):
    """FallbackStore kept in one JSON file under the data directory."""

    filename = FALLBACK_FILE

    def __init__(self, data_dir: Path):
        super().__init__(data_dir)

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": 1, "tables": {}, "sequences": {}}

    def fetch_by_user(self, table: str, user_id: str) -> list[dict[str, Any]]:
        rows = self._load_data().get("tables", {}).get(table, [])
        return [dict(r) for r in rows if r.get("user_id") == str(user_id)]

    def insert(self, table: str, record: dict[str, Any], unique: tuple[str, ...] = ()) -> dict[str, Any]:
        """
        Insert a record, assigning the next id.

        Raises:
            DuplicateEntryError: If a value in a ``unique`` column is taken.
        """
        with self._lock():
            data = self._load_data()
            rows = data.setdefault("tables", {}).setdefault(table, [])
            for column in unique:
                value = record.get(column)
                if value and any(r.get(column) == value for r in rows):
                    raise DuplicateEntryError(f"{column}={value}")

            sequences = data.setdefault("sequences", {})
            sequences[table] = int(sequences.get(table, 0)) + 1
            row = dict(record)
            row["id"] = str(sequences[table])
            row["created_at"] = _now_ms()
            if "user_id" not in row:
                row["user_id"] = row["id"]
            rows.append(row)
            self._save_data(data)
        return dict(row)

    def update(self, table: str, record_id: str, user_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        """
        Update a record owned by user_id.

        Raises:
            NotFoundError: If no such record belongs to the user.
        """
        with self._lock():
            data = self._load_data()
            for row in data.get("tables", {}).get(table, []):
                if row.get("id") == str(record_id) and row.get("user_id") == str(user_id):
                    row.update({k: v for k, v in patch.items() if k not in ("id", "user_id")})
                    self._save_data(data)
                    return dict(row)
        raise NotFoundError(table, str(record_id))

    def delete(self, table: str, record_id: str, user_id: str) -> bool:
        with self._lock():
            data = self._load_data()
            rows = data.get("tables", {}).get(table, [])
            for i, row in enumerate(rows):
                if row.get("id") == str(record_id) and row.get("user_id") == str(user_id):
                    rows.pop(i)
                    self._save_data(data)
                    return True
        return False
