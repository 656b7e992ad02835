"""Locked, atomically written JSON file used by the local stores."""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator


class JsonFileStore:
    """One JSON document on disk guarded by an exclusive lock file."""

    filename = "store.json"

    def __init__(self, data_dir: Path):
        """
        Initialize the store.

        Args:
            data_dir: Directory holding the JSON file and its lock.
        """
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / self.filename
        self._stem = Path(self.filename).stem

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": 1}

    def _ensure_dir(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        """Acquire an exclusive lock for read-modify-write operations."""
        self._ensure_dir()
        lock_path = self.data_dir / f".{self._stem}.lock"
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_data(self) -> dict[str, Any]:
        if not self.path.exists():
            return self._empty()
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _save_data(self, data: dict[str, Any]) -> None:
        """Write to a temp file in the same directory, then swap it in."""
        self._ensure_dir()
        fd, temp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{self._stem}_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
