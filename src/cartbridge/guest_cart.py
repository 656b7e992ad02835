"""Client-local cart used before the shopper logs in."""

import json
import logging
from collections.abc import MutableMapping
from dataclasses import replace
from typing import Any

from .models import GuestCartLine

logger = logging.getLogger(__name__)

STORAGE_KEY = "guest_cart_items"


class GuestCartStore:
    """Cart lines kept in client-local storage, keyed by product id.

    The storage is any string mapping holding a JSON list under
    ``guest_cart_items`` (the browser's sessionStorage, or a dict built from
    the lines a request carried). Nothing is persisted server-side.
    """

    def __init__(self, storage: MutableMapping[str, str] | None = None):
        self.storage: MutableMapping[str, str] = storage if storage is not None else {}

    @classmethod
    def from_lines(cls, lines: list[GuestCartLine]) -> "GuestCartStore":
        store = cls()
        store.replace(lines)
        return store

    def _read(self) -> list[GuestCartLine]:
        raw = self.storage.get(STORAGE_KEY)
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.debug("Discarding unreadable guest cart storage")
            return []
        if not isinstance(parsed, list):
            return []
        return [GuestCartLine.from_dict(item) for item in parsed if isinstance(item, dict)]

    def _write(self, lines: list[GuestCartLine]) -> list[GuestCartLine]:
        self.storage[STORAGE_KEY] = json.dumps([line.to_dict() for line in lines])
        return lines

    def items(self) -> list[GuestCartLine]:
        return self._read()

    def __len__(self) -> int:
        return len(self._read())

    def replace(self, lines: list[GuestCartLine]) -> list[GuestCartLine]:
        return self._write(list(lines))

    def add(self, line: GuestCartLine) -> list[GuestCartLine]:
        """Add a line; an existing product's quantity is summed."""
        lines = self._read()
        for existing in lines:
            if existing.product_id == line.product_id:
                existing.quantity += line.quantity
                if line.variant_label:
                    existing.variant_label = line.variant_label
                break
        else:
            lines.append(replace(line))
        return self._write(lines)

    def set_quantity(self, product_id: str, quantity: int) -> list[GuestCartLine]:
        """Set a line's quantity; zero or less removes it."""
        lines = []
        for line in self._read():
            if line.product_id == product_id:
                line.quantity = max(0, quantity)
            if line.quantity > 0:
                lines.append(line)
        return self._write(lines)

    def update_meta(self, product_id: str, **patch: Any) -> list[GuestCartLine]:
        lines = [
            replace(line, **patch) if line.product_id == product_id else line
            for line in self._read()
        ]
        return self._write(lines)

    def remove(self, product_id: str) -> list[GuestCartLine]:
        return self._write([line for line in self._read() if line.product_id != product_id])

    def clear(self) -> None:
        self.storage.pop(STORAGE_KEY, None)
