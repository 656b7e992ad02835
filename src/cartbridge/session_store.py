"""Server-side session records holding credentials behind an opaque id."""

import logging
import secrets
from pathlib import Path
from typing import Any

from .json_store import JsonFileStore
from .models import Credential, _now_ms

logger = logging.getLogger(__name__)

SESSIONS_FILE = "sessions.json"
SESSION_COOKIE = "sid"
SESSION_MAX_AGE = 60 * 60 * 24 * 7


class SessionStore(JsonFileStore):
    """Sessions keyed by a random id. Token material never leaves the server."""

    filename = SESSIONS_FILE

    def __init__(self, data_dir: Path, max_age_ms: int = SESSION_MAX_AGE * 1000):
        super().__init__(data_dir)
        self.max_age_ms = max_age_ms

    def _empty(self) -> dict[str, Any]:
        return {"schema_version": 1, "sessions": {}}

    def _stale_ids(self, sessions: dict[str, Any], now: int) -> list[str]:
        return [
            sid for sid, record in sessions.items()
            if now - int(record.get("updated_at") or 0) > self.max_age_ms
        ]

    def create(self) -> str:
        """Create an empty session and return its id, dropping expired ones."""
        session_id = secrets.token_urlsafe(32)
        now = _now_ms()
        with self._lock():
            data = self._load_data()
            sessions = data.setdefault("sessions", {})
            for sid in self._stale_ids(sessions, now):
                del sessions[sid]
            sessions[session_id] = {"credential": {}, "updated_at": now}
            self._save_data(data)
        return session_id

    def get(self, session_id: str) -> dict[str, Any] | None:
        """Return a session record, or None if absent or expired."""
        record = self._load_data().get("sessions", {}).get(session_id)
        if record is None:
            return None
        if _now_ms() - int(record.get("updated_at") or 0) > self.max_age_ms:
            logger.debug("Session %s expired", session_id[:8])
            return None
        return record

    def load_credential(self, session_id: str) -> Credential | None:
        record = self.get(session_id)
        if not record or not record.get("credential"):
            return None
        return Credential.from_dict(record["credential"])

    def save_credential(self, session_id: str, credential: Credential) -> None:
        with self._lock():
            data = self._load_data()
            sessions = data.setdefault("sessions", {})
            record = sessions.setdefault(session_id, {})
            record["credential"] = credential.to_dict()
            record["updated_at"] = _now_ms()
            self._save_data(data)

    def delete(self, session_id: str) -> bool:
        """Remove a session. Returns whether it existed."""
        with self._lock():
            data = self._load_data()
            removed = data.get("sessions", {}).pop(session_id, None)
            if removed is not None:
                self._save_data(data)
        return removed is not None

    def purge_expired(self) -> int:
        """Drop expired sessions and return how many went."""
        now = _now_ms()
        with self._lock():
            data = self._load_data()
            sessions = data.get("sessions", {})
            stale = self._stale_ids(sessions, now)
            for sid in stale:
                del sessions[sid]
            if stale:
                self._save_data(data)
        return len(stale)


class SessionBackup:
    """Credential backup stored in a SessionStore.

    The browser only holds the ``sid`` cookie. A session is created lazily
    on the first save; ``apply`` sets or deletes the cookie accordingly.
    """

    def __init__(self, store: SessionStore, session_id: str | None = None):
        self.store = store
        self.session_id = session_id or None
        self._cookie_change: str | None = None  # "set" or "delete"

    def load(self) -> Credential | None:
        if not self.session_id:
            return None
        return self.store.load_credential(self.session_id)

    def save(self, credential: Credential) -> None:
        if not self.session_id or self.store.get(self.session_id) is None:
            self.session_id = self.store.create()
            self._cookie_change = "set"
        self.store.save_credential(self.session_id, credential)

    def clear(self) -> None:
        if self.session_id:
            self.store.delete(self.session_id)
        self.session_id = None
        self._cookie_change = "delete"

    def apply(self, response: Any) -> None:
        """Copy the sid cookie change onto a Starlette/FastAPI response."""
        if self._cookie_change == "set" and self.session_id:
            response.set_cookie(
                SESSION_COOKIE,
                self.session_id,
                max_age=SESSION_MAX_AGE,
                path="/",
                httponly=True,
                samesite="lax",
            )
        elif self._cookie_change == "delete":
            response.delete_cookie(SESSION_COOKIE, path="/")
        self._cookie_change = None
