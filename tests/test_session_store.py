"""Tests for server-side sessions."""

import json

from fastapi import Response

from cartbridge.models import Credential, _now_ms
from cartbridge.session_store import SESSION_COOKIE, SessionBackup, SessionStore


def credential(token="access-1"):
    now = _now_ms()
    return Credential(access_token=token, refresh_token="refresh-1", issued_at=now, expires_at=now + 3600_000)


def backdate(store, session_id, ms):
    data = store._load_data()
    data["sessions"][session_id]["updated_at"] -= ms
    store._save_data(data)


class TestSessionStore:
    def test_create_and_save_credential(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = store.create()

        assert store.load_credential(sid) is None
        store.save_credential(sid, credential())

        loaded = store.load_credential(sid)
        assert loaded.access_token == "access-1"
        assert loaded.refresh_token == "refresh-1"

    def test_ids_are_unique_and_opaque(self, tmp_path):
        store = SessionStore(tmp_path)
        first, second = store.create(), store.create()
        assert first != second
        assert len(first) >= 32

    def test_file_holds_schema_version(self, tmp_path):
        store = SessionStore(tmp_path)
        store.create()
        data = json.loads((tmp_path / "sessions.json").read_text())
        assert data["schema_version"] == 1
        assert len(data["sessions"]) == 1

    def test_expired_session_is_ignored(self, tmp_path):
        store = SessionStore(tmp_path, max_age_ms=1000)
        sid = store.create()
        store.save_credential(sid, credential())
        backdate(store, sid, 5000)

        assert store.get(sid) is None
        assert store.load_credential(sid) is None

    def test_purge_expired(self, tmp_path):
        store = SessionStore(tmp_path, max_age_ms=1000)
        stale, fresh = store.create(), store.create()
        backdate(store, stale, 5000)

        assert store.purge_expired() == 1
        assert store.get(fresh) is not None
        assert store.purge_expired() == 0

    def test_create_drops_expired_sessions(self, tmp_path):
        store = SessionStore(tmp_path, max_age_ms=1000)
        stale = store.create()
        backdate(store, stale, 5000)

        fresh = store.create()

        assert set(store._load_data()["sessions"]) == {fresh}

    def test_delete(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = store.create()
        assert store.delete(sid)
        assert not store.delete(sid)
        assert store.get(sid) is None


class TestSessionBackup:
    def test_save_creates_session_and_sets_cookie(self, tmp_path):
        store = SessionStore(tmp_path)
        backup = SessionBackup(store)
        backup.save(credential())

        assert backup.session_id
        assert store.load_credential(backup.session_id).access_token == "access-1"

        response = Response()
        backup.apply(response)
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"{SESSION_COOKIE}={backup.session_id}")
        assert "httponly" in cookie.lower()
        assert "access-1" not in cookie

    def test_existing_session_is_reused_without_cookie(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = store.create()
        backup = SessionBackup(store, sid)
        backup.save(credential("access-2"))

        assert backup.session_id == sid
        assert backup.load().access_token == "access-2"
        response = Response()
        backup.apply(response)
        assert "set-cookie" not in response.headers

    def test_unknown_session_id_loads_nothing(self, tmp_path):
        assert SessionBackup(SessionStore(tmp_path), "forged").load() is None

    def test_clear_deletes_session_and_cookie(self, tmp_path):
        store = SessionStore(tmp_path)
        sid = store.create()
        backup = SessionBackup(store, sid)
        backup.clear()

        assert store.get(sid) is None
        assert backup.load() is None
        response = Response()
        backup.apply(response)
        assert "Max-Age=0" in response.headers["set-cookie"]
