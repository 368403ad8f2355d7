"""Tests for refresh-token persistence in the memory and postgres stores."""

import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import ConnectionPool

from hcen_auth.config import ClientType
from hcen_auth.logging import get_logger
from hcen_auth.storage import postgres as postgres_module
from hcen_auth.storage.common import ConstraintViolation, hash_token
from hcen_auth.storage.memory import MemoryStore
from hcen_auth.storage.models import RefreshToken, utcnow
from hcen_auth.storage.postgres import PostgresStore


def make_token(user_ci: str = "12345678", ttl_seconds: int = 3600, **kwargs) -> RefreshToken:
    return RefreshToken.new(
        hash_token(str(uuid.uuid4())), user_ci, ClientType.MOBILE, ttl_seconds, **kwargs
    )


@pytest.fixture
def store():
    return MemoryStore()


class TestMemoryRefreshTokens:
    def test_save_and_find(self, store):
        token = make_token(device_id="device-1")
        store.save(token)

        found = store.find_by_token_hash(token.token_hash)

        assert found is not None
        assert found.user_ci == "12345678"
        assert found.device_id == "device-1"
        assert found is not token

    def test_duplicate_hash_rejected(self, store):
        token = make_token()
        store.save(token)
        with pytest.raises(ConstraintViolation):
            store.save(token)

    def test_invalid_records_rejected(self, store):
        now = utcnow()
        with pytest.raises(ValueError):
            store.save(
                RefreshToken(
                    token_hash="h",
                    user_ci="1",
                    client_type=ClientType.MOBILE,
                    issued_at=now,
                    expires_at=now,
                )
            )
        with pytest.raises(ValueError):
            store.save(make_token(user_ci=" "))

    def test_blank_hash_lookup_returns_none(self, store):
        assert store.find_by_token_hash("") is None

    def test_find_valid_excludes_revoked_and_expired(self, store):
        live = make_token()
        revoked = make_token()
        expired = make_token(issued_at=utcnow() - timedelta(hours=2))
        for token in (live, revoked, expired):
            store.save(token)
        store.revoke_token(revoked.token_hash)

        valid = store.find_valid_by_user_ci("12345678")

        assert [t.token_hash for t in valid] == [live.token_hash]
        assert store.count_active_tokens_for_user("12345678") == 1
        assert len(store.find_by_user_ci("12345678")) == 3

    def test_revoke_token_is_compare_and_set(self, store):
        token = make_token()
        store.save(token)

        assert store.revoke_token(token.token_hash) is True
        assert store.revoke_token(token.token_hash) is False
        stored = store.find_by_token_hash(token.token_hash)
        assert stored.is_revoked
        assert stored.revoked_at is not None

    def test_revoke_unknown_hash(self, store):
        assert store.revoke_token("unknown") is False
        with pytest.raises(ValueError):
            store.revoke_token(" ")

    def test_concurrent_revocation_has_one_winner(self, store):
        token = make_token()
        store.save(token)
        barrier = threading.Barrier(8)
        results = []

        def revoke():
            barrier.wait()
            results.append(store.revoke_token(token.token_hash))

        threads = [threading.Thread(target=revoke) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7

    def test_revoke_all_for_user(self, store):
        for _ in range(3):
            store.save(make_token())
        store.save(make_token(user_ci="99999999"))

        assert store.revoke_all_for_user("12345678") == 3
        assert store.revoke_all_for_user("12345678") == 0
        assert store.count_active_tokens_for_user("99999999") == 1
        with pytest.raises(ValueError):
            store.revoke_all_for_user("")

    def test_delete_expired_only_touches_expired(self, store):
        live = make_token()
        expired = make_token(issued_at=utcnow() - timedelta(hours=2))
        store.save(live)
        store.save(expired)

        assert store.delete_expired() == 1
        assert store.delete_expired() == 0
        assert store.find_by_token_hash(live.token_hash) is not None
        assert store.find_by_token_hash(expired.token_hash) is None

    def test_delete_old_revoked_tokens_respects_cutoff(self, store):
        old = make_token()
        recent = make_token()
        store.save(old)
        store.save(recent)
        store.revoke_token(old.token_hash)
        store.revoke_token(recent.token_hash)
        store.refresh_tokens[old.token_hash].revoked_at = utcnow() - timedelta(days=40)

        assert store.delete_old_revoked_tokens(30) == 1
        assert store.find_by_token_hash(old.token_hash) is None
        assert store.find_by_token_hash(recent.token_hash) is not None
        with pytest.raises(ValueError):
            store.delete_old_revoked_tokens(-1)

    def test_state_survives_restart_when_persisted(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path))
        token = make_token(device_id="device-9")
        first.save(token)
        first.revoke_token(token.token_hash)

        second = MemoryStore(fs_root=str(tmp_path))
        restored = second.find_by_token_hash(token.token_hash)

        assert restored is not None
        assert restored.is_revoked
        assert restored.device_id == "device-9"
        assert restored.expires_at.tzinfo is not None


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, cursor=None, error=None):
        self.cursor = cursor or FakeCursor()
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.cursor


class FakePool:
    def __init__(self, connection):
        self.conn = connection

    @contextmanager
    def connection(self):
        yield self.conn


def make_postgres_store(connection: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.pool = FakePool(connection)
    store.logger = get_logger("hcen_auth.storage.postgres")
    return store


class TestPostgresRefreshTokens:
    def test_revoke_token_uses_conditional_update(self):
        conn = FakeConnection(FakeCursor(rowcount=1))
        store = make_postgres_store(conn)

        assert store.revoke_token("hash-1") is True
        sql, params = conn.statements[-1]
        assert "WHERE token_hash = %s AND is_revoked = FALSE" in sql
        assert params[1] == "hash-1"

    def test_revoke_token_loses_race(self):
        store = make_postgres_store(FakeConnection(FakeCursor(rowcount=0)))
        assert store.revoke_token("hash-1") is False

    def test_unique_violation_becomes_constraint_violation(self):
        store = make_postgres_store(
            FakeConnection(error=errors.UniqueViolation("duplicate key"))
        )
        with pytest.raises(ConstraintViolation):
            store.save(make_token())

    def test_row_mapping_normalizes_timestamps(self):
        issued = datetime(2030, 1, 1, 12, 0, 0)
        row = {
            "id": "row-1",
            "token_hash": "hash-1",
            "user_ci": "12345678",
            "client_type": "WEB_PATIENT",
            "device_id": None,
            "issued_at": issued,
            "expires_at": issued + timedelta(days=30),
            "revoked_at": None,
            "is_revoked": False,
        }
        store = make_postgres_store(FakeConnection(FakeCursor(rows=[row])))

        token = store.find_by_token_hash("hash-1")

        assert token.client_type is ClientType.WEB_PATIENT
        assert token.issued_at.tzinfo == timezone.utc
        assert not token.is_revoked

    def test_count_active_tokens(self):
        conn = FakeConnection(FakeCursor(rows=[{"active": 4}]))
        store = make_postgres_store(conn)

        assert store.count_active_tokens_for_user("12345678") == 4
        sql, _ = conn.statements[-1]
        assert "is_revoked = FALSE AND expires_at > %s" in sql

    def test_delete_old_revoked_rejects_negative_days(self):
        store = make_postgres_store(FakeConnection())
        with pytest.raises(ValueError):
            store.delete_old_revoked_tokens(-5)

    def test_pool_checks_connections_on_checkout(self, monkeypatch):
        captured = {}

        class RecordingPool:
            check_connection = ConnectionPool.check_connection

            def __init__(self, conninfo, **kwargs):
                captured["conninfo"] = conninfo
                captured.update(kwargs)

        monkeypatch.setattr(postgres_module, "ConnectionPool", RecordingPool)
        monkeypatch.setattr(PostgresStore, "_ensure_schema", lambda self: None)
        monkeypatch.setattr(PostgresStore, "_verify_required_schema", lambda self: None)

        PostgresStore("postgresql://hcen@db/hcen", min_size=1, max_size=3)

        assert captured["conninfo"] == "postgresql://hcen@db/hcen"
        assert captured["check"] is ConnectionPool.check_connection
        assert (captured["min_size"], captured["max_size"]) == (1, 3)
