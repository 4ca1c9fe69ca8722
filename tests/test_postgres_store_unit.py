from datetime import datetime, timezone
from pathlib import Path

import pytest
from psycopg import errors

from docauth.storage.common import build_secret_cipher, encrypt_secret
from docauth.storage.errors import ConstraintViolation
from docauth.storage.postgres import PostgresStore


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class DummyConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return self.pool.results.pop(0) if self.pool.results else DummyCursor()


class DummyPool:
    def __init__(self):
        self.executed = []
        self.results = []
        self.error = None

    def connection(self):
        return DummyConnection(self)


@pytest.fixture
def pg_store(tmp_path: Path) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.fs_root = tmp_path
    store._cipher = build_secret_cipher("unit-test-key", tmp_path)
    return store


def test_create_user_maps_unique_violation(pg_store):
    pg_store.pool.error = errors.UniqueViolation("duplicate key value")
    with pytest.raises(ConstraintViolation) as exc:
        pg_store.create_user("alice")
    assert exc.value.field == "username"


def test_create_user_strips_username(pg_store):
    user = pg_store.create_user("  alice ", password_hash="h", password_algo="argon2id")
    assert user.username == "alice"
    _, params = pg_store.pool.executed[0]
    assert params[1] == "alice"


def test_user_row_decrypts_totp_secret(pg_store):
    row = {
        "id": "u1",
        "username": "alice",
        "email": None,
        "password_hash": "h",
        "password_algo": "argon2id",
        "totp_secret": encrypt_secret(pg_store._cipher, "GEZDGNBVGY3TQOJQ"),
        "disabled_at": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    pg_store.pool.results.append(DummyCursor(rows=[row]))
    user = pg_store.get_user_by_username("alice")
    assert user.totp_secret == "GEZDGNBVGY3TQOJQ"
    assert user.email == ""


def test_totp_secret_written_encrypted(pg_store):
    pg_store.pool.results.append(DummyCursor(rowcount=1))
    pg_store.set_user_totp_secret("u1", "GEZDGNBVGY3TQOJQ")
    _, params = pg_store.pool.executed[0]
    assert params[0] != "GEZDGNBVGY3TQOJQ"
    assert pg_store._cipher.decrypt(params[0].encode()).decode() == "GEZDGNBVGY3TQOJQ"


def test_update_of_missing_user_raises(pg_store):
    pg_store.pool.results.append(DummyCursor(rowcount=0))
    with pytest.raises(ConstraintViolation):
        pg_store.save_password("missing", "hash", "argon2id")


def test_session_token_for_missing_user(pg_store):
    pg_store.pool.error = errors.ForeignKeyViolation("violates foreign key")
    with pytest.raises(ConstraintViolation):
        pg_store.create_session_token("missing")


def test_delete_user_session_tokens_keeps_current(pg_store):
    pg_store.pool.results.append(DummyCursor(rowcount=3))
    assert pg_store.delete_user_session_tokens("u1", except_token_id="keep") == 3
    sql, params = pg_store.pool.executed[0]
    assert "id <> %s" in sql
    assert params == ("u1", "keep")


def test_delete_idle_tokens_skips_long_lived(pg_store):
    cutoff = datetime(2024, 1, 1, tzinfo=timezone.utc)
    pg_store.pool.results.append(DummyCursor(rowcount=2))
    assert pg_store.delete_idle_session_tokens("u1", cutoff) == 2
    sql, params = pg_store.pool.executed[0]
    assert "long_lived = FALSE" in sql
    assert "COALESCE(last_used_at, created_at) < %s" in sql
    assert params == ("u1", cutoff)


def test_delete_session_token_reports_rowcount(pg_store):
    pg_store.pool.results.append(DummyCursor(rowcount=0))
    assert pg_store.delete_session_token("gone") is False
