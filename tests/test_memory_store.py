import json

import pytest

from docauth.storage.errors import ConstraintViolation
from docauth.storage.memory import MemoryStore


def _snapshot(store: MemoryStore) -> dict:
    return json.loads((store.fs_root / "state" / "memory_store.json").read_text())


class TestUsers:
    def test_duplicate_username_is_rejected(self, store):
        store.create_user("alice")
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(" alice ")
        assert exc.value.field == "username"

    def test_lookup_by_username_strips_whitespace(self, store):
        user = store.create_user("alice")
        assert store.get_user_by_username(" alice\t").id == user.id
        assert store.get_user_by_username("bob") is None

    def test_updates_on_missing_user_raise(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")
        with pytest.raises(ConstraintViolation):
            store.set_user_totp_secret("missing", "SECRET")
        with pytest.raises(ConstraintViolation):
            store.set_user_disabled("missing", True)

    def test_returned_users_are_copies(self, store):
        user = store.create_user("alice")
        user.username = "mallory"
        assert store.get_user(user.id).username == "alice"

    def test_disable_and_enable(self, store):
        user = store.create_user("alice")
        store.set_user_disabled(user.id, True)
        assert store.get_user(user.id).is_disabled
        store.set_user_disabled(user.id, False)
        assert not store.get_user(user.id).is_disabled


class TestTotpSecretEncryption:
    def test_secret_is_encrypted_at_rest(self, store):
        user = store.create_user("alice")
        store.set_user_totp_secret(user.id, "GEZDGNBVGY3TQOJQ")
        raw = _snapshot(store)["users"][0]["totp_secret"]
        assert raw and raw != "GEZDGNBVGY3TQOJQ"
        assert store.get_user(user.id).totp_secret == "GEZDGNBVGY3TQOJQ"

    def test_clearing_secret(self, store):
        user = store.create_user("alice")
        store.set_user_totp_secret(user.id, "GEZDGNBVGY3TQOJQ")
        store.set_user_totp_secret(user.id, None)
        assert store.get_user(user.id).totp_secret is None
        assert _snapshot(store)["users"][0]["totp_secret"] is None

    def test_secret_under_other_key_keeps_second_factor_on(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path), totp_encryption_key="key-one")
        user = first.create_user("alice")
        first.set_user_totp_secret(user.id, "GEZDGNBVGY3TQOJQ")

        second = MemoryStore(fs_root=str(tmp_path), totp_encryption_key="key-two")
        reloaded = second.get_user(user.id)
        assert reloaded.totp_enabled
        assert reloaded.totp_secret != "GEZDGNBVGY3TQOJQ"


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        first = MemoryStore(fs_root=str(tmp_path), totp_encryption_key="key")
        user = first.create_user("alice", "alice@example.com", password_hash="h", password_algo="argon2id")
        first.set_user_totp_secret(user.id, "GEZDGNBVGY3TQOJQ")
        token = first.create_session_token(user.id, long_lived=True, ip="10.0.0.1")
        key = first.create_recovery_key("alice")

        second = MemoryStore(fs_root=str(tmp_path), totp_encryption_key="key")
        reloaded = second.get_user_by_username("alice")
        assert reloaded.email == "alice@example.com"
        assert reloaded.totp_secret == "GEZDGNBVGY3TQOJQ"
        restored = second.get_session_token(token.id)
        assert restored.long_lived is True
        assert restored.ip == "10.0.0.1"
        assert restored.created_at == token.created_at
        assert second.get_recovery_key(key.id).username == "alice"


class TestSessionTokens:
    def test_token_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_session_token("missing")

    def test_touch_and_delete(self, store):
        from datetime import datetime, timezone

        user = store.create_user("alice")
        token = store.create_session_token(user.id)
        now = datetime.now(timezone.utc)
        assert store.touch_session_token(token.id, now) is True
        assert store.get_session_token(token.id).last_used_at == now
        assert store.delete_session_token(token.id) is True
        assert store.touch_session_token(token.id, now) is False
        assert store.delete_session_token(token.id) is False

    def test_list_is_newest_first(self, store):
        from datetime import timedelta

        user = store.create_user("alice")
        older = store.create_session_token(user.id)
        newer = store.create_session_token(user.id)
        store.session_tokens[older.id].created_at -= timedelta(minutes=5)
        assert [t.id for t in store.list_user_session_tokens(user.id)] == [newer.id, older.id]


class TestRecoveryKeys:
    def test_delete_keys_for_user(self, store):
        store.create_recovery_key("alice")
        store.create_recovery_key("alice")
        bob_key = store.create_recovery_key("bob")
        assert store.delete_recovery_keys("alice") == 2
        assert list(store.recovery_keys) == [bob_key.id]

    def test_delete_single_key(self, store):
        key = store.create_recovery_key("alice")
        assert store.delete_recovery_key(key.id) is True
        assert store.delete_recovery_key(key.id) is False
        assert store.get_recovery_key(key.id) is None
