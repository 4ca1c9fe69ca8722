import pytest
from argon2 import PasswordHasher, Type

from docauth.service.credentials import PASSWORD_ALGO, CredentialVerifier
from docauth.service.errors import InvalidCredentials


class TestVerify:
    def test_returns_user_on_match(self, credentials, make_user):
        user = make_user("alice", "correct-horse")
        verified = credentials.verify("alice", "correct-horse")
        assert verified.id == user.id

    def test_wrong_password_is_rejected(self, credentials, make_user):
        make_user("alice", "correct-horse")
        with pytest.raises(InvalidCredentials):
            credentials.verify("alice", "wrong-horse")

    def test_unknown_user_is_rejected_the_same_way(self, credentials):
        with pytest.raises(InvalidCredentials) as exc:
            credentials.verify("nobody", "whatever")
        assert exc.value.message == "access denied"
        assert exc.value.status_code == 401

    def test_username_is_stripped_by_store(self, credentials, make_user):
        make_user("alice", "correct-horse")
        assert credentials.verify("  alice ", "correct-horse").username == "alice"


class TestCheckPassword:
    def test_user_without_hash_never_matches(self, store, credentials):
        user = store.create_user("guest")
        assert credentials.check_password(user, "") is False
        assert credentials.check_password(user, "anything") is False

    def test_foreign_algorithm_never_matches(self, store, credentials):
        user = store.create_user("legacy", password_hash="$2a$10$abc", password_algo="bcrypt")
        assert credentials.check_password(user, "abc") is False

    def test_corrupt_hash_is_a_mismatch(self, store, credentials):
        user = store.create_user("broken", password_hash="not-a-hash", password_algo=PASSWORD_ALGO)
        assert credentials.check_password(user, "abc") is False


class TestUpdateCredential:
    def test_new_password_replaces_old(self, store, credentials, make_user):
        user = make_user("alice", "correct-horse")
        credentials.update_credential(user.id, "battery-staple")
        with pytest.raises(InvalidCredentials):
            credentials.verify("alice", "correct-horse")
        assert credentials.verify("alice", "battery-staple").id == user.id

    def test_totp_secret_survives_update(self, store, credentials, make_user):
        user = make_user("alice", "correct-horse")
        store.set_user_totp_secret(user.id, "GEZDGNBVGY3TQOJQ")
        credentials.update_credential(user.id, "battery-staple")
        assert store.get_user(user.id).totp_secret == "GEZDGNBVGY3TQOJQ"

    def test_hashes_are_argon2id(self, store):
        verifier = CredentialVerifier(store, hasher=PasswordHasher(type=Type.ID, time_cost=1))
        password_hash, algo = verifier.hash_password("correct-horse")
        assert algo == "argon2id"
        assert password_hash.startswith("$argon2id$")
