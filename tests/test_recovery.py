from datetime import timedelta

import pytest

from docauth.service.errors import InvalidCredentials, KeyNotFound
from docauth.service.events import PasswordLostEvent
from docauth.service.recovery import PasswordRecoveryManager


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(PasswordLostEvent, received.append)
    return received


class TestRequestRecovery:
    def test_issues_key_and_publishes_event(self, store, recovery, make_user, events):
        make_user("alice", "old-password", email="alice@example.com")
        recovery.request_recovery("alice")
        assert len(events) == 1
        event = events[0]
        assert event.user.username == "alice"
        assert event.user.email == "alice@example.com"
        assert store.get_recovery_key(event.recovery_key.id) is not None

    def test_unknown_user_is_silent(self, store, recovery, events):
        recovery.request_recovery("ghost")
        recovery.request_recovery("")
        assert events == []
        assert store.recovery_keys == {}

    def test_username_is_trimmed(self, recovery, make_user, events):
        make_user("alice")
        recovery.request_recovery("  alice  ")
        assert len(events) == 1

    def test_each_request_issues_a_new_key(self, recovery, make_user, events):
        make_user("alice")
        recovery.request_recovery("alice")
        recovery.request_recovery("alice")
        assert events[0].recovery_key.id != events[1].recovery_key.id


class TestResetPassword:
    def test_reset_sets_password_and_consumes_keys(
        self, store, credentials, recovery, make_user, events
    ):
        make_user("alice", "old-password")
        recovery.request_recovery("alice")
        recovery.request_recovery("alice")
        key = events[0].recovery_key.id

        user = recovery.reset_password(key, "new-password")

        assert user.username == "alice"
        assert credentials.verify("alice", "new-password").id == user.id
        with pytest.raises(InvalidCredentials):
            credentials.verify("alice", "old-password")
        # every outstanding key for the user is gone, not only the one used
        assert store.recovery_keys == {}
        with pytest.raises(KeyNotFound):
            recovery.reset_password(key, "another-password")

    def test_unknown_key(self, recovery):
        with pytest.raises(KeyNotFound) as exc:
            recovery.reset_password("no-such-key", "new-password")
        assert exc.value.error_code == "key_not_found"
        assert exc.value.status_code == 400

    def test_empty_key(self, recovery):
        with pytest.raises(KeyNotFound):
            recovery.reset_password("", "new-password")

    def test_expired_key_is_rejected_and_removed(self, store, recovery, make_user, events):
        make_user("alice")
        recovery.request_recovery("alice")
        key = events[0].recovery_key.id
        store.recovery_keys[key].created_at -= timedelta(hours=24, seconds=1)

        with pytest.raises(KeyNotFound):
            recovery.reset_password(key, "new-password")
        assert key not in store.recovery_keys

    def test_key_for_deleted_user(self, store, recovery, make_user, events):
        user = make_user("alice")
        recovery.request_recovery("alice")
        key = events[0].recovery_key.id
        del store.users[user.id]
        with pytest.raises(KeyNotFound):
            recovery.reset_password(key, "new-password")

    def test_reset_revokes_sessions(self, sessions, recovery, make_user, events):
        user = make_user("alice")
        token = sessions.create(user.id, long_lived=True)
        recovery.request_recovery("alice")
        recovery.reset_password(events[0].recovery_key.id, "new-password")
        assert sessions.validate(token) is None

    def test_ttl_is_configurable(self, store, credentials, bus, make_user, events):
        manager = PasswordRecoveryManager(store, credentials, bus, key_ttl_minutes=5)
        make_user("alice")
        manager.request_recovery("alice")
        key = events[0].recovery_key.id
        store.recovery_keys[key].created_at -= timedelta(minutes=6)
        with pytest.raises(KeyNotFound):
            manager.reset_password(key, "new-password")
