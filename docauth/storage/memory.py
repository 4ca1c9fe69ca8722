from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from docauth.logging import get_logger
from docauth.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    is_idle,
    normalize_username,
)
from docauth.storage.errors import ConstraintViolation
from docauth.storage.models import (
    RecoveryKey,
    SessionToken,
    UserCredential,
    _utcnow,
    new_user_id,
)


class MemoryStore:
    """In-memory credential store persisted as a JSON snapshot.

    Every public method runs under one re-entrant lock, which makes each call
    atomic with respect to the others. TOTP secrets are held encrypted and only
    decrypted on the copies handed back to callers.
    """

    def __init__(
        self, fs_root: str = "/tmp/docauth", *, totp_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserCredential] = {}
        self.session_tokens: Dict[str, SessionToken] = {}
        self.recovery_keys: Dict[str, RecoveryKey] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = build_secret_cipher(totp_encryption_key, self.fs_root)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _public_user(self, user: UserCredential) -> UserCredential:
        return replace(user, totp_secret=decrypt_secret(self._cipher, user.totp_secret))

    # users
    def create_user(
        self,
        username: str,
        email: str = "",
        *,
        password_hash: str | None = None,
        password_algo: str | None = None,
    ) -> UserCredential:
        username = normalize_username(username)
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = UserCredential(
                id=new_user_id(),
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[UserCredential]:
        username = normalize_username(username)
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return self._public_user(user)
            return None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            user.password_algo = password_algo
            self._persist_state()

    def set_user_totp_secret(self, user_id: str, secret: Optional[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})
            user.totp_secret = encrypt_secret(self._cipher, secret)
            self._persist_state()

    def set_user_disabled(self, user_id: str, disabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.disabled_at = _utcnow() if disabled else None
            self._persist_state()

    # session tokens
    def create_session_token(
        self,
        user_id: str,
        *,
        long_lived: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            token = SessionToken.new(
                user_id, long_lived=long_lived, ip=ip, user_agent=user_agent
            )
            self.session_tokens[token.id] = token
            self._persist_state()
            return replace(token)

    def get_session_token(self, token_id: str) -> Optional[SessionToken]:
        with self._data_lock:
            token = self.session_tokens.get(token_id)
            return replace(token) if token else None

    def touch_session_token(self, token_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            token = self.session_tokens.get(token_id)
            if not token:
                return False
            token.last_used_at = used_at
            self._persist_state()
            return True

    def delete_session_token(self, token_id: str) -> bool:
        with self._data_lock:
            removed = self.session_tokens.pop(token_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_session_tokens(
        self, user_id: str, except_token_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, token in self.session_tokens.items()
                if token.user_id == user_id and tid != except_token_id
            ]
            for tid in stale:
                self.session_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_idle_session_tokens(self, user_id: str, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                tid
                for tid, token in self.session_tokens.items()
                if token.user_id == user_id and is_idle(token, cutoff)
            ]
            for tid in stale:
                self.session_tokens.pop(tid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_session_tokens(self, user_id: str) -> List[SessionToken]:
        with self._data_lock:
            tokens = [
                replace(token)
                for token in self.session_tokens.values()
                if token.user_id == user_id
            ]
        tokens.sort(key=lambda t: t.created_at, reverse=True)
        return tokens

    # recovery keys
    def create_recovery_key(self, username: str) -> RecoveryKey:
        with self._data_lock:
            key = RecoveryKey.new(normalize_username(username))
            self.recovery_keys[key.id] = key
            self._persist_state()
            return replace(key)

    def get_recovery_key(self, key_id: str) -> Optional[RecoveryKey]:
        with self._data_lock:
            key = self.recovery_keys.get(key_id)
            return replace(key) if key else None

    def delete_recovery_key(self, key_id: str) -> bool:
        with self._data_lock:
            removed = self.recovery_keys.pop(key_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_recovery_keys(self, username: str) -> int:
        username = normalize_username(username)
        with self._data_lock:
            stale = [
                kid for kid, key in self.recovery_keys.items() if key.username == username
            ]
            for kid in stale:
                self.recovery_keys.pop(kid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "session_tokens": [
                self._serialize_session_token(t) for t in self.session_tokens.values()
            ],
            "recovery_keys": [
                self._serialize_recovery_key(k) for k in self.recovery_keys.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.session_tokens = {
            t["id"]: self._deserialize_session_token(t)
            for t in data.get("session_tokens", [])
        }
        self.recovery_keys = {
            k["id"]: self._deserialize_recovery_key(k)
            for k in data.get("recovery_keys", [])
        }
        return True

    def _serialize_user(self, user: UserCredential) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            # already encrypted
            "totp_secret": user.totp_secret,
            "disabled_at": self._serialize_datetime(user.disabled_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> UserCredential:
        return UserCredential(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email") or "",
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            totp_secret=data.get("totp_secret"),
            disabled_at=self._deserialize_datetime(data.get("disabled_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session_token(self, token: SessionToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "created_at": self._serialize_datetime(token.created_at),
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "long_lived": token.long_lived,
            "ip": token.ip,
            "user_agent": token.user_agent,
        }

    def _deserialize_session_token(self, data: dict) -> SessionToken:
        return SessionToken(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            long_lived=bool(data.get("long_lived", False)),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_recovery_key(self, key: RecoveryKey) -> dict:
        return {
            "id": key.id,
            "username": key.username,
            "created_at": self._serialize_datetime(key.created_at),
        }

    def _deserialize_recovery_key(self, data: dict) -> RecoveryKey:
        return RecoveryKey(
            id=data["id"],
            username=data["username"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
