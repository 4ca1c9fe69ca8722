from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from docauth.logging import get_logger
from docauth.storage.common import (
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL DEFAULT '',
        password_hash TEXT,
        password_algo TEXT,
        totp_secret TEXT,
        disabled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id),
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        long_lived BOOLEAN NOT NULL DEFAULT FALSE,
        ip VARCHAR(45),
        user_agent VARCHAR(1000)
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_token_user_idx ON session_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS recovery_key (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS recovery_key_username_idx ON recovery_key (username)",
)


class PostgresStore:
    """Postgres-backed credential, session token and recovery key store."""

    def __init__(
        self, dsn: str, fs_root: str, *, totp_encryption_key: str | None = None
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._cipher = build_secret_cipher(totp_encryption_key, self.fs_root)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _user_from_row(self, row: dict) -> UserCredential:
        return UserCredential(
            id=str(row["id"]),
            username=row["username"],
            email=row.get("email") or "",
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            totp_secret=decrypt_secret(self._cipher, row.get("totp_secret")),
            disabled_at=row.get("disabled_at"),
            created_at=row.get("created_at") or _utcnow(),
        )

    @staticmethod
    def _token_from_row(row: dict) -> SessionToken:
        return SessionToken(
            id=row["id"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
            long_lived=bool(row.get("long_lived", False)),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
        )

    # users
    def create_user(
        self,
        username: str,
        email: str = "",
        *,
        password_hash: str | None = None,
        password_algo: str | None = None,
    ) -> UserCredential:
        user = UserCredential(
            id=new_user_id(),
            username=normalize_username(username),
            email=email,
            password_hash=password_hash,
            password_algo=password_algo,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, password_algo, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.password_algo,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return user

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s",
                (normalize_username(username),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def set_user_totp_secret(self, user_id: str, secret: Optional[str]) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET totp_secret = %s WHERE id = %s",
                (encrypt_secret(self._cipher, secret), user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found for totp", {"user_id": user_id})

    def set_user_disabled(self, user_id: str, disabled: bool) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE app_user SET disabled_at = %s WHERE id = %s",
                (_utcnow() if disabled else None, user_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation("user not found", {"user_id": user_id})

    # session tokens
    def create_session_token(
        self,
        user_id: str,
        *,
        long_lived: bool = False,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionToken:
        token = SessionToken.new(user_id, long_lived=long_lived, ip=ip, user_agent=user_agent)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO session_token (id, user_id, created_at, long_lived, ip, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.created_at,
                        token.long_lived,
                        token.ip,
                        token.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return token

    def get_session_token(self, token_id: str) -> Optional[SessionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def touch_session_token(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE session_token SET last_used_at = %s WHERE id = %s",
                (used_at, token_id),
            )
            return cur.rowcount > 0

    def delete_session_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM session_token WHERE id = %s", (token_id,))
            return cur.rowcount > 0

    def delete_user_session_tokens(
        self, user_id: str, except_token_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_token_id:
                cur = conn.execute(
                    "DELETE FROM session_token WHERE user_id = %s AND id <> %s",
                    (user_id, except_token_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM session_token WHERE user_id = %s", (user_id,)
                )
            return cur.rowcount

    def delete_idle_session_tokens(self, user_id: str, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM session_token
                WHERE user_id = %s
                  AND long_lived = FALSE
                  AND COALESCE(last_used_at, created_at) < %s
                """,
                (user_id, cutoff),
            )
            return cur.rowcount

    def list_user_session_tokens(self, user_id: str) -> List[SessionToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_token WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    # recovery keys
    def create_recovery_key(self, username: str) -> RecoveryKey:
        key = RecoveryKey.new(normalize_username(username))
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO recovery_key (id, username, created_at) VALUES (%s, %s, %s)",
                (key.id, key.username, key.created_at),
            )
        return key

    def get_recovery_key(self, key_id: str) -> Optional[RecoveryKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM recovery_key WHERE id = %s", (key_id,)
            ).fetchone()
        if not row:
            return None
        return RecoveryKey(
            id=row["id"], username=row["username"], created_at=row["created_at"]
        )

    def delete_recovery_key(self, key_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM recovery_key WHERE id = %s", (key_id,))
            return cur.rowcount > 0

    def delete_recovery_keys(self, username: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM recovery_key WHERE username = %s",
                (normalize_username(username),),
            )
            return cur.rowcount
