from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from docauth.logging import get_logger
from docauth.service.errors import InvalidCredentials
from docauth.storage.models import UserCredential

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_user_by_username(self, username: str) -> Optional[UserCredential]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...


class CredentialVerifier:
    """Username/password checks against argon2id hashes.

    Stateless apart from the hasher. It knows nothing about disabled accounts,
    guest logins or second factors; those are login policy and live in
    ``AuthService``.
    """

    def __init__(self, store: CredentialStore, *, hasher: PasswordHasher | None = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        # verified against when the username is unknown so both paths cost one hash
        self._dummy_hash = self._pwd_hasher.hash("docauth-timing-equalizer")

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def check_password(self, user: UserCredential, password: str) -> bool:
        """Verify ``password`` against the user's stored hash."""
        if not user.password_hash:
            logger.warning("password_record_missing", user_id=user.id)
            self._burn_verification(password)
            return False
        if user.password_algo != PASSWORD_ALGO:
            logger.warning(
                "password_algo_mismatch", user_id=user.id, algo=user.password_algo
            )
            self._burn_verification(password)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.info("password_verification_failed", user_id=user.id)
            return False

    def _burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def verify(self, username: str, password: str) -> UserCredential:
        """Return the credential for ``username`` if ``password`` matches.

        Raises:
            InvalidCredentials: unknown username or wrong password, without
                saying which.
        """
        user = self.store.get_user_by_username(username)
        if user is None:
            self._burn_verification(password)
            logger.info("login_unknown_user")
            raise InvalidCredentials()
        if not self.check_password(user, password):
            raise InvalidCredentials()
        return user

    def update_credential(self, user_id: str, new_password: str) -> None:
        """Replace the stored hash; TOTP state is untouched."""
        password_hash, algo = self.hash_password(new_password)
        self.store.save_password(user_id, password_hash, algo)
        logger.info("credential_updated", user_id=user_id)
