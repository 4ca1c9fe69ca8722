"""Helpers shared between the memory and postgres credential stores.

Both backends encrypt TOTP secrets at rest with the same Fernet derivation so
a state snapshot can move between them, and both apply the same idle rule
when pruning short-lived session tokens.
"""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from docauth.logging import get_logger
from docauth.storage.models import SessionToken

logger = get_logger(__name__)

_KEY_FILE = ".totp_key"


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str | None, fs_root: Path) -> Fernet:
    """Return the cipher used for TOTP secrets.

    Key material comes from the argument, then ``TOTP_SECRET_KEY``, then a key
    file under ``fs_root`` which is generated on first use.
    """
    material = key_material or os.getenv("TOTP_SECRET_KEY")
    if not material:
        key_path = fs_root / _KEY_FILE
        try:
            if key_path.exists() and not key_path.is_symlink():
                material = key_path.read_text().strip()
        except OSError as exc:
            logger.warning("totp_key_read_failed", error=str(exc), path=str(key_path))
        if not material:
            generated = secrets.token_urlsafe(64)
            try:
                fs_root.mkdir(parents=True, exist_ok=True)
                key_path.write_text(generated)
                os.chmod(key_path, 0o600)
            except OSError as exc:
                raise RuntimeError("Unable to persist TOTP encryption key") from exc
            material = generated
    try:
        return Fernet(_derive_cipher_key(material))
    except Exception as exc:
        raise RuntimeError("Unable to initialize TOTP cipher") from exc


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, stored: Optional[str]) -> Optional[str]:
    if not stored:
        return None
    try:
        return cipher.decrypt(stored.encode()).decode()
    except InvalidToken:
        # written under another key; the ciphertext is kept so the second
        # factor stays required and no code can match it
        logger.warning("totp_secret_decrypt_failed")
        return stored


def normalize_username(username: str) -> str:
    return username.strip()


def is_idle(token: SessionToken, cutoff: datetime) -> bool:
    """True for a short-lived token whose last activity predates ``cutoff``."""
    if token.long_lived:
        return False
    return token.last_activity_at < cutoff

