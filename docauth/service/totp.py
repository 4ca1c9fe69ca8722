from __future__ import annotations

import base64
import hashlib
import hmac
import os
import time
from typing import Optional
from urllib.parse import quote, urlencode

from docauth.logging import get_logger

logger = get_logger(__name__)

SECRET_BYTES = 10
DIGITS = 6
INTERVAL = 30
WINDOW = 1


class TOTPVerifier:
    """RFC 6238 time-based one-time passwords.

    HMAC-SHA1, 30 second steps and 6 digits, the parameters every
    authenticator app assumes when it scans a provisioning URI. A code is
    accepted for the current step and one step either side.
    """

    def __init__(
        self,
        *,
        issuer: str = "Docauth",
        interval: int = INTERVAL,
        digits: int = DIGITS,
        window: int = WINDOW,
        clock=time.time,
    ) -> None:
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.window = window
        self._clock = clock

    @staticmethod
    def create_secret() -> str:
        """Return a new 80-bit secret, base32 without padding."""
        return base64.b32encode(os.urandom(SECRET_BYTES)).decode("utf-8").rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{params}"

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (ValueError, TypeError):
            return None

    def current_step(self, timestamp: Optional[float] = None) -> int:
        now = self._clock() if timestamp is None else timestamp
        return int(now // self.interval)

    def _code_for_step(self, key: bytes, step: int) -> str:
        counter = step.to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def generate_code(self, secret: str, timestamp: Optional[float] = None) -> str:
        key = self._decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return ""
        return self._code_for_step(key, self.current_step(timestamp))

    def matching_step(
        self, secret: str, code: str, *, timestamp: Optional[float] = None
    ) -> Optional[int]:
        """Return the step whose code equals ``code``, or None."""
        if not code:
            return None
        code = code.strip()
        if len(code) != self.digits or not code.isdigit():
            return None
        key = self._decode_secret(secret)
        if key is None:
            logger.warning("totp_secret_invalid")
            return None
        current = self.current_step(timestamp)
        matched: Optional[int] = None
        for offset in range(-self.window, self.window + 1):
            step = current + offset
            # keep comparing after a hit so timing does not reveal the offset
            if hmac.compare_digest(self._code_for_step(key, step), code) and matched is None:
                matched = step
        return matched

    def authorize(self, secret: str, code: str, *, timestamp: Optional[float] = None) -> bool:
        return self.matching_step(secret, code, timestamp=timestamp) is not None

    @property
    def claim_ttl_seconds(self) -> int:
        """How long an accepted step must stay claimed to cover the whole window."""
        return self.interval * (2 * self.window + 1)
