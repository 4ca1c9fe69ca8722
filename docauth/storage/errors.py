from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or reference rule of the credential store was broken.

    ``detail`` names the offending column (``{"field": "username"}``) so the
    API layer can report it without exposing the backend message.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


__all__ = ["ConstraintViolation"]
