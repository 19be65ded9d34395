from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected a write.

    ``field`` names the offending column (``email`` for duplicate accounts)
    so the API layer can render a specific conflict message.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = detail or {}
        if field and "field" not in self.detail:
            self.detail["field"] = field


__all__ = ["ConstraintViolation"]
