from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated.

    ``detail["field"]`` names the column whose constraint fired, e.g.
    ``"email"`` or ``"token"``.
    """

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class TokenGenerationExhausted(Exception):
    """Every attempt to mint a unique session token collided."""

    def __init__(self, attempts: int):
        super().__init__(f"could not generate a unique session token after {attempts} attempts")
        self.attempts = attempts


__all__ = ["ConstraintViolation", "TokenGenerationExhausted"]
