from __future__ import annotations

import bcrypt

BCRYPT_MAX_PASSWORD_BYTES = 72


class InvalidHashError(ValueError):
    """Stored hash string is not a bcrypt hash."""


class PasswordHasher:
    """bcrypt wrapper with a fixed cost factor.

    Stateless apart from the cost, so one instance is shared across threads.
    Both methods are CPU-bound; async callers should run them off the event loop.
    """

    def __init__(self, rounds: int = 10) -> None:
        self.rounds = rounds

    def hash(self, password: str) -> str:
        encoded = password.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
            raise ValueError(f"password exceeds {BCRYPT_MAX_PASSWORD_BYTES} bytes")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, hash_string: str) -> bool:
        encoded = password.encode("utf-8")
        if len(encoded) > BCRYPT_MAX_PASSWORD_BYTES:
            # Such a password could never have been hashed by this class
            return False
        try:
            return bcrypt.checkpw(encoded, hash_string.encode("utf-8"))
        except ValueError as exc:
            raise InvalidHashError("stored password hash is malformed") from exc


__all__ = ["BCRYPT_MAX_PASSWORD_BYTES", "InvalidHashError", "PasswordHasher"]
