from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from typing import Callable, Optional

from cajauth.logging import get_logger
from cajauth.storage.errors import ConstraintViolation, TokenGenerationExhausted
from cajauth.storage.models import Session, utcnow

logger = get_logger(__name__)

MAX_TOKEN_ATTEMPTS = 5


def new_session_token() -> str:
    """Return a 64-char hex token mixing random bytes, a clock reading and a UUID."""
    material = (
        secrets.token_bytes(32)
        + time.time_ns().to_bytes(8, "big")
        + uuid.uuid4().bytes
    )
    return hashlib.sha256(material).hexdigest()


class SessionStore:
    """Durable session records keyed by an opaque token.

    Inserts go through the caller's unit of work; the backing table's
    uniqueness constraint on ``token`` decides collisions, and ``create``
    retries with a fresh token a bounded number of times.
    """

    def __init__(
        self,
        store,
        *,
        token_factory: Callable[[], str] = new_session_token,
        max_attempts: int = MAX_TOKEN_ATTEMPTS,
    ) -> None:
        self.store = store
        self._token_factory = token_factory
        self.max_attempts = max_attempts

    def create(
        self,
        tx,
        user_id: str,
        ttl_seconds: int,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        for attempt in range(1, self.max_attempts + 1):
            session = Session.new(
                user_id,
                self._token_factory(),
                ttl_seconds,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            try:
                with tx.savepoint():
                    return tx.insert_session(session)
            except ConstraintViolation as exc:
                if exc.field != "token":
                    raise
                logger.warning(
                    "session_token_collision",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    user_id=user_id,
                )
        logger.error("session_token_exhausted", attempts=self.max_attempts, user_id=user_id)
        raise TokenGenerationExhausted(self.max_attempts)

    def find_live(self, token: str) -> Optional[Session]:
        if not token:
            return None
        return self.store.find_live_session(token, utcnow())

    def get(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def deactivate(self, token: str) -> bool:
        if not token:
            return False
        return self.store.deactivate_session(token)

    def deactivate_id(self, session_id: str) -> bool:
        return self.store.deactivate_session_by_id(session_id)

    def purge_expired(self, tx, user_id: str) -> int:
        """Delete the user's expired or inactive sessions; returns rows removed."""
        return tx.purge_sessions(user_id, utcnow())
