from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from cajauth.logging import get_logger
from cajauth.storage.errors import ConstraintViolation
from cajauth.storage.models import Profile, Session, User, utcnow


class MemoryTransaction:
    """Unit of work against a :class:`MemoryStore`.

    The store lock is held for the lifetime of the transaction, so memory
    transactions are serialized. Writes are applied in place; the store
    snapshot taken at ``begin`` is restored if the block raises.
    """

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        snapshot = self._store._snapshot()
        try:
            yield
        except BaseException:
            self._store._restore(snapshot)
            raise

    def get_user(self, user_id: str) -> Optional[User]:
        return self._store.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._store._find_user_by_email(email)

    def insert_user(self, user: User) -> User:
        if self._store._find_user_by_email(user.email) is not None:
            raise ConstraintViolation("email already exists", {"field": "email"})
        self._store.users[user.id] = user
        return user

    def insert_profile(self, profile: Profile) -> None:
        if profile.user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        # ON CONFLICT (user_id) DO NOTHING
        self._store.profiles.setdefault(profile.user_id, profile)

    def insert_session(self, session: Session) -> Session:
        if session.user_id not in self._store.users:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        if any(existing.token == session.token for existing in self._store.sessions.values()):
            raise ConstraintViolation("session token already exists", {"field": "token"})
        self._store.sessions[session.id] = session
        return session

    def purge_sessions(self, user_id: str, now: datetime) -> int:
        stale = [
            sid
            for sid, sess in self._store.sessions.items()
            if sess.user_id == user_id and not sess.is_live(now)
        ]
        for sid in stale:
            del self._store.sessions[sid]
        return len(stale)

    def record_sign_in(self, user_id: str, now: datetime) -> Optional[User]:
        user = self._store.users.get(user_id)
        if user is None:
            return None
        user.last_sign_in_at = now
        user.updated_at = now
        return user

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> Optional[User]:
        user = self._store.users.get(user_id)
        if user is None:
            return None
        user.password_hash = password_hash
        user.updated_at = now
        return user

    def deactivate_user_sessions(self, user_id: str) -> int:
        count = 0
        for sess in self._store.sessions.values():
            if sess.user_id == user_id and sess.is_active:
                sess.is_active = False
                count += 1
        return count


class MemoryStore:
    """In-process backing store used for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.profiles: Dict[str, Profile] = {}
        # RLock for all data operations; transactions hold it for their whole
        # block and nested store calls from the same thread re-enter it
        self._data_lock = threading.RLock()

    def _snapshot(self) -> tuple:
        return (
            copy.deepcopy(self.users),
            copy.deepcopy(self.sessions),
            copy.deepcopy(self.profiles),
        )

    def _restore(self, snapshot: tuple) -> None:
        self.users, self.sessions, self.profiles = snapshot

    def _find_user_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.email == email), None)

    @contextmanager
    def transaction(self, timeout_ms: int | None = None) -> Iterator[MemoryTransaction]:
        with self._data_lock:
            snapshot = self._snapshot()
            try:
                yield MemoryTransaction(self)
            except BaseException:
                self._restore(snapshot)
                self.logger.debug("memory_transaction_rolled_back")
                raise

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._find_user_by_email(email)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._data_lock:
            return self.profiles.get(user_id)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_live_session(self, token: str, now: datetime | None = None) -> Optional[Session]:
        now = now or utcnow()
        with self._data_lock:
            return next(
                (s for s in self.sessions.values() if s.token == token and s.is_live(now)),
                None,
            )

    def deactivate_session(self, token: str) -> bool:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.token == token and sess.is_active:
                    sess.is_active = False
                    return True
            return False

    def deactivate_session_by_id(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None or not sess.is_active:
                return False
            sess.is_active = False
            return True

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        return None
