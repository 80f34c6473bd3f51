from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sessionguard.clock import Clock, SystemClock
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    SessionExpiredError,
    SessionMismatchError,
    SessionNotFoundError,
    SessionRevokedError,
    SessionRotationError,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.locks import ReadWriteLock
from sessionguard.storage.models import (
    AccessTokenRecord,
    BlacklistEntry,
    Session,
    new_session_id,
)


class MemorySessionStore:
    """In-process session store.

    Every read-modify-write runs under one coarse RLock, which is what makes
    ``rotate`` and ``revoke`` on the same id serialize. The cost is that all
    store calls serialize; striping the lock by session id is the way out if
    that ever shows up in profiles.
    """

    def __init__(
        self,
        refresh_ttl: timedelta,
        *,
        clock: Optional[Clock] = None,
        id_factory: Callable[[], str] = new_session_id,
    ) -> None:
        self.logger = get_logger(__name__)
        self.refresh_ttl = refresh_ttl
        self.clock: Clock = clock or SystemClock()
        self._id_factory = id_factory
        self.sessions: Dict[str, Session] = {}
        self._families: Dict[str, set[str]] = {}
        self._family_access: Dict[str, Dict[str, AccessTokenRecord]] = {}
        # RLock so family revocation can reuse the single-session path
        self._data_lock = threading.RLock()

    def __len__(self) -> int:
        with self._data_lock:
            return len(self.sessions)

    def _insert(self, user_id: str, family_id: Optional[str]) -> Session:
        sess = Session.new(
            user_id,
            self.clock.now(),
            self.refresh_ttl,
            session_id=self._id_factory(),
            family_id=family_id,
        )
        if sess.id in self.sessions:
            raise ConstraintViolation("session id already exists", {"session_id": sess.id})
        self.sessions[sess.id] = sess
        self._families.setdefault(sess.family_id, set()).add(sess.id)
        return sess

    def create(self, user_id: str, *, family_id: Optional[str] = None) -> Session:
        with self._data_lock:
            return self._insert(user_id, family_id)

    def get(self, session_id: str) -> Session:
        with self._data_lock:
            sess = self.sessions.get(session_id)
        if sess is None:
            raise SessionNotFoundError("session not found", detail={"session_id": session_id})
        return sess

    def is_active(self, session: Session) -> bool:
        return session.is_active(self.clock.now())

    def rotate(self, old_session_id: str, claimed_user_id: str) -> Session:
        with self._data_lock:
            old = self.sessions.get(old_session_id)
            if old is None:
                raise SessionNotFoundError(
                    "session not found", detail={"session_id": old_session_id}
                )
            detail = {"session_id": old.id, "family_id": old.family_id}
            now = self.clock.now()
            if old.revoked:
                raise SessionRevokedError("session revoked", detail=detail)
            if now >= old.expires_at:
                raise SessionExpiredError("session expired", detail=detail)
            if old.user_id != claimed_user_id:
                raise SessionMismatchError("session owner mismatch", detail=detail)

            self.sessions[old.id] = old.revoke(now)
            try:
                new = self._insert(old.user_id, old.family_id)
            except Exception as exc:
                # Old session stays revoked: its token was already spent
                self.logger.error(
                    "session_rotation_create_failed",
                    session_id=old.id,
                    error=str(exc),
                )
                raise SessionRotationError(
                    "session rotation failed; re-login required", detail=detail
                ) from exc
            self.logger.debug(
                "session_rotated", old_session=old.id, new_session=new.id
            )
            return new

    def revoke(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess is None:
                self.logger.debug("session_revoke_unknown", session_id=session_id)
                return
            if sess.revoked:
                return
            self.sessions[session_id] = sess.revoke(self.clock.now())

    def revoke_family(self, family_id: str) -> int:
        revoked = 0
        with self._data_lock:
            now = self.clock.now()
            for sid in self._families.get(family_id, ()):
                sess = self.sessions.get(sid)
                if sess is not None and not sess.revoked:
                    self.sessions[sid] = sess.revoke(now)
                    revoked += 1
        return revoked

    def record_access_token(
        self, family_id: str, jti: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            self._family_access.setdefault(family_id, {})[jti] = AccessTokenRecord(
                jti=jti, expires_at=expires_at
            )

    def family_access_tokens(self, family_id: str) -> List[AccessTokenRecord]:
        with self._data_lock:
            return list(self._family_access.get(family_id, {}).values())

    def prune(self, grace: timedelta) -> int:
        """Drop sessions whose expiry plus ``grace`` has passed.

        Returns:
            Number of sessions removed
        """
        removed = 0
        with self._data_lock:
            cutoff = self.clock.now() - grace
            stale = [sid for sid, sess in self.sessions.items() if sess.expires_at <= cutoff]
            for sid in stale:
                sess = self.sessions.pop(sid)
                members = self._families.get(sess.family_id)
                if members is not None:
                    members.discard(sid)
                    if not members:
                        self._families.pop(sess.family_id, None)
                        self._family_access.pop(sess.family_id, None)
                removed += 1
            now = self.clock.now()
            for records in self._family_access.values():
                for jti in [j for j, rec in records.items() if rec.expires_at <= now]:
                    records.pop(jti, None)
        return removed


class MemoryAccessTokenBlacklist:
    """TTL-bounded set of revoked access-token ids.

    Reads take the shared side of a reader/writer lock; ``add`` and evictions
    take the exclusive side.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.logger = get_logger(__name__)
        self.clock: Clock = clock or SystemClock()
        self.entries: Dict[str, BlacklistEntry] = {}
        self._lock = ReadWriteLock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self.entries)

    def add(self, jti: str, expires_at: datetime) -> None:
        if expires_at <= self.clock.now():
            # Token already dead on its own; nothing to remember
            return
        with self._lock.write():
            current = self.entries.get(jti)
            if current is None or current.expires_at < expires_at:
                self.entries[jti] = BlacklistEntry(jti=jti, expires_at=expires_at)

    def contains(self, jti: str) -> bool:
        with self._lock.read():
            entry = self.entries.get(jti)
            if entry is None:
                return False
            if entry.is_live(self.clock.now()):
                return True
        self._evict(jti)
        return False

    def _evict(self, jti: str) -> None:
        with self._lock.write():
            # Re-check under the write lock; a concurrent add may have extended it
            entry = self.entries.get(jti)
            if entry is not None and not entry.is_live(self.clock.now()):
                del self.entries[jti]

    def purge_expired(self) -> int:
        with self._lock.write():
            now = self.clock.now()
            expired = [jti for jti, entry in self.entries.items() if not entry.is_live(now)]
            for jti in expired:
                del self.entries[jti]
        if expired:
            self.logger.debug("blacklist_purged", count=len(expired))
        return len(expired)
