from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Protocol

from sessionguard.storage.models import AccessTokenRecord, Session


class SessionStore(Protocol):
    def create(self, user_id: str, *, family_id: str | None = None) -> Session: ...

    def get(self, session_id: str) -> Session: ...

    def is_active(self, session: Session) -> bool: ...

    def rotate(self, old_session_id: str, claimed_user_id: str) -> Session: ...

    def revoke(self, session_id: str) -> None: ...

    def revoke_family(self, family_id: str) -> int: ...

    def record_access_token(
        self, family_id: str, jti: str, expires_at: datetime
    ) -> None: ...

    def family_access_tokens(self, family_id: str) -> List[AccessTokenRecord]: ...

    def prune(self, grace: timedelta) -> int: ...


class AccessTokenBlacklist(Protocol):
    def add(self, jti: str, expires_at: datetime) -> None: ...

    def contains(self, jti: str) -> bool: ...

    def purge_expired(self) -> int: ...
