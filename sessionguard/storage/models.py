from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional


def new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Session:
    """Refresh session; ``id`` doubles as the jti of its refresh token.

    Instances are snapshots. Stores replace them on revocation instead of
    mutating, so ``revoked_at`` can only ever go from None to a timestamp.
    """

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    family_id: str
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        now: datetime,
        ttl: timedelta,
        *,
        session_id: str | None = None,
        family_id: str | None = None,
    ) -> "Session":
        sid = session_id or new_session_id()
        return cls(
            id=sid,
            user_id=user_id,
            created_at=now,
            expires_at=now + ttl,
            family_id=family_id or sid,
        )

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at

    def revoke(self, when: datetime) -> "Session":
        if self.revoked_at is not None:
            return self
        return replace(self, revoked_at=when)


@dataclass(frozen=True)
class BlacklistEntry:
    jti: str
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class AccessTokenRecord:
    """Access token issued within a login chain, kept for family-scoped logout."""

    jti: str
    expires_at: datetime
