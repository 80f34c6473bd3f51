from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sessionguard.clock import Clock, SystemClock
from sessionguard.config import LogoutScope
from sessionguard.logging import get_logger
from sessionguard.service.codec import TokenClaims, TokenCodec, TokenType
from sessionguard.service.errors import (
    AuthError,
    BlacklistedTokenError,
    SessionRevokedError,
    SessionRotationError,
    Unauthorized,
    ServerError,
    ValidationError,
)
from sessionguard.storage.protocols import AccessTokenBlacklist, SessionStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class AuthSessionManager:
    """Login, refresh, logout and request authorization over injected stores.

    ``refresh`` and ``authorize_request`` only ever raise ``Unauthorized``;
    the specific reason goes to the log so callers cannot tell a forged token
    from an expired or already-used one.
    """

    def __init__(
        self,
        codec: TokenCodec,
        sessions: SessionStore,
        blacklist: AccessTokenBlacklist,
        *,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        clock: Optional[Clock] = None,
        revoke_family_on_reuse: bool = False,
        logout_scope: LogoutScope = LogoutScope.TOKEN,
        tombstone_grace: timedelta = timedelta(days=1),
        cleanup_interval: timedelta = timedelta(minutes=5),
    ) -> None:
        self.codec = codec
        self.sessions = sessions
        self.blacklist = blacklist
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock: Clock = clock or SystemClock()
        self.revoke_family_on_reuse = revoke_family_on_reuse
        self.logout_scope = LogoutScope(logout_scope)
        self.tombstone_grace = tombstone_grace
        self.cleanup_interval = cleanup_interval
        self.logger = logger
        self._cleanup_lock = threading.Lock()
        self._last_cleanup = self.clock.now()

    def login(self, subject_id: str) -> TokenPair:
        if not isinstance(subject_id, str) or not subject_id:
            raise ValidationError("subject id required")
        session = self.sessions.create(subject_id)
        try:
            pair = self._issue_pair(subject_id, session.id, session.family_id)
        except Exception as exc:
            self._abandon_session(session.id, "login_issue_failed", exc)
            raise ServerError("login failed") from None
        self.logger.info("login_session_created", session_id=session.id, user_id=subject_id)
        return pair

    def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_token, TokenType.REFRESH)
            session = self.sessions.rotate(claims.jti, claims.sub)
        except SessionRevokedError as exc:
            self._log_rejection("refresh_rejected", exc)
            if self.revoke_family_on_reuse:
                self._revoke_family(exc.detail.get("family_id"), cause="refresh_reuse")
            raise Unauthorized() from None
        except SessionRotationError as exc:
            self.logger.error(
                "refresh_rotation_failed_relogin_required",
                reason=exc.reason,
                session_id=exc.detail.get("session_id"),
            )
            raise Unauthorized() from None
        except AuthError as exc:
            self._log_rejection("refresh_rejected", exc)
            raise Unauthorized() from None
        try:
            pair = self._issue_pair(session.user_id, session.id, session.family_id)
        except Exception as exc:
            self._abandon_session(session.id, "refresh_issue_failed", exc)
            raise Unauthorized() from None
        self.logger.info("refresh_rotated", old_session=claims.jti, new_session=session.id)
        return pair

    def logout(self, refresh_token: str, access_token: Optional[str] = None) -> None:
        refresh_claims = self._claims_ignoring_expiry(refresh_token, TokenType.REFRESH)
        family_id: Optional[str] = None
        if refresh_claims is not None:
            try:
                self.sessions.revoke(refresh_claims.jti)
                if self.logout_scope is LogoutScope.FAMILY:
                    family_id = self.sessions.get(refresh_claims.jti).family_id
            except AuthError as exc:
                self._log_rejection("logout_session_lookup_failed", exc)
            except Exception as exc:
                # Logout never fails the caller; the backend error is logged
                self.logger.warning(
                    "logout_revoke_failed", session_id=refresh_claims.jti, error=str(exc)
                )
            else:
                self.logger.info("logout_session_revoked", session_id=refresh_claims.jti)

        if access_token:
            access_claims = self._claims_ignoring_expiry(access_token, TokenType.ACCESS)
            if access_claims is not None:
                self._blacklist(access_claims.jti, access_claims.expires_at)

        if family_id is not None:
            self._blacklist_family(family_id)

    def authorize_request(self, access_token: str) -> str:
        try:
            claims = self.codec.verify(access_token, TokenType.ACCESS)
            if self.blacklist.contains(claims.jti):
                raise BlacklistedTokenError("token blacklisted", detail={"jti": claims.jti})
        except AuthError as exc:
            self._log_rejection("authorize_rejected", exc)
            raise Unauthorized() from None
        return claims.sub

    def maybe_cleanup(self) -> int:
        """Prune session tombstones and expired blacklist entries.

        Runs at most once per ``cleanup_interval``; meant to be called from
        request paths or a periodic task.

        Returns:
            Number of entries removed, 0 when skipped
        """
        now = self.clock.now()
        with self._cleanup_lock:
            if now - self._last_cleanup < self.cleanup_interval:
                return 0
            self._last_cleanup = now
        removed = 0
        try:
            removed += self.sessions.prune(self.tombstone_grace)
            removed += self.blacklist.purge_expired()
        except Exception as exc:
            self.logger.warning("cleanup_failed", error=str(exc))
            return removed
        if removed:
            self.logger.info("cleanup_completed", removed=removed)
        return removed

    def _issue_pair(self, subject_id: str, session_id: str, family_id: str) -> TokenPair:
        access_token, access_claims = self.codec.issue(
            subject_id, TokenType.ACCESS, self.access_ttl
        )
        refresh_token, refresh_claims = self.codec.issue(
            subject_id, TokenType.REFRESH, self.refresh_ttl, jti=session_id
        )
        if self.logout_scope is LogoutScope.FAMILY:
            self.sessions.record_access_token(
                family_id, access_claims.jti, access_claims.expires_at
            )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_claims.expires_at,
            refresh_expires_at=refresh_claims.expires_at,
        )

    def _claims_ignoring_expiry(
        self, token: Optional[str], token_type: TokenType
    ) -> Optional[TokenClaims]:
        if not token:
            return None
        try:
            return self.codec.verify(token, token_type, verify_exp=False)
        except AuthError as exc:
            self._log_rejection("logout_token_unusable", exc, expected_type=token_type.value)
            return None

    def _blacklist(self, jti: str, expires_at: datetime) -> None:
        try:
            self.blacklist.add(jti, expires_at)
        except Exception as exc:
            self.logger.warning("access_token_blacklist_failed", jti=jti, error=str(exc))

    def _blacklist_family(self, family_id: str) -> None:
        try:
            records = self.sessions.family_access_tokens(family_id)
        except Exception as exc:
            self.logger.warning(
                "family_access_lookup_failed", family_id=family_id, error=str(exc)
            )
            return
        for record in records:
            self._blacklist(record.jti, record.expires_at)

    def _revoke_family(self, family_id: Optional[str], *, cause: str) -> None:
        if not family_id:
            return
        try:
            revoked = self.sessions.revoke_family(family_id)
        except Exception as exc:
            self.logger.warning("family_revoke_failed", family_id=family_id, error=str(exc))
            return
        self.logger.warning(
            "session_family_revoked", family_id=family_id, revoked=revoked, cause=cause
        )
        if self.logout_scope is LogoutScope.FAMILY:
            self._blacklist_family(family_id)

    def _abandon_session(self, session_id: str, event: str, exc: Exception) -> None:
        # Tokens for this session were never handed out; it must not stay active
        self.logger.error(event, session_id=session_id, error=str(exc))
        try:
            self.sessions.revoke(session_id)
        except Exception as revoke_exc:
            self.logger.warning(
                "abandoned_session_revoke_failed", session_id=session_id, error=str(revoke_exc)
            )

    def _log_rejection(self, event: str, exc: AuthError, **extra) -> None:
        self.logger.info(event, reason=exc.reason, **{**exc.detail, **extra})
