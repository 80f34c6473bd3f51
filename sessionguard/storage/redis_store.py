from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import List, Optional

from redis import Redis

from sessionguard.clock import Clock, SystemClock, from_timestamp
from sessionguard.logging import get_logger
from sessionguard.service.errors import (
    SessionExpiredError,
    SessionMismatchError,
    SessionNotFoundError,
    SessionRevokedError,
    SessionRotationError,
)
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import AccessTokenRecord, Session, new_session_id

logger = get_logger(__name__)


def _ts(value: datetime) -> str:
    return f"{value.timestamp():.6f}"


def _ttl_seconds(until: datetime, now: datetime) -> int:
    return math.ceil((until - now).total_seconds())


def _require_decoded(client: Redis) -> None:
    # Lua status replies and hash fields are compared as str
    if not client.connection_pool.connection_kwargs.get("decode_responses", False):
        raise ValueError("Redis client must be created with decode_responses=True")


class RedisSessionStore:
    """Session store shared across processes.

    Check-and-revoke runs inside Lua scripts, so ``rotate``/``revoke`` on one
    session id serialize on the Redis server. Keys expire ``tombstone_grace``
    after the session itself, which is what prunes tombstones.
    """

    _CREATE_SCRIPT = """
local key = KEYS[1]
local family_key = KEYS[2]
if redis.call('EXISTS', key) == 1 then
  return 0
end
redis.call('HSET', key, 'user_id', ARGV[1], 'created_at', ARGV[2],
  'expires_at', ARGV[3], 'family_id', ARGV[4], 'revoked_at', '')
redis.call('EXPIRE', key, tonumber(ARGV[5]))
redis.call('SADD', family_key, ARGV[6])
redis.call('EXPIRE', family_key, tonumber(ARGV[5]))
return 1
"""

    _ROTATE_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
if redis.call('EXISTS', key) == 0 then
  return {'not_found'}
end
local data = redis.call('HMGET', key, 'user_id', 'expires_at', 'revoked_at', 'family_id')
if data[3] and data[3] ~= '' then
  return {'revoked', data[4]}
end
if now >= tonumber(data[2]) then
  return {'expired', data[4]}
end
if data[1] ~= ARGV[2] then
  return {'mismatch', data[4]}
end
redis.call('HSET', key, 'revoked_at', ARGV[1])
return {'ok', data[4], data[1]}
"""

    _REVOKE_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
  return 0
end
local revoked = redis.call('HGET', key, 'revoked_at')
if revoked and revoked ~= '' then
  return 0
end
redis.call('HSET', key, 'revoked_at', ARGV[1])
return 1
"""

    def __init__(
        self,
        client: Redis,
        refresh_ttl: timedelta,
        *,
        clock: Optional[Clock] = None,
        tombstone_grace: timedelta = timedelta(days=1),
        key_prefix: str = "auth",
    ) -> None:
        _require_decoded(client)
        self.client = client
        self.refresh_ttl = refresh_ttl
        self.clock: Clock = clock or SystemClock()
        self.tombstone_grace = tombstone_grace
        self.key_prefix = key_prefix
        self._create = client.register_script(self._CREATE_SCRIPT)
        self._rotate = client.register_script(self._ROTATE_SCRIPT)
        self._revoke = client.register_script(self._REVOKE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str, refresh_ttl: timedelta, **kwargs) -> "RedisSessionStore":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(client, refresh_ttl, **kwargs)

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    def _family_key(self, family_id: str) -> str:
        return f"{self.key_prefix}:family:{family_id}"

    def _family_access_key(self, family_id: str) -> str:
        return f"{self.key_prefix}:family_access:{family_id}"

    def __len__(self) -> int:
        return sum(1 for _ in self.client.scan_iter(match=self._session_key("*")))

    def create(self, user_id: str, *, family_id: Optional[str] = None) -> Session:
        sess = Session.new(
            user_id,
            self.clock.now(),
            self.refresh_ttl,
            session_id=new_session_id(),
            family_id=family_id,
        )
        key_ttl = _ttl_seconds(sess.expires_at + self.tombstone_grace, sess.created_at)
        created = self._create(
            keys=[self._session_key(sess.id), self._family_key(sess.family_id)],
            args=[
                sess.user_id,
                _ts(sess.created_at),
                _ts(sess.expires_at),
                sess.family_id,
                max(1, key_ttl),
                sess.id,
            ],
        )
        if not int(created):
            raise ConstraintViolation("session id already exists", {"session_id": sess.id})
        return sess

    def get(self, session_id: str) -> Session:
        data = self.client.hgetall(self._session_key(session_id))
        if not data:
            raise SessionNotFoundError("session not found", detail={"session_id": session_id})
        revoked_raw = data.get("revoked_at") or ""
        return Session(
            id=session_id,
            user_id=data["user_id"],
            created_at=from_timestamp(float(data["created_at"])),
            expires_at=from_timestamp(float(data["expires_at"])),
            family_id=data["family_id"],
            revoked_at=from_timestamp(float(revoked_raw)) if revoked_raw else None,
        )

    def is_active(self, session: Session) -> bool:
        return session.is_active(self.clock.now())

    def rotate(self, old_session_id: str, claimed_user_id: str) -> Session:
        result = self._rotate(
            keys=[self._session_key(old_session_id)],
            args=[_ts(self.clock.now()), claimed_user_id],
        )
        status = result[0]
        detail = {"session_id": old_session_id}
        if len(result) > 1:
            detail["family_id"] = result[1]
        if status == "not_found":
            raise SessionNotFoundError("session not found", detail=detail)
        if status == "revoked":
            raise SessionRevokedError("session revoked", detail=detail)
        if status == "expired":
            raise SessionExpiredError("session expired", detail=detail)
        if status == "mismatch":
            raise SessionMismatchError("session owner mismatch", detail=detail)
        try:
            return self.create(result[2], family_id=result[1])
        except Exception as exc:
            logger.error(
                "session_rotation_create_failed",
                session_id=old_session_id,
                error=str(exc),
            )
            raise SessionRotationError(
                "session rotation failed; re-login required", detail=detail
            ) from exc

    def revoke(self, session_id: str) -> None:
        self._revoke(keys=[self._session_key(session_id)], args=[_ts(self.clock.now())])

    def revoke_family(self, family_id: str) -> int:
        now = _ts(self.clock.now())
        revoked = 0
        for sid in self.client.smembers(self._family_key(family_id)):
            revoked += int(self._revoke(keys=[self._session_key(sid)], args=[now]))
        return revoked

    def record_access_token(
        self, family_id: str, jti: str, expires_at: datetime
    ) -> None:
        key = self._family_access_key(family_id)
        # The family outlives any single session by at most one refresh window
        key_ttl = math.ceil((self.refresh_ttl + self.tombstone_grace).total_seconds())
        pipe = self.client.pipeline()
        pipe.hset(key, jti, _ts(expires_at))
        pipe.expire(key, max(1, key_ttl))
        pipe.execute()

    def family_access_tokens(self, family_id: str) -> List[AccessTokenRecord]:
        now = self.clock.now()
        records = []
        for jti, raw in self.client.hgetall(self._family_access_key(family_id)).items():
            expires_at = from_timestamp(float(raw))
            if expires_at > now:
                records.append(AccessTokenRecord(jti=jti, expires_at=expires_at))
        return records

    def prune(self, grace: timedelta) -> int:
        # Key expiry set at creation already drops tombstones after the grace window
        return 0


class RedisAccessTokenBlacklist:
    """Access-token denylist in Redis.

    The stored value is the token's expiry so ``contains`` follows the injected
    clock; the key TTL makes Redis drop the entry on its own as well.
    """

    def __init__(
        self,
        client: Redis,
        *,
        clock: Optional[Clock] = None,
        key_prefix: str = "auth",
    ) -> None:
        _require_decoded(client)
        self.client = client
        self.clock: Clock = clock or SystemClock()
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, redis_url: str, **kwargs) -> "RedisAccessTokenBlacklist":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(client, **kwargs)

    def _key(self, jti: str) -> str:
        return f"{self.key_prefix}:access:denylist:{jti}"

    def __len__(self) -> int:
        return sum(1 for _ in self.client.scan_iter(match=self._key("*")))

    def add(self, jti: str, expires_at: datetime) -> None:
        ttl = _ttl_seconds(expires_at, self.clock.now())
        if ttl <= 0:
            return
        self.client.set(self._key(jti), _ts(expires_at), ex=ttl)

    def contains(self, jti: str) -> bool:
        raw = self.client.get(self._key(jti))
        if raw is None:
            return False
        if from_timestamp(float(raw)) > self.clock.now():
            return True
        self.client.delete(self._key(jti))
        return False

    def purge_expired(self) -> int:
        # Redis expires keys itself
        return 0
