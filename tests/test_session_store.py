"""Unit tests for the in-memory session store.

Tests for:
- Session creation and lookup
- Single-use rotation and its failure modes
- Idempotent revocation and family revocation
- Tombstone pruning
- Thread safety of concurrent rotate/revoke
"""

import dataclasses
import threading
from datetime import timedelta
from typing import List

import pytest

from sessionguard.clock import ManualClock
from sessionguard.service.errors import (
    SessionExpiredError,
    SessionMismatchError,
    SessionNotFoundError,
    SessionRevokedError,
    SessionRotationError,
)
from sessionguard.storage.memory import MemorySessionStore

REFRESH_TTL = timedelta(days=7)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemorySessionStore(REFRESH_TTL, clock=clock)


class TestCreateAndGet:
    """Tests for session creation."""

    def test_create_sets_fields(self, store, clock):
        sess = store.create("user-42")

        assert sess.user_id == "user-42"
        assert sess.created_at == clock.now()
        assert sess.expires_at == clock.now() + REFRESH_TTL
        assert sess.revoked_at is None
        assert sess.family_id == sess.id
        assert store.is_active(sess)
        assert len(store) == 1

    def test_create_with_family(self, store):
        sess = store.create("user-42", family_id="family-1")

        assert sess.family_id == "family-1"

    def test_get_returns_session(self, store):
        sess = store.create("user-42")

        assert store.get(sess.id) == sess

    def test_get_unknown_raises(self, store):
        with pytest.raises(SessionNotFoundError):
            store.get("missing")

    def test_sessions_are_immutable_snapshots(self, store):
        sess = store.create("user-42")

        with pytest.raises(dataclasses.FrozenInstanceError):
            sess.revoked_at = None  # type: ignore[misc]

    def test_inactive_after_expiry(self, store, clock):
        sess = store.create("user-42")
        clock.advance(REFRESH_TTL)

        assert not store.is_active(store.get(sess.id))


class TestRotate:
    """Tests for single-use rotation."""

    def test_rotate_revokes_old_and_creates_new(self, store, clock):
        old = store.create("user-42")
        clock.advance(10)

        new = store.rotate(old.id, "user-42")

        assert new.id != old.id
        assert new.user_id == "user-42"
        assert new.family_id == old.family_id
        assert store.is_active(new)
        old_now = store.get(old.id)
        assert old_now.revoked_at == clock.now()
        assert not store.is_active(old_now)

    def test_second_rotate_fails_revoked(self, store):
        old = store.create("user-42")
        store.rotate(old.id, "user-42")

        with pytest.raises(SessionRevokedError) as exc_info:
            store.rotate(old.id, "user-42")

        assert exc_info.value.detail["family_id"] == old.family_id

    def test_rotate_unknown_fails(self, store):
        with pytest.raises(SessionNotFoundError):
            store.rotate("missing", "user-42")

    def test_rotate_expired_fails(self, store, clock):
        old = store.create("user-42")
        clock.advance(REFRESH_TTL + timedelta(seconds=1))

        with pytest.raises(SessionExpiredError):
            store.rotate(old.id, "user-42")

    def test_rotate_mismatch_leaves_session_active(self, store):
        old = store.create("user-42")

        with pytest.raises(SessionMismatchError):
            store.rotate(old.id, "mallory")

        assert store.is_active(store.get(old.id))
        assert len(store) == 1

    def test_failed_creation_keeps_old_revoked(self, clock):
        ids = iter(["s1", "s1"])
        store = MemorySessionStore(REFRESH_TTL, clock=clock, id_factory=lambda: next(ids))
        store.create("user-42")

        with pytest.raises(SessionRotationError):
            store.rotate("s1", "user-42")

        assert store.get("s1").revoked_at is not None
        assert len(store) == 1
        with pytest.raises(SessionRevokedError):
            store.rotate("s1", "user-42")


class TestRevoke:
    """Tests for revocation."""

    def test_revoke_is_idempotent(self, store, clock):
        sess = store.create("user-42")
        store.revoke(sess.id)
        first = store.get(sess.id).revoked_at
        clock.advance(60)

        store.revoke(sess.id)

        assert store.get(sess.id).revoked_at == first

    def test_revoke_unknown_is_noop(self, store):
        store.revoke("missing")

        assert len(store) == 0

    def test_revoked_session_is_kept_as_tombstone(self, store):
        sess = store.create("user-42")
        store.revoke(sess.id)

        assert store.get(sess.id).revoked
        with pytest.raises(SessionRevokedError):
            store.rotate(sess.id, "user-42")

    def test_revoke_family(self, store):
        first = store.create("user-42")
        second = store.rotate(first.id, "user-42")
        third = store.rotate(second.id, "user-42")
        unrelated = store.create("user-42")

        revoked = store.revoke_family(first.family_id)

        assert revoked == 1
        assert not store.is_active(store.get(third.id))
        assert store.is_active(store.get(unrelated.id))

    def test_family_access_records(self, store, clock):
        sess = store.create("user-42")
        store.record_access_token(sess.family_id, "a1", clock.now() + timedelta(minutes=5))
        store.record_access_token(sess.family_id, "a2", clock.now() + timedelta(minutes=5))

        jtis = {rec.jti for rec in store.family_access_tokens(sess.family_id)}

        assert jtis == {"a1", "a2"}
        assert store.family_access_tokens("unknown") == []


class TestPrune:
    """Tests for tombstone housekeeping."""

    def test_prune_keeps_sessions_within_grace(self, store, clock):
        sess = store.create("user-42")
        store.revoke(sess.id)
        clock.advance(REFRESH_TTL + timedelta(hours=1))

        assert store.prune(timedelta(days=1)) == 0
        assert store.get(sess.id).revoked

    def test_prune_drops_sessions_past_grace(self, store, clock):
        sess = store.create("user-42")
        store.record_access_token(sess.family_id, "a1", clock.now() + timedelta(minutes=5))
        store.create("user-7")
        clock.advance(REFRESH_TTL + timedelta(days=2))

        assert store.prune(timedelta(days=1)) == 2
        assert len(store) == 0
        assert store.family_access_tokens(sess.family_id) == []


class TestConcurrency:
    """Rotate/revoke races on one session id must serialize."""

    def test_concurrent_rotation_single_winner(self, store):
        old = store.create("user-42")
        workers = 16
        barrier = threading.Barrier(workers)
        winners: List[str] = []
        losers: List[Exception] = []
        errors: List[Exception] = []
        lock = threading.Lock()

        def rotate():
            barrier.wait()
            try:
                new = store.rotate(old.id, "user-42")
            except SessionRevokedError as exc:
                with lock:
                    losers.append(exc)
            except Exception as exc:
                errors.append(exc)
            else:
                with lock:
                    winners.append(new.id)

        threads = [threading.Thread(target=rotate) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(winners) == 1
        assert len(losers) == workers - 1
        active = [s for s in store.sessions.values() if store.is_active(s)]
        assert [s.id for s in active] == winners

    def test_rotate_racing_revoke_never_leaves_old_active(self, store):
        for _ in range(50):
            old = store.create("user-42")
            barrier = threading.Barrier(2)
            results: List[object] = []

            def rotate():
                barrier.wait()
                try:
                    results.append(store.rotate(old.id, "user-42"))
                except SessionRevokedError as exc:
                    results.append(exc)

            def revoke():
                barrier.wait()
                store.revoke(old.id)

            threads = [threading.Thread(target=rotate), threading.Thread(target=revoke)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert store.get(old.id).revoked
            family = [s for s in store.sessions.values() if s.family_id == old.family_id]
            active = [s for s in family if store.is_active(s)]
            if isinstance(results[0], SessionRevokedError):
                assert active == []
            else:
                assert [s.id for s in active] == [results[0].id]
