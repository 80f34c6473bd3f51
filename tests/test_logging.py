"""Tests for the structlog processors."""

import contextvars

from sessionguard.logging import (
    _add_correlation_id,
    _redact_secrets,
    correlation_id_var,
    set_correlation_id,
)


def test_token_material_is_masked():
    event = _redact_secrets(
        None,
        "info",
        {"event": "login", "refresh_token": "eyJhbGciOiJIUzI1NiJ9", "jwt_secret": "s3cr3t-value"},
    )

    assert event["refresh_token"] == "ey***J9"
    assert event["jwt_secret"] == "s3***ue"
    assert event["event"] == "login"


def test_ids_and_short_values_untouched():
    event = _redact_secrets(
        None, "info", {"session_id": "abc-123-def", "expected_type": "refresh", "token": "ab"}
    )

    assert event == {"session_id": "abc-123-def", "expected_type": "refresh", "token": "ab"}


def test_correlation_id_attached_within_context():
    def run():
        cid = set_correlation_id()
        return cid, _add_correlation_id(None, "info", {"event": "x"})

    cid, event = contextvars.copy_context().run(run)

    assert event["correlation_id"] == cid
    assert correlation_id_var.get() != cid


def test_explicit_correlation_id_kept():
    ctx = contextvars.copy_context()

    assert ctx.run(set_correlation_id, "req-1") == "req-1"
    assert ctx[correlation_id_var] == "req-1"


def test_no_correlation_id_outside_context():
    event = contextvars.Context().run(_add_correlation_id, None, "info", {"event": "x"})

    assert "correlation_id" not in event
