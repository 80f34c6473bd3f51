"""Tests for settings parsing and signing-secret handling."""

import os
import stat

import pytest
from pydantic import ValidationError

from sessionguard.config import (
    MIN_SECRET_LENGTH,
    LogoutScope,
    Settings,
    SigningAlgorithm,
    get_settings,
    reset_settings_cache,
)

SECRET = "x" * MIN_SECRET_LENGTH


class TestDefaults:
    def test_lifetimes_and_policy_defaults(self, tmp_path):
        settings = Settings(state_dir=str(tmp_path), jwt_secret=SECRET)

        assert settings.access_token_ttl_seconds == 300
        assert settings.refresh_token_ttl_seconds == 604800
        assert settings.clock_skew_leeway_seconds == 0
        assert settings.jwt_algorithm is SigningAlgorithm.HS256
        assert settings.logout_scope is LogoutScope.TOKEN
        assert settings.revoke_family_on_reuse is False

    def test_string_values_coerced(self, tmp_path):
        settings = Settings(
            state_dir=str(tmp_path),
            jwt_secret=SECRET,
            jwt_algorithm="HS512",
            logout_scope="family",
            access_token_ttl_seconds="60",
            revoke_family_on_reuse="true",
        )

        assert settings.jwt_algorithm is SigningAlgorithm.HS512
        assert settings.logout_scope is LogoutScope.FAMILY
        assert settings.access_token_ttl_seconds == 60
        assert settings.revoke_family_on_reuse is True


class TestValidation:
    def test_short_secret_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(state_dir=str(tmp_path), jwt_secret="too-short")

    def test_negative_leeway_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(state_dir=str(tmp_path), jwt_secret=SECRET, clock_skew_leeway_seconds=-1)

    def test_zero_ttl_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(state_dir=str(tmp_path), jwt_secret=SECRET, access_token_ttl_seconds=0)

    @pytest.mark.parametrize("alg", ["none", "RS256", "hs256"])
    def test_unknown_algorithm_rejected(self, tmp_path, alg):
        with pytest.raises(ValidationError):
            Settings(state_dir=str(tmp_path), jwt_secret=SECRET, jwt_algorithm=alg)

    def test_unknown_logout_scope_rejected(self, tmp_path):
        with pytest.raises(ValidationError):
            Settings(state_dir=str(tmp_path), jwt_secret=SECRET, logout_scope="everything")


class TestGeneratedSecret:
    def test_secret_generated_and_persisted(self, tmp_path):
        settings = Settings(state_dir=str(tmp_path), jwt_secret=None)

        secret_path = tmp_path / ".jwt_secret"
        assert len(settings.jwt_secret) >= MIN_SECRET_LENGTH
        assert secret_path.read_text() == settings.jwt_secret
        assert stat.S_IMODE(os.stat(secret_path).st_mode) == 0o600

    def test_persisted_secret_reused(self, tmp_path):
        first = Settings(state_dir=str(tmp_path))
        second = Settings(state_dir=str(tmp_path))

        assert first.jwt_secret == second.jwt_secret

    def test_short_persisted_secret_replaced(self, tmp_path):
        (tmp_path / ".jwt_secret").write_text("short")

        settings = Settings(state_dir=str(tmp_path))

        assert settings.jwt_secret != "short"
        assert (tmp_path / ".jwt_secret").read_text() == settings.jwt_secret


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STATE_DIR", str(tmp_path))
        monkeypatch.setenv("JWT_SECRET", SECRET)
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "120")
        monkeypatch.setenv("LOGOUT_SCOPE", "family")
        monkeypatch.setenv("CLOCK_SKEW_LEEWAY_SECONDS", "15")

        settings = Settings.from_env()

        assert settings.access_token_ttl_seconds == 120
        assert settings.logout_scope is LogoutScope.FAMILY
        assert settings.clock_skew_leeway_seconds == 15

    def test_get_settings_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "42")
        reset_settings_cache()

        assert get_settings().access_token_ttl_seconds == 42
        reset_settings_cache()
