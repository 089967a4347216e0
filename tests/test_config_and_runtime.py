"""Settings loading, audit logging and runtime wiring."""

import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from gatekeep.config import Settings, get_settings, reset_settings_cache
from gatekeep.logging import _redact_pii, log_security_event, set_correlation_id
from gatekeep.service.revocation import FallbackRevocationStore
from gatekeep.service.runtime import get_runtime, mask_url_password, reset_runtime_for_tests
from gatekeep.service.session import LoginStatus


class TestSettings:
    def test_environment_overrides_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("MAX_LOGIN_ATTEMPTS=7\nTOTP_WINDOW=1\n")
        monkeypatch.setenv("TOTP_WINDOW", "3")
        settings = Settings.from_env()
        assert settings.max_login_attempts == 7
        assert settings.totp_window == 3

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        assert get_settings().access_token_ttl_minutes == first.access_token_ttl_minutes
        reset_settings_cache()
        assert get_settings().access_token_ttl_minutes == 5
        reset_settings_cache()

    @pytest.mark.parametrize(
        "field,value",
        [("max_login_attempts", 0), ("mfa_lockout_minutes", -1), ("totp_window", -1)],
    )
    def test_invalid_limits_are_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, **{field: value})

    def test_missing_jwt_secret_is_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        first = Settings()
        second = Settings()
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


class TestLogging:
    def test_security_events_are_tagged_for_audit(self):
        with capture_logs() as logs:
            log_security_event("account_locked", user_id="u1", failed_attempts=5)
        assert logs[0]["event"] == "account_locked"
        assert logs[0]["audit"] is True
        assert logs[0]["log_level"] == "warning"
        assert logs[0]["user_id"] == "u1"

    def test_lockout_emits_account_locked_once(self, lockout, make_user):
        user = make_user()
        with capture_logs() as logs:
            for _ in range(6):
                lockout.record_failure(user.id)
        locked = [entry for entry in logs if entry["event"] == "account_locked"]
        assert len(locked) == 1

    def test_credentials_are_redacted(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "password": "hunter2-long", "refresh_token": "abc", "user_id": "u1"},
        )
        assert event["password"] == "hu***ng"
        assert event["refresh_token"] == "***"
        assert event["user_id"] == "u1"

    def test_correlation_id_generated(self):
        assert set_correlation_id()
        assert set_correlation_id("req-1") == "req-1"


class TestRuntime:
    def test_mask_url_password(self):
        assert mask_url_password("redis://:pw@localhost:6379/0") == "redis://:***@localhost:6379/0"
        assert mask_url_password("redis://localhost:6379") == "redis://localhost:6379"
        assert mask_url_password(None) is None

    def test_runtime_is_a_singleton(self):
        runtime = reset_runtime_for_tests()
        assert get_runtime() is runtime
        assert isinstance(runtime.revocation, FallbackRevocationStore)
        assert runtime.orchestrator.two_factor is runtime.two_factor

    async def test_runtime_login_flow(self):
        runtime = get_runtime()
        user = runtime.store.create_user("runtime@x.com", "Runtime")
        runtime.credentials.set_password(user.id, "Secret123")

        outcome = await runtime.orchestrator.login("runtime@x.com", "Secret123")
        assert outcome.status == LoginStatus.AUTHENTICATED
        assert await runtime.orchestrator.logout(outcome.tokens.access_token)
        verified = await runtime.orchestrator.verify_access_token(outcome.tokens.access_token)
        assert not verified
