"""Unit tests for settings, error normalisation and session auth."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from tenantguard.auth.context import Principal
from tenantguard.config.settings import Settings, get_settings
from tenantguard.exceptions import (
    ConflictError,
    NotFoundError,
    RepositoryError,
    ServiceError,
    ValidationError,
)
from tenantguard.services.errors import ErrorHandler
from tenantguard.web.auth.session import SessionAuth
from tenantguard.web.auth.users import UserDirectory


@pytest.mark.unit
class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.use_database is False
        assert settings.audit_log_capacity == 1000
        assert settings.impersonation_max_per_hour == 10

    def test_env_override(self, monkeypatch) -> None:
        monkeypatch.setenv("IMPERSONATION_MAX_CONCURRENT", "7")
        assert Settings().impersonation_max_concurrent == 7

    def test_invalid_caps_rejected(self, monkeypatch) -> None:
        monkeypatch.setenv("SECRET_KEY", "x")
        monkeypatch.setenv("IMPERSONATION_MAX_PER_HOUR", "0")
        get_settings.cache_clear()
        try:
            with pytest.raises(ValueError, match="positive"):
                get_settings()
        finally:
            get_settings.cache_clear()

    def test_insecure_secret_warns(self, monkeypatch) -> None:
        monkeypatch.delenv("SECRET_KEY", raising=False)
        get_settings.cache_clear()
        try:
            with pytest.warns(UserWarning, match="SECRET_KEY"):
                get_settings()
        finally:
            get_settings.cache_clear()


@pytest.mark.unit
class TestErrorHandler:
    def test_service_errors_pass_through(self) -> None:
        err = NotFoundError("customers", "c1")
        assert ErrorHandler.handle(err) is err

    def test_integrity_error_is_conflict(self) -> None:
        exc = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
        handled = ErrorHandler.handle(exc)
        assert isinstance(handled, ConflictError)
        assert handled.details["originalError"] == "UNIQUE constraint failed"

    def test_timeout_is_repository_error(self) -> None:
        assert isinstance(ErrorHandler.handle(TimeoutError()), RepositoryError)

    def test_unknown_is_generic(self) -> None:
        handled = ErrorHandler.handle(ZeroDivisionError("division by zero"))
        assert type(handled) is ServiceError
        assert "division" not in handled.message
        assert handled.details["originalError"] == "division by zero"

    def test_validation_error_message_lists_fields(self) -> None:
        err = ValidationError.from_fields({"email": ["bad"], "company_name": ["missing"]})
        assert err.message == "Validation failed for: company_name, email"
        assert err.details == {"fields": {"email": ["bad"], "company_name": ["missing"]}}


@pytest.mark.unit
class TestSessionAuth:
    def test_round_trip(self, tenant1_admin) -> None:
        auth = SessionAuth("secret")
        token = auth.create_session(tenant1_admin)
        assert auth.validate_session(token) == tenant1_admin

    def test_tampered_token(self, tenant1_admin) -> None:
        auth = SessionAuth("secret")
        token = auth.create_session(tenant1_admin)
        raw, _ = token.rsplit(".", 1)
        assert auth.validate_session(f"{raw}.{'0' * 32}") is None
        assert auth.validate_session(None) is None
        assert auth.validate_session("garbage") is None

    def test_expired(self, tenant1_admin) -> None:
        auth = SessionAuth("secret", max_age=-1)
        token = auth.create_session(tenant1_admin)
        assert auth.validate_session(token) is None

    def test_swap_and_restore(self, super_admin, tenant1_admin) -> None:
        auth = SessionAuth("secret")
        token = auth.create_session(super_admin)
        auth.swap_principal(token, tenant1_admin)
        assert auth.validate_session(token) == tenant1_admin
        assert auth.restore_principal(token) == super_admin
        assert auth.validate_session(token) == super_admin

    def test_destroy(self, tenant1_admin) -> None:
        auth = SessionAuth("secret")
        token = auth.create_session(tenant1_admin)
        auth.destroy_session(token)
        assert auth.validate_session(token) is None


@pytest.mark.unit
class TestUserDirectory:
    def test_authenticate(self) -> None:
        users = UserDirectory()
        principal = Principal(id="alice", role="admin", tenant_id="tenant-1")
        users.register(principal, "pw")
        assert users.authenticate("alice", "pw") == principal
        assert users.authenticate("alice", "nope") is None
        assert users.authenticate("bob", "pw") is None
        assert users.get("alice") == principal
