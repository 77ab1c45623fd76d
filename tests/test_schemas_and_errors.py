"""Request validation rules and the error envelope."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from boxoffice.api.error_handling import _error_response
from boxoffice.api.schemas import (
    Envelope,
    ErrorBody,
    LoginRequest,
    PasswordResetConfirm,
    UserCreateRequest,
)
from boxoffice.service import errors


class TestLoginRequest:
    def test_email_normalized(self):
        request = LoginRequest(email="  Ops@Example.COM ", password="whatever1")
        assert request.email == "ops@example.com"

    def test_zero_width_characters_stripped(self):
        request = LoginRequest(email="ops\u200b@example.com", password="whatever1")
        assert request.email == "ops@example.com"

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "@example.com", "a b@example.com"])
    def test_invalid_email(self, email):
        with pytest.raises(ValidationError):
            LoginRequest(email=email, password="whatever1")

    @pytest.mark.parametrize("password", ["short", "x" * 101])
    def test_password_length(self, password):
        with pytest.raises(ValidationError):
            LoginRequest(email="ops@example.com", password=password)


class TestNewPasswordRules:
    @pytest.mark.parametrize("password", ["alllower1", "ALLUPPER1", "NoDigitsHere"])
    def test_complexity_required(self, password):
        with pytest.raises(ValidationError):
            PasswordResetConfirm(token="t", new_password=password)

    def test_valid_password(self):
        assert PasswordResetConfirm(token="t", new_password="Battery2staple").new_password == "Battery2staple"

    def test_user_create_defaults_to_admin(self):
        assert UserCreateRequest(email="new@example.com", password="Battery2staple").role.value == "ADMIN"


class TestEnvelope:
    def test_unknown_error_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="made_up", message="nope")

    def test_every_service_error_code_is_renderable(self):
        for name in errors.__all__:
            cls = getattr(errors, name)
            ErrorBody(code=cls.error_code, message="x")

    def test_request_id_generated(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id

    def test_error_response_shape(self):
        response = _error_response(423, "locked", {"unlock_at": "later"}, code="account_locked")
        body = json.loads(response.body)
        assert response.status_code == 423
        assert body["status"] == "error"
        assert body["error"] == {"code": "account_locked", "message": "locked", "details": {"unlock_at": "later"}}


class TestErrorTaxonomy:
    def test_token_errors_are_401(self):
        for cls in (errors.TokenRevokedError, errors.TokenExpiredError, errors.TokenMalformedError):
            assert cls().status_code == 401

    def test_version_mismatch_is_invalid_credentials(self):
        assert issubclass(errors.TokenVersionMismatchError, errors.InvalidCredentialsError)

    def test_locked_error_carries_unlock_time(self):
        unlock_at = datetime.now(timezone.utc) + timedelta(minutes=5)
        exc = errors.AccountLockedError(unlock_at)
        assert exc.status_code == 423
        assert exc.detail["unlock_at"] == unlock_at.isoformat()

    def test_dependency_unavailable(self):
        exc = errors.DependencyUnavailableError("revocation_store")
        assert exc.status_code == 503
        assert exc.detail == {"dependency": "revocation_store"}
