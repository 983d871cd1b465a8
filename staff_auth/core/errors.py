from __future__ import annotations

from http import HTTPStatus
from typing import Any


class AuthError(Exception):
    """Base class for security rejections raised by the auth services.

    ``code`` is stable and safe to log. ``public_message`` is what a caller
    may show. Sensitive errors sit on paths an attacker can probe, so their
    public shape never reveals which check failed.
    """

    status_code: int = 401
    code: str = "unauthorized"
    public_message: str = "Authentication failed"
    sensitive: bool = True

    def __init__(self, message: str | None = None, *, details: dict | None = None) -> None:
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details or {}


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    public_message = "Invalid email or password"


class Invalid2FACode(AuthError):
    code = "invalid_2fa_code"
    public_message = "Invalid 2FA code"


class InvalidOrExpiredCode(AuthError):
    code = "invalid_or_expired_code"
    public_message = "Verification code is invalid or expired"


class InvalidOrExpiredGrant(AuthError):
    status_code = 403
    code = "invalid_or_expired_grant"
    public_message = "Reset link is invalid or expired"


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    public_message = "Invalid refresh token"
    sensitive = False


class RefreshTokenExpired(AuthError):
    code = "refresh_token_expired"
    public_message = "Refresh token expired"
    sensitive = False


class InvalidAccessToken(AuthError):
    code = "invalid_access_token"
    public_message = "Invalid or expired access token"
    sensitive = False


class AccountDisabled(AuthError):
    status_code = 403
    code = "account_disabled"
    public_message = "Account is disabled"
    sensitive = False


class BackupCodeExhausted(AuthError):
    code = "backup_codes_exhausted"
    public_message = "Invalid email or backup code"


class BackupCodeNoMatch(AuthError):
    code = "backup_code_no_match"
    public_message = "Invalid email or backup code"


class SecondFactorNotConfigured(AuthError):
    status_code = 400
    code = "second_factor_not_configured"
    public_message = "2FA is not configured"
    sensitive = False


class InvalidRequest(AuthError):
    status_code = 400
    code = "bad_request"
    public_message = "Bad request"
    sensitive = False


class PasswordPolicyError(InvalidRequest):
    code = "password_policy"
    public_message = "Password does not meet policy"


class DeliveryFailed(AuthError):
    status_code = 502
    code = "delivery_failed"
    public_message = "Could not deliver the verification code"
    sensitive = False


class InfrastructureError(RuntimeError):
    """Failure of a collaborator (store, key material), never a security verdict."""

    status_code: int = 503
    code: str = "service_unavailable"


class StoreUnavailable(InfrastructureError):
    pass


class JWTKeyError(InfrastructureError):
    status_code = 500
    code = "signing_key_unavailable"


# Public messages for the credential-guessing paths. Every sensitive rejection
# on the same path collapses to one message.
_GENERIC_MESSAGES = {
    "invalid_credentials": "Invalid email or password",
    "invalid_2fa_code": "Invalid 2FA code",
    "invalid_or_expired_code": "Verification code is invalid or expired",
    "invalid_or_expired_grant": "Reset link is invalid or expired",
    "backup_codes_exhausted": "Invalid email or backup code",
    "backup_code_no_match": "Invalid email or backup code",
}


def _default_code(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "unprocessable_entity",
        429: "rate_limited",
        502: "bad_gateway",
        503: "service_unavailable",
    }
    return mapping.get(status_code, "http_error")


def _default_message(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Request failed"


def _normalize_details(details: Any) -> dict:
    if details is None:
        return {}
    if isinstance(details, dict):
        return details
    if isinstance(details, list):
        return {"errors": details}
    if isinstance(details, str):
        return {"detail": details}
    return {"detail": str(details)}


def error_payload(exc: BaseException) -> tuple[int, dict]:
    """Translate an exception into ``(status_code, envelope)`` for a transport layer."""
    if isinstance(exc, AuthError):
        if exc.sensitive:
            code = _default_code(exc.status_code)
            message = _GENERIC_MESSAGES.get(exc.code, exc.public_message)
            details: dict = {}
        else:
            code = exc.code
            message = exc.message
            details = _normalize_details(exc.details)
        return exc.status_code, {"code": code, "message": message, "data": None, "details": details}
    if isinstance(exc, InfrastructureError):
        return exc.status_code, {
            "code": exc.code,
            "message": _default_message(exc.status_code),
            "data": None,
            "details": {},
        }
    return 500, {
        "code": "internal_server_error",
        "message": "Internal server error",
        "data": None,
        "details": {},
    }
