from staff_auth.core.errors import (
    AccountDisabled,
    BackupCodeExhausted,
    BackupCodeNoMatch,
    InvalidCredentials,
    InvalidOrExpiredGrant,
    InvalidRefreshToken,
    StoreUnavailable,
    error_payload,
)


def test_sensitive_errors_collapse_to_generic_message():
    status, body = error_payload(InvalidCredentials("Account is disabled"))
    assert status == 401
    assert body == {
        "code": "unauthorized",
        "message": "Invalid email or password",
        "data": None,
        "details": {},
    }


def test_backup_code_failures_are_indistinguishable():
    assert error_payload(BackupCodeExhausted()) == error_payload(BackupCodeNoMatch())


def test_grant_failure_is_forbidden():
    status, body = error_payload(InvalidOrExpiredGrant(details={"token": "secret"}))
    assert status == 403
    assert body["code"] == "forbidden"
    assert body["details"] == {}


def test_non_sensitive_errors_keep_their_code():
    status, body = error_payload(InvalidRefreshToken())
    assert status == 401
    assert body["code"] == "invalid_refresh_token"

    status, body = error_payload(AccountDisabled())
    assert status == 403
    assert body["code"] == "account_disabled"


def test_infrastructure_errors_are_not_security_rejections():
    status, body = error_payload(StoreUnavailable("db down"))
    assert status == 503
    assert body["code"] == "service_unavailable"
    assert "db down" not in body["message"]


def test_unexpected_errors_are_internal():
    status, body = error_payload(KeyError("boom"))
    assert status == 500
    assert body["code"] == "internal_server_error"
