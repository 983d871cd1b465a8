from datetime import timedelta

import pytest

from staff_auth.core.errors import (
    InvalidCredentials,
    InvalidOrExpiredCode,
    InvalidOrExpiredGrant,
    InvalidRefreshToken,
)
from staff_auth.schemas.auth import LoginRequest, PasswordResetRequest, ResetCompleteRequest
from staff_auth.schemas.common import AuditAction, CodePurpose, LoginState


@pytest.fixture
def fixed_code(monkeypatch):
    monkeypatch.setattr("staff_auth.services.one_time_codes.generate_numeric_code", lambda length=6: "123456")
    return "123456"


async def _password_works(services, email, password) -> bool:
    try:
        result = await services.login.login(LoginRequest(email=email, password=password))
    except InvalidCredentials:
        return False
    return result.state == LoginState.ISSUED


@pytest.mark.asyncio
async def test_reset_with_link_and_code(services, store, dispatcher, make_identity, fixed_code):
    identity = make_identity(email="a@x.com", password="OldPassw0rd!")
    old_session = await services.login.login(LoginRequest(email="a@x.com", password="OldPassw0rd!"))

    await services.password_reset.request_reset(PasswordResetRequest(email="a@x.com"))
    assert dispatcher.emails[-1]["subject"] == "Reset your Staff Portal password"
    assert "https://staff.example.com/reset-password?token=" in dispatcher.emails[-1]["text"]
    token = dispatcher.last_reset_token()

    await services.password_reset.request_reset_code(token)
    assert dispatcher.emails[-1]["subject"] == "Your Staff Portal password reset verification code"

    await services.password_reset.complete_reset(
        ResetCompleteRequest(token=token, code=fixed_code, new_password="N3wPassw0rd!")
    )

    assert await _password_works(services, "a@x.com", "N3wPassw0rd!")
    assert not await _password_works(services, "a@x.com", "OldPassw0rd!")
    with pytest.raises(InvalidRefreshToken):
        await services.sessions.refresh(old_session.tokens.refresh_token)
    actions = [e.action for e in store.audit_events_for(identity.id)]
    assert AuditAction.PASSWORD_RESET_REQUESTED in actions
    assert AuditAction.PASSWORD_RESET_COMPLETED in actions


@pytest.mark.asyncio
async def test_reset_revokes_sessions_and_trusted_devices(services, store, dispatcher, make_identity, clock):
    identity = make_identity()
    await services.login.login(LoginRequest(email=identity.email, password="Password123!"))
    device = services.tokens.create_trusted_device_token(identity)
    assert len(store.sessions_for(identity.id)) == 1

    clock.advance(minutes=1)
    token = await services.password_reset.issue_grant_for(identity.id)
    await services.password_reset.request_reset_code(token)
    await services.password_reset.complete_reset(
        ResetCompleteRequest(token=token, code=dispatcher.last_code(), new_password="N3wPassw0rd!")
    )

    assert store.sessions_for(identity.id) == []
    assert services.tokens.trusted_device_valid(device, store.identity(identity.id)) is False


@pytest.mark.asyncio
async def test_link_alone_is_not_enough(services, dispatcher, make_identity):
    identity = make_identity(password="OldPassw0rd!")
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()

    with pytest.raises(InvalidOrExpiredCode):
        await services.password_reset.complete_reset(
            ResetCompleteRequest(token=token, code="123456", new_password="N3wPassw0rd!")
        )
    assert await _password_works(services, identity.email, "OldPassw0rd!")


@pytest.mark.asyncio
async def test_expired_grant_with_valid_code(services, dispatcher, make_identity, clock, fixed_code):
    identity = make_identity(password="OldPassw0rd!")
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()

    clock.advance(minutes=55)
    await services.password_reset.request_reset_code(token)
    clock.advance(minutes=6)

    with pytest.raises(InvalidOrExpiredGrant):
        await services.password_reset.complete_reset(
            ResetCompleteRequest(token=token, code=fixed_code, new_password="N3wPassw0rd!")
        )
    assert await _password_works(services, identity.email, "OldPassw0rd!")


@pytest.mark.asyncio
async def test_wrong_code_keeps_grant_usable(services, dispatcher, make_identity, fixed_code):
    identity = make_identity()
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()
    await services.password_reset.request_reset_code(token)

    with pytest.raises(InvalidOrExpiredCode):
        await services.password_reset.complete_reset(
            ResetCompleteRequest(token=token, code="654321", new_password="N3wPassw0rd!")
        )
    await services.password_reset.complete_reset(
        ResetCompleteRequest(token=token, code=fixed_code, new_password="N3wPassw0rd!")
    )
    assert await _password_works(services, identity.email, "N3wPassw0rd!")


@pytest.mark.asyncio
async def test_grant_is_single_use(services, dispatcher, make_identity, fixed_code):
    identity = make_identity()
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()
    await services.password_reset.request_reset_code(token)
    await services.password_reset.complete_reset(
        ResetCompleteRequest(token=token, code=fixed_code, new_password="N3wPassw0rd!")
    )

    with pytest.raises(InvalidOrExpiredGrant):
        await services.password_reset.request_reset_code(token)
    with pytest.raises(InvalidOrExpiredGrant):
        await services.password_reset.complete_reset(
            ResetCompleteRequest(token=token, code=fixed_code, new_password="Th1rdPassw0rd!")
        )


@pytest.mark.asyncio
async def test_login_codes_do_not_complete_reset(services, dispatcher, make_identity):
    identity = make_identity()
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()
    async with services.store.transaction() as repo:
        login_code = await services.codes.issue(repo, identity, CodePurpose.LOGIN)

    with pytest.raises(InvalidOrExpiredCode):
        await services.password_reset.complete_reset(
            ResetCompleteRequest(token=token, code=login_code, new_password="N3wPassw0rd!")
        )


@pytest.mark.asyncio
async def test_describe_reset(services, dispatcher, make_identity, clock):
    identity = make_identity()
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    token = dispatcher.last_reset_token()

    context = await services.password_reset.describe_reset(token)
    assert context.email == identity.email
    assert context.expires_at == clock.now() + timedelta(minutes=60)

    with pytest.raises(InvalidOrExpiredGrant):
        await services.password_reset.describe_reset("0" * 64)


@pytest.mark.asyncio
async def test_unknown_email_is_silent(services, store, dispatcher):
    await services.password_reset.request_reset(PasswordResetRequest(email="ghost@example.com"))
    assert dispatcher.emails == []


@pytest.mark.asyncio
async def test_reset_mail_failure_still_succeeds(services, dispatcher, make_identity):
    identity = make_identity()
    dispatcher.email_ok = False
    await services.password_reset.request_reset(PasswordResetRequest(email=identity.email))
    assert len(dispatcher.emails) == 1
