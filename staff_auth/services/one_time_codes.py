from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.context import bind_identity
from staff_auth.core.errors import AccountDisabled, DeliveryFailed, InvalidOrExpiredCode, InvalidRequest
from staff_auth.core.logging import redact_email
from staff_auth.core.security import generate_numeric_code, hash_code, verify_password
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import CodeLoginRequest, CodeRequest, LoginResult
from staff_auth.schemas.common import AuditAction, CodePurpose, DeliveryChannel, LoginState
from staff_auth.services.audit import AuditSink, record_safely
from staff_auth.services.email_templates import code_sms_text, render_code_email
from staff_auth.services.messaging import MessageDispatcher
from staff_auth.storage.base import AuthRepository, AuthStore
from staff_auth.storage.records import IdentityRecord, OneTimeCodeRecord

if TYPE_CHECKING:
    from staff_auth.services.sessions import SessionService
    from staff_auth.services.tokens import TokenIssuer

logger = logging.getLogger(__name__)


class OneTimeCodeEngine:
    """Issues, verifies and delivers short numeric codes scoped to (email, purpose)."""

    def __init__(self, settings: Settings, dispatcher: MessageDispatcher, clock: Clock | None = None) -> None:
        self.settings = settings
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()

    async def issue(self, repo: AuthRepository, identity: IdentityRecord, purpose: CodePurpose) -> str:
        """Store a hashed code for ``identity`` and return the plaintext for delivery."""
        now = self.clock.now()
        code = generate_numeric_code(self.settings.otp_length)
        await repo.add_one_time_code(
            OneTimeCodeRecord(
                id=uuid.uuid4(),
                identity_id=identity.id,
                email=identity.email,
                purpose=purpose,
                code_hash=hash_code(code, rounds=self.settings.code_hash_rounds),
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.otp_expire_minutes),
            )
        )
        return code

    async def verify(
        self, repo: AuthRepository, email: str, purpose: CodePurpose, candidate: str
    ) -> OneTimeCodeRecord:
        """Check ``candidate`` against the newest live code and consume it.

        Only the most recent unused, unexpired code for ``(email, purpose)`` is
        considered. Consumption is compare-and-set, so of two concurrent
        callers presenting the same code exactly one succeeds.
        """
        now = self.clock.now()
        record = await repo.latest_active_code(email, purpose, now)
        candidate = (candidate or "").strip()
        if record is None or not candidate or not verify_password(candidate, record.code_hash):
            raise InvalidOrExpiredCode()
        if not await repo.consume_code(record.id, now):
            raise InvalidOrExpiredCode()
        return record

    async def deliver(
        self,
        identity: IdentityRecord,
        purpose: CodePurpose,
        code: str,
        *,
        channel: DeliveryChannel = DeliveryChannel.EMAIL,
        phone: str | None = None,
    ) -> None:
        minutes = self.settings.otp_expire_minutes
        product = self.settings.product_name
        if channel == DeliveryChannel.SMS:
            if not phone:
                raise InvalidRequest("Phone number is required for SMS codes")
            sent = await self.dispatcher.send_sms(
                phone, code_sms_text(purpose, code, product=product, minutes=minutes)
            )
            if not sent:
                raise DeliveryFailed()
        message = render_code_email(
            purpose, code, first_name=identity.first_name, product=product, minutes=minutes
        )
        sent = await self.dispatcher.send_email(identity.email, message.subject, message.html, message.text)
        if not sent:
            logger.warning(
                "Verification code email not delivered to=%s purpose=%s", redact_email(identity.email), purpose.value
            )


class CodeFlows:
    """Public code request and code-based login (passwordless or revalidation)."""

    def __init__(
        self,
        store: AuthStore,
        engine: OneTimeCodeEngine,
        sessions: "SessionService",
        tokens: "TokenIssuer",
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.sessions = sessions
        self.tokens = tokens
        self.audit = audit
        self.clock = clock or SystemClock()

    async def request_code(self, payload: CodeRequest) -> None:
        if payload.purpose == CodePurpose.PASSWORD_RESET:
            raise InvalidRequest("Password reset codes are issued from a reset link")
        if payload.channel == DeliveryChannel.SMS and not payload.phone:
            raise InvalidRequest("Phone number is required for SMS codes")
        async with self.store.transaction() as repo:
            identity = await repo.get_identity_by_email(payload.email)
            if identity is None or not identity.is_active:
                logger.info("Code requested for unknown or inactive email=%s", redact_email(payload.email))
                return
            code = await self.engine.issue(repo, identity, payload.purpose)
        await self.engine.deliver(
            identity, payload.purpose, code, channel=payload.channel, phone=payload.phone
        )

    async def login_with_code(self, payload: CodeLoginRequest) -> LoginResult:
        if payload.purpose == CodePurpose.PASSWORD_RESET:
            raise InvalidRequest("Password reset codes cannot be used to sign in")
        now = self.clock.now()
        disabled = False
        async with self.store.transaction() as repo:
            record = await self.engine.verify(repo, payload.email, payload.purpose, payload.code)
            identity = await repo.get_identity(record.identity_id)
            if identity is None or not identity.is_active:
                # The code stays consumed.
                disabled = True
            else:
                tokens = await self.sessions.issue_in(repo, identity)
                await repo.record_login(identity.id, now)
                second_factor = await repo.get_second_factor(identity.id)
        if disabled:
            raise AccountDisabled()

        bind_identity(identity.id, identity.tenant_id)
        await record_safely(self.audit, identity.id, AuditAction.LOGIN_OTP, {"purpose": payload.purpose.value})
        trusted_device_token = None
        if payload.purpose == CodePurpose.ACCESS_REVALIDATION:
            await record_safely(self.audit, identity.id, AuditAction.ACCESS_REVALIDATED, {"method": "otp"})
            if payload.remember_device:
                trusted_device_token = self.tokens.create_trusted_device_token(identity)
        identity.last_login_at = now
        return LoginResult(
            state=LoginState.ISSUED,
            identity=self.sessions.summary(identity, second_factor),
            tokens=tokens,
            requires_password_change=identity.must_change_password,
            trusted_device_token=trusted_device_token,
        )
