from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.context import bind_identity
from staff_auth.core.errors import (
    BackupCodeExhausted,
    BackupCodeNoMatch,
    Invalid2FACode,
    InvalidCredentials,
    PasswordPolicyError,
)
from staff_auth.core.logging import redact_email
from staff_auth.core.security import constant_time_verify, get_password_hash, verify_password
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import (
    BackupCodeLoginRequest,
    ChangePasswordRequest,
    IdentitySummary,
    LoginRequest,
    LoginResult,
    TokenPair,
)
from staff_auth.schemas.common import AuditAction, LoginState
from staff_auth.services.audit import AuditSink, record_safely
from staff_auth.services.mfa import match_backup_code, verify_second_factor
from staff_auth.services.sessions import SessionService
from staff_auth.services.tokens import TokenIssuer
from staff_auth.storage.base import AuthStore
from staff_auth.storage.records import IdentityRecord

logger = logging.getLogger(__name__)


class LoginService:
    """Password login state machine plus the other credential operations on an identity.

    Password login walks ``START -> PASSWORD_CHECKED -> SECOND_FACTOR_CHECKED
    -> REVALIDATION_CHECKED -> ISSUED``. It can stop early at
    ``FORCED_PASSWORD_CHANGE`` (tokens issued, password must be replaced) or
    return a step-up requirement without issuing anything. Every rejection
    is raised as an ``AuthError``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        tokens: TokenIssuer,
        sessions: SessionService,
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.sessions = sessions
        self.audit = audit
        self.clock = clock or SystemClock()

    def _revalidation_due(self, identity: IdentityRecord, last_revalidated, now) -> bool:
        stamps = [stamp for stamp in (last_revalidated, identity.last_login_at) if stamp is not None]
        if not stamps:
            return True
        return now - max(stamps) > timedelta(days=self.settings.revalidation_window_days)

    async def _issue(self, identity: IdentityRecord) -> TokenPair:
        now = self.clock.now()
        async with self.store.transaction() as repo:
            pair = await self.sessions.issue_in(repo, identity)
            await repo.record_login(identity.id, now)
        identity.last_login_at = now
        return pair

    async def login(self, payload: LoginRequest) -> LoginResult:
        now = self.clock.now()
        async with self.store.transaction() as repo:
            identity = await repo.get_identity_by_email(payload.email)
            second_factor = None
            last_revalidated = None
            if identity is not None:
                second_factor = await repo.get_second_factor(identity.id)
                last_revalidated = await repo.latest_audit_event_at(identity.id, AuditAction.ACCESS_REVALIDATED)

        # START: absent, inactive and wrong-password all fail the same way.
        password_ok = constant_time_verify(
            identity.hashed_password if identity else None, payload.password, settings=self.settings
        )
        if identity is None or not identity.is_active or not password_ok:
            logger.warning("Login rejected email=%s", redact_email(payload.email))
            raise InvalidCredentials()
        bind_identity(identity.id, identity.tenant_id)
        client = {"ip_address": payload.ip_address, "user_agent": payload.user_agent}

        # PASSWORD_CHECKED
        if identity.must_change_password:
            pair = await self._issue(identity)
            await record_safely(self.audit, identity.id, AuditAction.TEMP_PASSWORD_LOGIN, client)
            await record_safely(
                self.audit,
                identity.id,
                AuditAction.PASSWORD_CHANGE_REQUIRED,
                {"reason": "must_change_password", **client},
            )
            return LoginResult(
                state=LoginState.FORCED_PASSWORD_CHANGE,
                identity=self.sessions.summary(identity, second_factor),
                tokens=pair,
                requires_password_change=True,
            )

        if second_factor is not None and second_factor.enabled:
            if not payload.two_factor_code:
                return LoginResult(state=LoginState.PASSWORD_CHECKED, requires_two_factor=True)
            if not verify_second_factor(second_factor, payload.two_factor_code, self.settings, at=now):
                logger.warning("Invalid 2FA code identity_id=%s", identity.id)
                raise Invalid2FACode()

        # SECOND_FACTOR_CHECKED
        trusted = self.tokens.trusted_device_valid(payload.trusted_device_token, identity)
        if not trusted and self._revalidation_due(identity, last_revalidated, now):
            return LoginResult(state=LoginState.SECOND_FACTOR_CHECKED, requires_otp_revalidation=True)

        # REVALIDATION_CHECKED
        pair = await self._issue(identity)
        await record_safely(
            self.audit, identity.id, AuditAction.LOGIN, {**client, "trusted_device": trusted}
        )
        logger.info("Identity logged in identity_id=%s", identity.id)
        return LoginResult(
            state=LoginState.ISSUED,
            identity=self.sessions.summary(identity, second_factor),
            tokens=pair,
        )

    async def login_with_backup_code(self, payload: BackupCodeLoginRequest) -> LoginResult:
        async with self.store.transaction() as repo:
            identity = await repo.get_identity_by_email(payload.email)
            codes = await repo.list_backup_codes(identity.id) if identity else []
            second_factor = await repo.get_second_factor(identity.id) if identity else None
        # Unknown, inactive and code-less identities still pay for one hash
        # and fail with the same public message as a wrong code.
        if identity is None or not identity.is_active:
            constant_time_verify(None, payload.code, settings=self.settings)
            logger.warning("Backup code login rejected email=%s", redact_email(payload.email))
            raise BackupCodeNoMatch()
        if not codes:
            constant_time_verify(None, payload.code, settings=self.settings)
            raise BackupCodeExhausted()
        matched = match_backup_code(codes, payload.code)
        if matched is None:
            logger.warning("Backup code rejected identity_id=%s", identity.id)
            raise BackupCodeNoMatch()

        now = self.clock.now()
        async with self.store.transaction() as repo:
            # A concurrent login may have spent the same code.
            if not await repo.delete_backup_code(matched.id):
                raise BackupCodeNoMatch()
            pair = await self.sessions.issue_in(repo, identity)
            await repo.record_login(identity.id, now)
        identity.last_login_at = now
        bind_identity(identity.id, identity.tenant_id)
        await record_safely(
            self.audit, identity.id, AuditAction.LOGIN_BACKUP_CODE, {"remaining": len(codes) - 1}
        )
        await record_safely(self.audit, identity.id, AuditAction.ACCESS_REVALIDATED, {"method": "backup_code"})
        return LoginResult(
            state=LoginState.FORCED_PASSWORD_CHANGE if identity.must_change_password else LoginState.ISSUED,
            identity=self.sessions.summary(identity, second_factor),
            tokens=pair,
            requires_password_change=identity.must_change_password,
        )

    async def change_password(self, identity_id: uuid.UUID, payload: ChangePasswordRequest) -> TokenPair:
        async with self.store.transaction() as repo:
            identity = await repo.get_identity(identity_id)
        if identity is None or not identity.is_active:
            raise InvalidCredentials()
        if not verify_password(payload.current_password, identity.hashed_password):
            raise InvalidCredentials("Current password is incorrect")
        if payload.new_password == payload.current_password:
            raise PasswordPolicyError("New password must differ from the current password")
        new_hash = get_password_hash(payload.new_password, settings=self.settings)

        now = self.clock.now()
        async with self.store.transaction() as repo:
            await repo.set_password(identity.id, new_hash, must_change_password=False)
            removed = await repo.delete_identity_sessions(identity.id)
            await repo.revoke_trusted_devices(identity.id, now)
            identity.must_change_password = False
            pair = await self.sessions.issue_in(repo, identity)
        await record_safely(self.audit, identity.id, AuditAction.PASSWORD_CHANGED, {"sessions_revoked": removed})
        logger.info("Password changed identity_id=%s", identity.id)
        return pair

    async def get_identity_summary(self, identity_id: uuid.UUID) -> IdentitySummary:
        async with self.store.transaction() as repo:
            identity = await repo.get_identity(identity_id)
            second_factor = await repo.get_second_factor(identity_id) if identity else None
        if identity is None:
            raise InvalidCredentials()
        return self.sessions.summary(identity, second_factor)
