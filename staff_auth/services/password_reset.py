from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from urllib.parse import urlencode

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.errors import InvalidCredentials, InvalidOrExpiredGrant
from staff_auth.core.logging import redact_email
from staff_auth.core.security import generate_opaque_token, get_password_hash, hash_token
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import PasswordResetRequest, ResetCompleteRequest, ResetContext
from staff_auth.schemas.common import AuditAction, CodePurpose
from staff_auth.services.audit import AuditSink, record_safely
from staff_auth.services.email_templates import render_reset_email
from staff_auth.services.messaging import MessageDispatcher
from staff_auth.services.one_time_codes import OneTimeCodeEngine
from staff_auth.storage.base import AuthRepository, AuthStore
from staff_auth.storage.records import IdentityRecord, ResetGrantRecord

logger = logging.getLogger(__name__)


class PasswordResetService:
    """Password reset that needs two proofs: the emailed link and a fresh code.

    The link carries a possession token (stored only as a SHA-256 hash). The
    code is a PASSWORD_RESET one-time code, requested with that token. Both
    must be live when the reset completes.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        codes: OneTimeCodeEngine,
        dispatcher: MessageDispatcher,
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codes = codes
        self.dispatcher = dispatcher
        self.audit = audit
        self.clock = clock or SystemClock()

    def reset_url(self, token: str) -> str:
        return f"{self.settings.app_url.rstrip('/')}/reset-password?{urlencode({'token': token})}"

    async def _create_grant(self, repo: AuthRepository, identity: IdentityRecord) -> str:
        now = self.clock.now()
        token = generate_opaque_token()
        await repo.add_reset_grant(
            ResetGrantRecord(
                id=uuid.uuid4(),
                identity_id=identity.id,
                token_hash=hash_token(token),
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.password_reset_expire_minutes),
            )
        )
        return token

    async def _load_grant(self, repo: AuthRepository, token: str) -> tuple[ResetGrantRecord, IdentityRecord]:
        grant = await repo.get_active_reset_grant(hash_token(token or ""), self.clock.now())
        if grant is None:
            raise InvalidOrExpiredGrant()
        identity = await repo.get_identity(grant.identity_id)
        if identity is None or not identity.is_active:
            raise InvalidOrExpiredGrant()
        return grant, identity

    async def request_reset(self, payload: PasswordResetRequest) -> None:
        """Always succeeds; unknown or inactive emails get no grant and no mail."""
        async with self.store.transaction() as repo:
            identity = await repo.get_identity_by_email(payload.email)
            if identity is None or not identity.is_active:
                logger.info("Password reset requested for unknown email=%s", redact_email(payload.email))
                return
            token = await self._create_grant(repo, identity)

        message = render_reset_email(
            self.reset_url(token),
            first_name=identity.first_name,
            product=self.settings.product_name,
            minutes=self.settings.password_reset_expire_minutes,
        )
        sent = await self.dispatcher.send_email(identity.email, message.subject, message.html, message.text)
        if not sent:
            logger.warning("Password reset email not delivered to=%s", redact_email(identity.email))
        await record_safely(self.audit, identity.id, AuditAction.PASSWORD_RESET_REQUESTED)

    async def issue_grant_for(self, identity_id: uuid.UUID) -> str:
        """Create a grant for an administrator-initiated invitation; returns the possession token."""
        async with self.store.transaction() as repo:
            identity = await repo.get_identity(identity_id)
            if identity is None or not identity.is_active:
                raise InvalidCredentials()
            token = await self._create_grant(repo, identity)
        await record_safely(self.audit, identity.id, AuditAction.PASSWORD_RESET_REQUESTED, {"initiated_by": "admin"})
        return token

    async def describe_reset(self, token: str) -> ResetContext:
        async with self.store.transaction() as repo:
            grant, identity = await self._load_grant(repo, token)
        return ResetContext(email=identity.email, expires_at=grant.expires_at)

    async def request_reset_code(self, token: str) -> None:
        async with self.store.transaction() as repo:
            _, identity = await self._load_grant(repo, token)
            code = await self.codes.issue(repo, identity, CodePurpose.PASSWORD_RESET)
        await self.codes.deliver(identity, CodePurpose.PASSWORD_RESET, code)

    async def complete_reset(self, payload: ResetCompleteRequest) -> None:
        """Apply the new password; every write commits together or not at all."""
        new_hash = get_password_hash(payload.new_password, settings=self.settings)
        now = self.clock.now()
        async with self.store.transaction() as repo:
            grant, identity = await self._load_grant(repo, payload.token)
            await self.codes.verify(repo, identity.email, CodePurpose.PASSWORD_RESET, payload.code)
            if not await repo.consume_reset_grant(grant.id, now):
                raise InvalidOrExpiredGrant()
            await repo.set_password(identity.id, new_hash, must_change_password=False)
            removed = await repo.delete_identity_sessions(identity.id)
            await repo.revoke_trusted_devices(identity.id, now)
        await record_safely(
            self.audit, identity.id, AuditAction.PASSWORD_RESET_COMPLETED, {"sessions_revoked": removed}
        )
        logger.info("Password reset completed identity_id=%s", identity.id)
