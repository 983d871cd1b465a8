from __future__ import annotations

import logging
import uuid
from typing import Optional

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.errors import AccountDisabled, InvalidRefreshToken, RefreshTokenExpired, StoreUnavailable
from staff_auth.core.security import hash_token
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import IdentitySummary, TokenPair
from staff_auth.schemas.common import AuditAction
from staff_auth.services.audit import AuditSink, record_safely
from staff_auth.services.tokens import TokenIssuer
from staff_auth.storage.base import AuthRepository, AuthStore
from staff_auth.storage.records import IdentityRecord, SecondFactorRecord

logger = logging.getLogger(__name__)


class SessionService:
    """Refresh-session issuance, single-use rotation and revocation."""

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        settings: Settings,
        audit: AuditSink,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.audit = audit
        self.clock = clock or SystemClock()

    @staticmethod
    def summary(identity: IdentityRecord, second_factor: Optional[SecondFactorRecord] = None) -> IdentitySummary:
        return IdentitySummary(
            id=identity.id,
            tenant_id=identity.tenant_id,
            email=identity.email,
            role=identity.role,
            first_name=identity.first_name,
            last_name=identity.last_name,
            must_change_password=identity.must_change_password,
            two_factor_enabled=bool(second_factor and second_factor.enabled),
            last_login_at=identity.last_login_at,
        )

    async def issue_in(self, repo: AuthRepository, identity: IdentityRecord) -> TokenPair:
        """Mint an access token and persist a new refresh session inside the caller's transaction."""
        access = self.tokens.create_access_token(identity)
        minted = self.tokens.create_refresh_token(identity.id)
        await repo.add_refresh_session(minted.session)
        try:
            pruned = await repo.prune_refresh_sessions(identity.id, self.settings.max_sessions_per_identity)
        except StoreUnavailable:
            logger.warning("Refresh session prune failed identity_id=%s", identity.id)
        else:
            if pruned:
                logger.debug("Pruned %s refresh sessions identity_id=%s", pruned, identity.id)
        return TokenPair(access_token=access, refresh_token=minted.token)

    async def refresh(self, refresh_token: str) -> TokenPair:
        payload = self.tokens.decode_refresh_token(refresh_token)
        token_hash = hash_token(refresh_token)
        now = self.clock.now()
        expired = False
        async with self.store.transaction() as repo:
            session = await repo.get_refresh_session_by_hash(token_hash)
            if session is None or str(session.identity_id) != payload["sub"]:
                raise InvalidRefreshToken()
            if session.expires_at <= now:
                # Delete must commit, so the rejection is raised after the block.
                await repo.delete_refresh_session(session.id)
                expired = True
            else:
                identity = await repo.get_identity(session.identity_id)
                if identity is None or not identity.is_active:
                    raise AccountDisabled()
                if not await repo.delete_refresh_session(session.id):
                    raise InvalidRefreshToken()
                pair = await self.issue_in(repo, identity)
        if expired:
            raise RefreshTokenExpired()
        return pair

    async def logout(self, refresh_token: str) -> None:
        """Drop the session behind ``refresh_token``. Unknown tokens are ignored."""
        token_hash = hash_token(refresh_token)
        async with self.store.transaction() as repo:
            session = await repo.get_refresh_session_by_hash(token_hash)
            if session is None:
                return
            await repo.delete_refresh_session(session.id)
        await record_safely(self.audit, session.identity_id, AuditAction.LOGOUT)

    async def revoke_all(self, identity_id: uuid.UUID) -> int:
        """Log out everywhere: every refresh session and every trusted device."""
        now = self.clock.now()
        async with self.store.transaction() as repo:
            removed = await repo.delete_identity_sessions(identity_id)
            await repo.revoke_trusted_devices(identity_id, now)
        await record_safely(self.audit, identity_id, AuditAction.LOGOUT_ALL, {"sessions": removed})
        return removed

    async def session_count(self, identity_id: uuid.UUID) -> int:
        async with self.store.transaction() as repo:
            return await repo.count_refresh_sessions(identity_id)
