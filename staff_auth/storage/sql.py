from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from staff_auth.core.clock import ensure_aware
from staff_auth.core.errors import StoreUnavailable
from staff_auth.models import (
    AuditEvent,
    BackupCode,
    Identity,
    OneTimeCode,
    PasswordResetGrant,
    RefreshSession,
    SecondFactorConfig,
)
from staff_auth.schemas.common import AuditAction, CodePurpose
from staff_auth.storage.base import normalize_email
from staff_auth.storage.records import (
    AuditEventRecord,
    BackupCodeRecord,
    IdentityRecord,
    OneTimeCodeRecord,
    RefreshSessionRecord,
    ResetGrantRecord,
    SecondFactorRecord,
)

logger = logging.getLogger(__name__)


def _identity_record(row: Identity) -> IdentityRecord:
    return IdentityRecord(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        is_active=bool(row.is_active),
        must_change_password=bool(row.must_change_password),
        last_login_at=ensure_aware(row.last_login_at),
        trusted_devices_revoked_at=ensure_aware(row.trusted_devices_revoked_at),
        created_at=ensure_aware(row.created_at),
    )


def _code_record(row: OneTimeCode) -> OneTimeCodeRecord:
    return OneTimeCodeRecord(
        id=row.id,
        identity_id=row.identity_id,
        email=row.email,
        purpose=CodePurpose(row.purpose),
        code_hash=row.code_hash,
        created_at=ensure_aware(row.created_at),
        expires_at=ensure_aware(row.expires_at),
        used_at=ensure_aware(row.used_at),
    )


def _session_record(row: RefreshSession) -> RefreshSessionRecord:
    return RefreshSessionRecord(
        id=row.id,
        identity_id=row.identity_id,
        token_hash=row.token_hash,
        created_at=ensure_aware(row.created_at),
        expires_at=ensure_aware(row.expires_at),
    )


def _grant_record(row: PasswordResetGrant) -> ResetGrantRecord:
    return ResetGrantRecord(
        id=row.id,
        identity_id=row.identity_id,
        token_hash=row.token_hash,
        created_at=ensure_aware(row.created_at),
        expires_at=ensure_aware(row.expires_at),
        used_at=ensure_aware(row.used_at),
    )


class SqlAlchemyAuthStore:
    """AuthStore backed by an async SQLAlchemy session factory.

    Each transaction opens its own session and commits on clean exit. Driver
    errors surface as ``StoreUnavailable`` so callers can tell an outage from
    a security rejection.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlAlchemyRepository"]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield SqlAlchemyRepository(session)
        except SQLAlchemyError as exc:
            logger.error("Credential store transaction failed: %s", exc.__class__.__name__)
            raise StoreUnavailable("Credential store unavailable") from exc


class SqlAlchemyRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # identities

    async def get_identity(self, identity_id):
        row = await self.session.get(Identity, identity_id)
        return _identity_record(row) if row else None

    async def get_identity_by_email(self, email):
        stmt = select(Identity).where(Identity.email == normalize_email(email))
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _identity_record(row) if row else None

    async def add_identity(self, identity):
        self.session.add(
            Identity(
                id=identity.id,
                tenant_id=identity.tenant_id,
                email=normalize_email(identity.email),
                role=identity.role,
                first_name=identity.first_name,
                last_name=identity.last_name,
                phone_number=identity.phone_number,
                hashed_password=identity.hashed_password,
                is_active=identity.is_active,
                must_change_password=identity.must_change_password,
            )
        )
        await self.session.flush()

    async def record_login(self, identity_id, at):
        stmt = update(Identity).where(Identity.id == identity_id).values(last_login_at=at)
        await self.session.execute(stmt)

    async def set_password(self, identity_id, hashed_password, *, must_change_password):
        stmt = (
            update(Identity)
            .where(Identity.id == identity_id)
            .values(hashed_password=hashed_password, must_change_password=must_change_password)
        )
        await self.session.execute(stmt)

    async def revoke_trusted_devices(self, identity_id, at):
        stmt = update(Identity).where(Identity.id == identity_id).values(trusted_devices_revoked_at=at)
        await self.session.execute(stmt)

    # second factor

    async def get_second_factor(self, identity_id):
        row = await self.session.get(SecondFactorConfig, identity_id)
        if not row:
            return None
        return SecondFactorRecord(
            identity_id=row.identity_id,
            secret_encrypted=row.secret_encrypted,
            enabled=bool(row.enabled),
            confirmed_at=ensure_aware(row.confirmed_at),
        )

    async def save_second_factor(self, config):
        row = await self.session.get(SecondFactorConfig, config.identity_id)
        if row is None:
            row = SecondFactorConfig(identity_id=config.identity_id)
            self.session.add(row)
        row.secret_encrypted = config.secret_encrypted
        row.enabled = config.enabled
        row.confirmed_at = config.confirmed_at
        await self.session.flush()

    async def enable_second_factor(self, identity_id, at):
        stmt = (
            update(SecondFactorConfig)
            .where(SecondFactorConfig.identity_id == identity_id)
            .values(enabled=True, confirmed_at=at)
        )
        await self.session.execute(stmt)

    async def delete_second_factor(self, identity_id):
        await self.session.execute(delete(BackupCode).where(BackupCode.identity_id == identity_id))
        await self.session.execute(
            delete(SecondFactorConfig).where(SecondFactorConfig.identity_id == identity_id)
        )

    async def list_backup_codes(self, identity_id):
        stmt = (
            select(BackupCode)
            .where(BackupCode.identity_id == identity_id)
            .order_by(BackupCode.position.asc())
        )
        result = await self.session.execute(stmt)
        return [
            BackupCodeRecord(
                id=row.id, identity_id=row.identity_id, position=row.position, code_hash=row.code_hash
            )
            for row in result.scalars().all()
        ]

    async def replace_backup_codes(self, identity_id, code_hashes):
        await self.session.execute(delete(BackupCode).where(BackupCode.identity_id == identity_id))
        await self.session.flush()
        for position, code_hash in enumerate(code_hashes):
            self.session.add(BackupCode(identity_id=identity_id, position=position, code_hash=code_hash))
        await self.session.flush()

    async def delete_backup_code(self, code_id):
        result = await self.session.execute(delete(BackupCode).where(BackupCode.id == code_id))
        return result.rowcount == 1

    # one-time codes

    async def add_one_time_code(self, code):
        self.session.add(
            OneTimeCode(
                id=code.id,
                identity_id=code.identity_id,
                email=normalize_email(code.email),
                purpose=code.purpose.value,
                code_hash=code.code_hash,
                created_at=code.created_at,
                expires_at=code.expires_at,
            )
        )
        await self.session.flush()

    async def latest_active_code(self, email: str, purpose: CodePurpose, now):
        stmt = (
            select(OneTimeCode)
            .where(
                OneTimeCode.email == normalize_email(email),
                OneTimeCode.purpose == purpose.value,
                OneTimeCode.used_at.is_(None),
                OneTimeCode.expires_at > now,
            )
            .order_by(OneTimeCode.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.scalars().first()
        return _code_record(row) if row else None

    async def consume_code(self, code_id, at):
        stmt = (
            update(OneTimeCode)
            .where(OneTimeCode.id == code_id, OneTimeCode.used_at.is_(None))
            .values(used_at=at)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # refresh sessions

    async def add_refresh_session(self, session):
        self.session.add(
            RefreshSession(
                id=session.id,
                identity_id=session.identity_id,
                token_hash=session.token_hash,
                created_at=session.created_at,
                expires_at=session.expires_at,
            )
        )
        await self.session.flush()

    async def get_refresh_session_by_hash(self, token_hash):
        stmt = select(RefreshSession).where(RefreshSession.token_hash == token_hash)
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _session_record(row) if row else None

    async def delete_refresh_session(self, session_id):
        result = await self.session.execute(delete(RefreshSession).where(RefreshSession.id == session_id))
        return result.rowcount == 1

    async def delete_identity_sessions(self, identity_id):
        result = await self.session.execute(
            delete(RefreshSession).where(RefreshSession.identity_id == identity_id)
        )
        return result.rowcount or 0

    async def prune_refresh_sessions(self, identity_id, keep):
        newest = (
            select(RefreshSession.id)
            .where(RefreshSession.identity_id == identity_id)
            .order_by(RefreshSession.created_at.desc())
            .limit(keep)
        )
        stmt = delete(RefreshSession).where(
            RefreshSession.identity_id == identity_id,
            RefreshSession.id.not_in(newest.scalar_subquery()),
        )
        # Savepoint: a failed prune must leave the enclosing rotation intact.
        try:
            async with self.session.begin_nested():
                result = await self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Session prune failed") from exc
        return result.rowcount or 0

    async def count_refresh_sessions(self, identity_id):
        stmt = select(func.count()).select_from(RefreshSession).where(RefreshSession.identity_id == identity_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() or 0

    # password reset grants

    async def add_reset_grant(self, grant):
        self.session.add(
            PasswordResetGrant(
                id=grant.id,
                identity_id=grant.identity_id,
                token_hash=grant.token_hash,
                created_at=grant.created_at,
                expires_at=grant.expires_at,
            )
        )
        await self.session.flush()

    async def get_active_reset_grant(self, token_hash, now):
        stmt = select(PasswordResetGrant).where(
            PasswordResetGrant.token_hash == token_hash,
            PasswordResetGrant.used_at.is_(None),
            PasswordResetGrant.expires_at > now,
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _grant_record(row) if row else None

    async def consume_reset_grant(self, grant_id, at):
        stmt = (
            update(PasswordResetGrant)
            .where(PasswordResetGrant.id == grant_id, PasswordResetGrant.used_at.is_(None))
            .values(used_at=at)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # audit

    async def add_audit_event(self, event: AuditEventRecord):
        self.session.add(
            AuditEvent(
                id=event.id,
                identity_id=event.identity_id,
                tenant_id=event.tenant_id,
                action=event.action.value,
                details=dict(event.details) or None,
                created_at=event.created_at,
            )
        )
        await self.session.flush()

    async def latest_audit_event_at(self, identity_id, action: AuditAction):
        stmt = select(func.max(AuditEvent.created_at)).where(
            AuditEvent.identity_id == identity_id,
            AuditEvent.action == action.value,
        )
        result = await self.session.execute(stmt)
        return ensure_aware(result.scalar_one_or_none())
