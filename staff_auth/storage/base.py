from __future__ import annotations

import uuid
from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from staff_auth.schemas.common import AuditAction, CodePurpose
from staff_auth.storage.records import (
    AuditEventRecord,
    BackupCodeRecord,
    IdentityRecord,
    OneTimeCodeRecord,
    RefreshSessionRecord,
    ResetGrantRecord,
    SecondFactorRecord,
)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class AuthRepository(Protocol):
    """Point reads and writes available inside one store transaction.

    Methods returning ``bool`` are compare-and-set: they report whether this
    caller won the write, so a concurrent consumer of the same row loses
    cleanly instead of both succeeding.
    """

    # identities
    async def get_identity(self, identity_id: uuid.UUID) -> Optional[IdentityRecord]: ...

    async def get_identity_by_email(self, email: str) -> Optional[IdentityRecord]: ...

    async def add_identity(self, identity: IdentityRecord) -> None: ...

    async def record_login(self, identity_id: uuid.UUID, at: datetime) -> None: ...

    async def set_password(
        self, identity_id: uuid.UUID, hashed_password: str, *, must_change_password: bool
    ) -> None: ...

    async def revoke_trusted_devices(self, identity_id: uuid.UUID, at: datetime) -> None: ...

    # second factor
    async def get_second_factor(self, identity_id: uuid.UUID) -> Optional[SecondFactorRecord]: ...

    async def save_second_factor(self, config: SecondFactorRecord) -> None: ...

    async def enable_second_factor(self, identity_id: uuid.UUID, at: datetime) -> None: ...

    async def delete_second_factor(self, identity_id: uuid.UUID) -> None: ...

    async def list_backup_codes(self, identity_id: uuid.UUID) -> list[BackupCodeRecord]: ...

    async def replace_backup_codes(self, identity_id: uuid.UUID, code_hashes: list[str]) -> None: ...

    async def delete_backup_code(self, code_id: uuid.UUID) -> bool: ...

    # one-time codes
    async def add_one_time_code(self, code: OneTimeCodeRecord) -> None: ...

    async def latest_active_code(
        self, email: str, purpose: CodePurpose, now: datetime
    ) -> Optional[OneTimeCodeRecord]: ...

    async def consume_code(self, code_id: uuid.UUID, at: datetime) -> bool: ...

    # refresh sessions
    async def add_refresh_session(self, session: RefreshSessionRecord) -> None: ...

    async def get_refresh_session_by_hash(self, token_hash: str) -> Optional[RefreshSessionRecord]: ...

    async def delete_refresh_session(self, session_id: uuid.UUID) -> bool: ...

    async def delete_identity_sessions(self, identity_id: uuid.UUID) -> int: ...

    async def prune_refresh_sessions(self, identity_id: uuid.UUID, keep: int) -> int: ...

    async def count_refresh_sessions(self, identity_id: uuid.UUID) -> int: ...

    # password reset grants
    async def add_reset_grant(self, grant: ResetGrantRecord) -> None: ...

    async def get_active_reset_grant(self, token_hash: str, now: datetime) -> Optional[ResetGrantRecord]: ...

    async def consume_reset_grant(self, grant_id: uuid.UUID, at: datetime) -> bool: ...

    # audit
    async def add_audit_event(self, event: AuditEventRecord) -> None: ...

    async def latest_audit_event_at(
        self, identity_id: uuid.UUID, action: AuditAction
    ) -> Optional[datetime]: ...


class AuthStore(Protocol):
    def transaction(self) -> AsyncContextManager[AuthRepository]:
        """Open one atomic unit of work; everything written inside commits or rolls back together."""
        ...
