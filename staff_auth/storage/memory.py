from __future__ import annotations

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional

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


@dataclass
class _State:
    identities: Dict[uuid.UUID, IdentityRecord] = field(default_factory=dict)
    second_factors: Dict[uuid.UUID, SecondFactorRecord] = field(default_factory=dict)
    backup_codes: Dict[uuid.UUID, BackupCodeRecord] = field(default_factory=dict)
    codes: Dict[uuid.UUID, OneTimeCodeRecord] = field(default_factory=dict)
    sessions: Dict[uuid.UUID, RefreshSessionRecord] = field(default_factory=dict)
    grants: Dict[uuid.UUID, ResetGrantRecord] = field(default_factory=dict)
    audit_events: List[AuditEventRecord] = field(default_factory=list)


class MemoryAuthStore:
    """In-process store for development and tests.

    Transactions are serialised on one lock and run against the live state;
    a snapshot taken on entry is restored if the block raises.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryRepository"]:
        async with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield MemoryRepository(self._state)
            except BaseException:
                self._state = snapshot
                raise

    def seed_identity(self, identity: IdentityRecord) -> IdentityRecord:
        """Insert an identity outside a transaction (bootstrap and fixtures)."""
        stored = replace(identity, email=normalize_email(identity.email))
        self._state.identities[stored.id] = stored
        return replace(stored)

    # Read-only views for diagnostics and assertions.
    def sessions_for(self, identity_id: uuid.UUID) -> list[RefreshSessionRecord]:
        return [replace(s) for s in self._state.sessions.values() if s.identity_id == identity_id]

    def audit_events_for(self, identity_id: uuid.UUID) -> list[AuditEventRecord]:
        return [replace(e) for e in self._state.audit_events if e.identity_id == identity_id]

    def identity(self, identity_id: uuid.UUID) -> Optional[IdentityRecord]:
        record = self._state.identities.get(identity_id)
        return replace(record) if record else None


class MemoryRepository:
    def __init__(self, state: _State) -> None:
        self._s = state

    # identities

    async def get_identity(self, identity_id):
        record = self._s.identities.get(identity_id)
        return replace(record) if record else None

    async def get_identity_by_email(self, email):
        wanted = normalize_email(email)
        for record in self._s.identities.values():
            if record.email == wanted:
                return replace(record)
        return None

    async def add_identity(self, identity):
        self._s.identities[identity.id] = replace(identity, email=normalize_email(identity.email))

    async def record_login(self, identity_id, at):
        record = self._s.identities.get(identity_id)
        if record:
            record.last_login_at = at

    async def set_password(self, identity_id, hashed_password, *, must_change_password):
        record = self._s.identities.get(identity_id)
        if record:
            record.hashed_password = hashed_password
            record.must_change_password = must_change_password

    async def revoke_trusted_devices(self, identity_id, at):
        record = self._s.identities.get(identity_id)
        if record:
            record.trusted_devices_revoked_at = at

    # second factor

    async def get_second_factor(self, identity_id):
        record = self._s.second_factors.get(identity_id)
        return replace(record) if record else None

    async def save_second_factor(self, config):
        self._s.second_factors[config.identity_id] = replace(config)

    async def enable_second_factor(self, identity_id, at):
        record = self._s.second_factors.get(identity_id)
        if record:
            record.enabled = True
            record.confirmed_at = at

    async def delete_second_factor(self, identity_id):
        self._s.second_factors.pop(identity_id, None)
        for code_id in [c.id for c in self._s.backup_codes.values() if c.identity_id == identity_id]:
            del self._s.backup_codes[code_id]

    async def list_backup_codes(self, identity_id):
        codes = [replace(c) for c in self._s.backup_codes.values() if c.identity_id == identity_id]
        return sorted(codes, key=lambda c: c.position)

    async def replace_backup_codes(self, identity_id, code_hashes):
        for code_id in [c.id for c in self._s.backup_codes.values() if c.identity_id == identity_id]:
            del self._s.backup_codes[code_id]
        for position, code_hash in enumerate(code_hashes):
            code = BackupCodeRecord(
                id=uuid.uuid4(), identity_id=identity_id, position=position, code_hash=code_hash
            )
            self._s.backup_codes[code.id] = code

    async def delete_backup_code(self, code_id):
        return self._s.backup_codes.pop(code_id, None) is not None

    # one-time codes

    async def add_one_time_code(self, code):
        self._s.codes[code.id] = replace(code, email=normalize_email(code.email))

    async def latest_active_code(self, email: str, purpose: CodePurpose, now: datetime):
        wanted = normalize_email(email)
        candidates = [
            c
            for c in self._s.codes.values()
            if c.email == wanted and c.purpose == purpose and c.used_at is None and c.expires_at > now
        ]
        if not candidates:
            return None
        # Ties on created_at resolve to the most recently inserted code.
        latest = candidates[0]
        for candidate in candidates[1:]:
            if candidate.created_at >= latest.created_at:
                latest = candidate
        return replace(latest)

    async def consume_code(self, code_id, at):
        record = self._s.codes.get(code_id)
        if record is None or record.used_at is not None:
            return False
        record.used_at = at
        return True

    # refresh sessions

    async def add_refresh_session(self, session):
        self._s.sessions[session.id] = replace(session)

    async def get_refresh_session_by_hash(self, token_hash):
        for record in self._s.sessions.values():
            if record.token_hash == token_hash:
                return replace(record)
        return None

    async def delete_refresh_session(self, session_id):
        return self._s.sessions.pop(session_id, None) is not None

    async def delete_identity_sessions(self, identity_id):
        doomed = [s.id for s in self._s.sessions.values() if s.identity_id == identity_id]
        for session_id in doomed:
            del self._s.sessions[session_id]
        return len(doomed)

    async def prune_refresh_sessions(self, identity_id, keep):
        owned = [s for s in self._s.sessions.values() if s.identity_id == identity_id]
        # Newest first; insertion order breaks created_at ties.
        ranked = sorted(enumerate(owned), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        doomed = [session for _, session in ranked[keep:]]
        for session in doomed:
            del self._s.sessions[session.id]
        return len(doomed)

    async def count_refresh_sessions(self, identity_id):
        return sum(1 for s in self._s.sessions.values() if s.identity_id == identity_id)

    # password reset grants

    async def add_reset_grant(self, grant):
        self._s.grants[grant.id] = replace(grant)

    async def get_active_reset_grant(self, token_hash, now):
        for record in self._s.grants.values():
            if record.token_hash == token_hash and record.used_at is None and record.expires_at > now:
                return replace(record)
        return None

    async def consume_reset_grant(self, grant_id, at):
        record = self._s.grants.get(grant_id)
        if record is None or record.used_at is not None:
            return False
        record.used_at = at
        return True

    # audit

    async def add_audit_event(self, event):
        self._s.audit_events.append(replace(event, details=dict(event.details)))

    async def latest_audit_event_at(self, identity_id, action: AuditAction):
        stamps = [
            e.created_at for e in self._s.audit_events if e.identity_id == identity_id and e.action == action
        ]
        return max(stamps) if stamps else None
