from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from staff_auth.schemas.common import AuditAction, CodePurpose


@dataclass
class IdentityRecord:
    id: uuid.UUID
    tenant_id: str
    email: str
    hashed_password: str
    role: str = "STAFF"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: bool = True
    must_change_password: bool = False
    last_login_at: Optional[datetime] = None
    trusted_devices_revoked_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class SecondFactorRecord:
    identity_id: uuid.UUID
    secret_encrypted: str
    enabled: bool = False
    confirmed_at: Optional[datetime] = None


@dataclass
class BackupCodeRecord:
    id: uuid.UUID
    identity_id: uuid.UUID
    position: int
    code_hash: str


@dataclass
class OneTimeCodeRecord:
    id: uuid.UUID
    identity_id: uuid.UUID
    email: str
    purpose: CodePurpose
    code_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None


@dataclass
class RefreshSessionRecord:
    id: uuid.UUID
    identity_id: uuid.UUID
    token_hash: str
    created_at: datetime
    expires_at: datetime


@dataclass
class ResetGrantRecord:
    id: uuid.UUID
    identity_id: uuid.UUID
    token_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None


@dataclass
class AuditEventRecord:
    identity_id: Optional[uuid.UUID]
    action: AuditAction
    created_at: datetime
    tenant_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)
