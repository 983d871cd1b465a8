from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime
from typing import Iterable

import pyotp
from cryptography.fernet import InvalidToken

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.errors import (
    Invalid2FACode,
    InvalidCredentials,
    InvalidRequest,
    SecondFactorNotConfigured,
)
from staff_auth.core.fernet_crypto import decrypt_secret, encrypt_secret
from staff_auth.core.security import hash_code, verify_password
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import SecondFactorSetup
from staff_auth.schemas.common import AuditAction
from staff_auth.services.audit import AuditSink, record_safely
from staff_auth.storage.base import AuthStore
from staff_auth.storage.records import BackupCodeRecord, SecondFactorRecord

logger = logging.getLogger(__name__)

BACKUP_CODE_LENGTH = 8  # 8-character codes like "A1B2-C3D4"
_BACKUP_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # Exclude confusing chars: 0, O, 1, I


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def build_totp_uri(secret: str, email: str, issuer: str) -> str:
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(secret: str, code: str | None, *, at: datetime | None = None, valid_window: int = 1) -> bool:
    if not code:
        return False
    candidate = code.strip().replace(" ", "")
    if not candidate.isdigit():
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(candidate, for_time=at, valid_window=valid_window)


def verify_second_factor(config: SecondFactorRecord, code: str | None, settings: Settings, *, at: datetime) -> bool:
    """Check a TOTP code against a stored (encrypted) enrollment."""
    try:
        secret = decrypt_secret(config.secret_encrypted, settings)
    except InvalidToken:
        logger.error("Stored TOTP secret could not be decrypted identity_id=%s", config.identity_id)
        return False
    return verify_totp(secret, code, at=at, valid_window=settings.totp_valid_window)


# ─── Backup Codes ─────────────────────────────────────────────────────────────


def generate_backup_code() -> str:
    """Generate a human-readable backup code like 'A1B2-C3D4'."""
    code = "".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
    return f"{code[:4]}-{code[4:]}"


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().upper().replace("-", "").replace(" ", "")


def hash_backup_code(code: str, settings: Settings) -> str:
    return hash_code(normalize_backup_code(code), rounds=settings.code_hash_rounds)


def match_backup_code(codes: Iterable[BackupCodeRecord], candidate: str) -> BackupCodeRecord | None:
    """Linear scan; first stored hash that accepts the candidate wins."""
    normalized = normalize_backup_code(candidate)
    if not normalized:
        return None
    for code in codes:
        if verify_password(normalized, code.code_hash):
            return code
    return None


class SecondFactorService:
    """TOTP enrollment lifecycle and the backup codes that come with it."""

    def __init__(self, store: AuthStore, settings: Settings, audit: AuditSink, clock: Clock | None = None) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.clock = clock or SystemClock()

    def _fresh_codes(self) -> tuple[list[str], list[str]]:
        plain = [generate_backup_code() for _ in range(self.settings.backup_code_count)]
        return plain, [hash_backup_code(code, self.settings) for code in plain]

    async def setup(self, identity_id: uuid.UUID) -> SecondFactorSetup:
        secret = generate_totp_secret()
        async with self.store.transaction() as repo:
            identity = await repo.get_identity(identity_id)
            if identity is None or not identity.is_active:
                raise InvalidCredentials()
            existing = await repo.get_second_factor(identity_id)
            if existing and existing.enabled:
                raise InvalidRequest("2FA is already enabled")
            await repo.save_second_factor(
                SecondFactorRecord(
                    identity_id=identity_id,
                    secret_encrypted=encrypt_secret(secret, self.settings),
                    enabled=False,
                )
            )
        return SecondFactorSetup(
            secret=secret,
            otpauth_uri=build_totp_uri(secret, identity.email, self.settings.totp_issuer),
        )

    async def confirm(self, identity_id: uuid.UUID, code: str) -> list[str]:
        now = self.clock.now()
        async with self.store.transaction() as repo:
            config = await repo.get_second_factor(identity_id)
            if config is None:
                raise SecondFactorNotConfigured()
            if config.enabled:
                raise InvalidRequest("2FA is already enabled")
            if not verify_second_factor(config, code, self.settings, at=now):
                raise Invalid2FACode()
            plain, hashes = self._fresh_codes()
            await repo.enable_second_factor(identity_id, now)
            await repo.replace_backup_codes(identity_id, hashes)
        await record_safely(self.audit, identity_id, AuditAction.TWO_FACTOR_ENABLED)
        return plain

    async def disable(self, identity_id: uuid.UUID, code: str) -> None:
        now = self.clock.now()
        async with self.store.transaction() as repo:
            config = await repo.get_second_factor(identity_id)
            if config is None or not config.enabled:
                raise SecondFactorNotConfigured()
            if not verify_second_factor(config, code, self.settings, at=now):
                raise Invalid2FACode()
            await repo.delete_second_factor(identity_id)
        await record_safely(self.audit, identity_id, AuditAction.TWO_FACTOR_DISABLED)

    async def regenerate_backup_codes(self, identity_id: uuid.UUID) -> list[str]:
        async with self.store.transaction() as repo:
            config = await repo.get_second_factor(identity_id)
            if config is None or not config.enabled:
                raise SecondFactorNotConfigured()
            plain, hashes = self._fresh_codes()
            await repo.replace_backup_codes(identity_id, hashes)
        await record_safely(
            self.audit, identity_id, AuditAction.BACKUP_CODES_REGENERATED, {"count": len(plain)}
        )
        return plain

    async def remaining_backup_codes(self, identity_id: uuid.UUID) -> int:
        async with self.store.transaction() as repo:
            return len(await repo.list_backup_codes(identity_id))
