from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from staff_auth.core.clock import Clock, SystemClock
from staff_auth.core.errors import InvalidAccessToken, InvalidRefreshToken
from staff_auth.core.security import decode_token, encode_token, hash_token
from staff_auth.core.settings import Settings
from staff_auth.schemas.auth import AccessTokenClaims
from staff_auth.schemas.common import TRUSTED_DEVICE_SCOPE, TokenType
from staff_auth.storage.base import normalize_email
from staff_auth.storage.records import IdentityRecord, RefreshSessionRecord

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> int:
    return int(value.timestamp())


def _ts_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ts(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass
class MintedRefresh:
    token: str
    session: RefreshSessionRecord


class TokenIssuer:
    """Mints and checks the three signed token kinds.

    Expiry is always judged against the injected clock, never the host clock.
    """

    def __init__(self, settings: Settings, clock: Clock | None = None) -> None:
        self.settings = settings
        self.clock = clock or SystemClock()

    def create_access_token(self, identity: IdentityRecord) -> str:
        now = self.clock.now()
        expires = now + timedelta(minutes=self.settings.access_token_expire_minutes)
        claims = {
            "type": TokenType.ACCESS.value,
            "sub": str(identity.id),
            "email": identity.email,
            "role": identity.role,
            "tid": identity.tenant_id,
            "iat": _ts(now),
            "exp": _ts(expires),
        }
        return encode_token(claims, self.settings)

    def create_refresh_token(self, identity_id: uuid.UUID) -> MintedRefresh:
        now = self.clock.now()
        expires = now + timedelta(minutes=self.settings.refresh_token_expire_minutes)
        session_id = uuid.uuid4()
        claims = {
            "type": TokenType.REFRESH.value,
            "sub": str(identity_id),
            "sid": str(session_id),
            "iat": _ts(now),
            "exp": _ts(expires),
        }
        token = encode_token(claims, self.settings)
        session = RefreshSessionRecord(
            id=session_id,
            identity_id=identity_id,
            token_hash=hash_token(token),
            created_at=now,
            expires_at=expires,
        )
        return MintedRefresh(token=token, session=session)

    def create_trusted_device_token(self, identity: IdentityRecord) -> str:
        now = self.clock.now()
        expires = now + timedelta(days=self.settings.trusted_device_expire_days)
        claims = {
            "type": TokenType.TRUSTED_DEVICE.value,
            "sub": str(identity.id),
            "email": identity.email,
            "scope": TRUSTED_DEVICE_SCOPE,
            "iat": _ts(now),
            "iat_ms": _ts_ms(now),
            "exp": _ts(expires),
        }
        return encode_token(claims, self.settings)

    def _expired(self, payload: dict[str, Any]) -> bool:
        exp = payload.get("exp")
        if exp is None:
            return True
        try:
            return int(exp) <= _ts(self.clock.now())
        except (TypeError, ValueError):
            return True

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        try:
            payload = decode_token(token, self.settings, expected_type=TokenType.ACCESS.value)
        except ValueError as exc:
            raise InvalidAccessToken() from exc
        if self._expired(payload):
            raise InvalidAccessToken("Access token expired")
        try:
            return AccessTokenClaims(
                identity_id=payload["sub"],
                email=payload["email"],
                role=payload["role"],
                tenant_id=payload["tid"],
                issued_at=_from_ts(payload["iat"]),
                expires_at=_from_ts(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidAccessToken() from exc

    def decode_refresh_token(self, token: str) -> dict[str, Any]:
        """Signature, type and expiry checks for a refresh token. Store state is not consulted."""
        try:
            payload = decode_token(token, self.settings, expected_type=TokenType.REFRESH.value)
        except ValueError as exc:
            raise InvalidRefreshToken() from exc
        if self._expired(payload) or not payload.get("sub") or not payload.get("sid"):
            raise InvalidRefreshToken()
        return payload

    def trusted_device_valid(self, token: str | None, identity: IdentityRecord) -> bool:
        """True when ``token`` is a live trusted-device grant issued to ``identity``."""
        if not token:
            return False
        try:
            payload = decode_token(token, self.settings, expected_type=TokenType.TRUSTED_DEVICE.value)
        except ValueError:
            return False
        if payload.get("scope") != TRUSTED_DEVICE_SCOPE:
            logger.warning("Trusted-device token rejected: wrong scope")
            return False
        if payload.get("sub") != str(identity.id):
            logger.warning("Trusted-device token rejected: identity mismatch")
            return False
        if normalize_email(payload.get("email", "")) != normalize_email(identity.email):
            return False
        if self._expired(payload):
            return False
        cutoff = identity.trusted_devices_revoked_at
        if cutoff is not None:
            try:
                issued = int(payload.get("iat_ms"))
            except (TypeError, ValueError):
                return False
            # Same millisecond as the revocation counts as revoked.
            if issued <= _ts_ms(cutoff):
                return False
        return True
