from __future__ import annotations

import hashlib
import secrets
from functools import lru_cache
from typing import Any

from jose import JWTError, jwt
from jose.exceptions import JOSEError
from passlib.context import CryptContext

from staff_auth.core.errors import JWTKeyError, PasswordPolicyError
from staff_auth.core.settings import Settings, get_settings


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def _hasher(rounds: int | None):
    handler = pwd_context.handler("bcrypt")
    return handler.using(rounds=rounds) if rounds else handler


def get_password_hash(password: str, *, settings: Settings | None = None, rounds: int | None = None) -> str:
    settings = settings or get_settings()
    min_len = settings.default_password_min_length
    if len(password) < min_len:
        raise PasswordPolicyError(f"Password too short; minimum {min_len} characters")
    return _hasher(rounds or settings.password_hash_rounds).hash(password)


def hash_code(code: str, *, rounds: int | None = None) -> str:
    """One-way hash for short single-use codes (OTP, backup codes)."""
    return _hasher(rounds).hash(code)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return _hasher(rounds).hash(secrets.token_urlsafe(16))


def constant_time_verify(
    password_hash: str | None, password: str, *, settings: Settings | None = None
) -> bool:
    if password_hash:
        return verify_password(password, password_hash)
    # Dummy verification to equalize timing
    settings = settings or get_settings()
    verify_password(password, _dummy_hash(settings.password_hash_rounds))
    return False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    return secrets.token_hex(32)


def generate_numeric_code(length: int = 6) -> str:
    lower = 10 ** (length - 1)
    return str(lower + secrets.randbelow(9 * lower))


@lru_cache(maxsize=8)
def _read_key(path: str) -> str:
    with open(path, "r", encoding="utf-8") as key_file:
        return key_file.read()


def _is_symmetric(settings: Settings) -> bool:
    return settings.jwt_algorithm.upper().startswith("HS")


def _signing_key(settings: Settings) -> str:
    if _is_symmetric(settings):
        if settings.jwt_secret:
            return settings.jwt_secret
        raise JWTKeyError("JWT secret not configured")
    if settings.jwt_private_key:
        return settings.jwt_private_key
    if settings.jwt_private_key_path:
        return _read_key(settings.jwt_private_key_path)
    raise JWTKeyError("JWT private key not configured")


def _verification_key(settings: Settings) -> str:
    if _is_symmetric(settings):
        if settings.jwt_secret:
            return settings.jwt_secret
        raise JWTKeyError("JWT secret not configured")
    if settings.jwt_public_key:
        return settings.jwt_public_key
    if settings.jwt_public_key_path:
        return _read_key(settings.jwt_public_key_path)
    raise JWTKeyError("JWT public key not configured")


def encode_token(claims: dict[str, Any], settings: Settings) -> str:
    try:
        return jwt.encode(claims, _signing_key(settings), algorithm=settings.jwt_algorithm)
    except JOSEError as exc:
        raise JWTKeyError("JWT signing failed") from exc


def decode_token(token: str, settings: Settings, expected_type: str | None = None) -> dict[str, Any]:
    """Verify the signature and token type.

    Expiry is left to the caller so it can be checked against an injected clock.
    """
    key = _verification_key(settings)
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False, "verify_aud": False},
        )
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if expected_type and payload.get("type") != expected_type:
        raise ValueError(f"Unexpected token type: {payload.get('type')}")
    return payload
