from __future__ import annotations

import base64
from functools import lru_cache

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from staff_auth.core.settings import Settings


_DEFAULT_DEV_KDF_SALT = "staff-auth-fernet-dev-salt-v1"


def _effective_kdf_salt(secret: str, configured: str | None) -> bytes:
    configured = (configured or "").strip()
    if configured:
        return configured.encode("utf-8")
    # Development fallback only; production deployments set FERNET_KDF_SALT.
    fallback = f"{_DEFAULT_DEV_KDF_SALT}:{secret[:16]}"
    return fallback.encode("utf-8")


@lru_cache(maxsize=16)
def _fernet_for(secret: str, salt: str | None, iterations: int) -> Fernet:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_effective_kdf_salt(secret, salt),
        iterations=iterations,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8"))))


def get_fernet(settings: Settings) -> Fernet:
    return _fernet_for(settings.secret_key, settings.fernet_kdf_salt, settings.fernet_kdf_iterations)


def encrypt_secret(secret: str, settings: Settings) -> str:
    return get_fernet(settings).encrypt(secret.encode("utf-8")).decode("utf-8")


def decrypt_secret(token: str, settings: Settings) -> str:
    return get_fernet(settings).decrypt(token.encode("utf-8")).decode("utf-8")
