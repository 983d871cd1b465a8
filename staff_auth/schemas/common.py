from __future__ import annotations

from enum import Enum


class _NormalizedEnum(str, Enum):
    @classmethod
    def _missing_(cls, value):  # type: ignore[override]
        if isinstance(value, str):
            normalized = value.strip().upper().replace("-", "_").replace(" ", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class CodePurpose(_NormalizedEnum):
    LOGIN = "LOGIN"
    ACCESS_REVALIDATION = "ACCESS_REVALIDATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class DeliveryChannel(_NormalizedEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class LoginState(_NormalizedEnum):
    START = "START"
    PASSWORD_CHECKED = "PASSWORD_CHECKED"
    SECOND_FACTOR_CHECKED = "SECOND_FACTOR_CHECKED"
    REVALIDATION_CHECKED = "REVALIDATION_CHECKED"
    ISSUED = "ISSUED"
    FORCED_PASSWORD_CHANGE = "FORCED_PASSWORD_CHANGE"
    REJECTED = "REJECTED"


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    TRUSTED_DEVICE = "trusted_device"


TRUSTED_DEVICE_SCOPE = "TRUSTED_DEVICE"


class AuditAction(_NormalizedEnum):
    LOGIN = "LOGIN"
    LOGIN_OTP = "LOGIN_OTP"
    LOGIN_BACKUP_CODE = "LOGIN_BACKUP_CODE"
    TEMP_PASSWORD_LOGIN = "TEMP_PASSWORD_LOGIN"
    PASSWORD_CHANGE_REQUIRED = "PASSWORD_CHANGE_REQUIRED"
    ACCESS_REVALIDATED = "ACCESS_REVALIDATED"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    BACKUP_CODES_REGENERATED = "BACKUP_CODES_REGENERATED"
