from staff_auth.models.audit_event import AuditEvent
from staff_auth.models.backup_code import BackupCode
from staff_auth.models.identity import Identity
from staff_auth.models.one_time_code import OneTimeCode
from staff_auth.models.password_reset_grant import PasswordResetGrant
from staff_auth.models.refresh_session import RefreshSession
from staff_auth.models.second_factor import SecondFactorConfig

__all__ = [
    "AuditEvent",
    "BackupCode",
    "Identity",
    "OneTimeCode",
    "PasswordResetGrant",
    "RefreshSession",
    "SecondFactorConfig",
]
