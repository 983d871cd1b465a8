from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from staff_auth.schemas.common import CodePurpose, DeliveryChannel, LoginState


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str
    two_factor_code: Optional[str] = None
    trusted_device_token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("two_factor_code", "trusted_device_token")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class CodeRequest(BaseModel):
    """Ask for a one-time code over email, or email plus SMS."""

    email: EmailStr
    purpose: CodePurpose = CodePurpose.LOGIN
    channel: DeliveryChannel = DeliveryChannel.EMAIL
    phone: Optional[str] = None


class CodeLoginRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=4, max_length=12)
    purpose: CodePurpose = CodePurpose.LOGIN
    remember_device: bool = False


class BackupCodeLoginRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=1)


class PasswordResetRequest(BaseModel):
    email: EmailStr


class ResetCompleteRequest(BaseModel):
    token: str = Field(min_length=1)
    code: str = Field(min_length=4, max_length=12)
    new_password: str


class IdentitySummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    email: str
    role: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    must_change_password: bool = False
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None


class LoginResult(BaseModel):
    state: LoginState
    identity: Optional[IdentitySummary] = None
    tokens: Optional[TokenPair] = None
    requires_two_factor: bool = False
    requires_otp_revalidation: bool = False
    requires_password_change: bool = False
    trusted_device_token: Optional[str] = None


class SecondFactorSetup(BaseModel):
    secret: str
    otpauth_uri: str


class ResetContext(BaseModel):
    email: str
    expires_at: datetime


class AccessTokenClaims(BaseModel):
    identity_id: UUID
    email: str
    role: str
    tenant_id: str
    issued_at: datetime
    expires_at: datetime
