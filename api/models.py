"""
API request and response models for credkeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field constraints here are a first, cheap filter (types, lengths, email
syntax via EmailStr). The
credential service re-validates everything it depends on, so callers that
bypass HTTP get the same checks.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PurposeEnum(str, Enum):
    verify_email = "verify-email"
    reset_password = "reset-password"


# ---------------------------------------------------------------------------
# Request models
#
# Only email and otp are trimmed. Passwords are taken exactly as typed so the
# value stored at register/reset is the value login compares against.
# ---------------------------------------------------------------------------


class _EmailRequest(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def _strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value


class RegisterRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/register."""

    password: str = Field(min_length=8, max_length=72)
    full_name: str = Field(default="", max_length=255)


class VerifyRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/verify."""

    model_config = ConfigDict(str_strip_whitespace=True)

    otp: str = Field(min_length=6, max_length=6)


class ResendRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/resend."""

    purpose: PurposeEnum


class ForgotPasswordRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/password/forgot."""


class ResetPasswordRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/password/reset."""

    otp: str = Field(min_length=6, max_length=6)
    new_password: str = Field(min_length=8, max_length=72)

    @field_validator("otp", mode="before")
    @classmethod
    def _strip_otp(cls, value):
        return value.strip() if isinstance(value, str) else value


class LoginRequest(_EmailRequest):
    """Request body for POST /api/v1/auth/login."""

    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Optional body for /refresh and /logout. The refresh_token cookie wins when both are sent."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "success"
    message: str


class VerifyResponse(BaseModel):
    """Response for POST /api/v1/auth/verify. purpose tells the client which flow continues."""

    model_config = ConfigDict(frozen=True)

    status: str = "success"
    message: str
    purpose: PurposeEnum


class AccountInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: str
    role: str


class TokenResponse(BaseModel):
    """Access token plus the refresh credential (also set as an httpOnly cookie)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LoginResponse(TokenResponse):
    account: AccountInfo


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- the claims carried by the access token."""

    model_config = ConfigDict(frozen=True)

    account_id: int
    email: str
    role: str
    expires_at: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
