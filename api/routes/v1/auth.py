"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register                 -- create account, email a verify code; 201
  POST /api/v1/auth/verify                   -- check a verify-email or reset-password code
  POST /api/v1/auth/resend                   -- replace and resend a code (30s per-account interval)
  POST /api/v1/auth/password/forgot          -- request a reset code; always 200
  POST /api/v1/auth/password/reset           -- set a new password with a reset code
  POST /api/v1/auth/login                    -- password login; returns tokens, sets refresh cookie
  POST /api/v1/auth/refresh                  -- rotate the refresh credential
  POST /api/v1/auth/logout                   -- revoke the session; always 200
  GET  /api/v1/auth/me                       -- claims of the current access token
  POST /api/v1/auth/accounts/{id}/revoke     -- end another account's session (admin only)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  Login failures for unknown email and wrong password are indistinguishable.
  Cache-Control: no-store on every response carrying a credential.
  The refresh credential travels in an httpOnly cookie scoped to /api/v1/auth.

Handlers are plain `def`: bcrypt work then runs in FastAPI's threadpool
instead of blocking the event loop. Typed failures from the credential
service propagate to the AuthError handler in api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountInfo,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendRequest,
    ResetPasswordRequest,
    TokenResponse,
    VerifyRequest,
    VerifyResponse,
)
from auth.dependencies import get_current_claims, require_admin
from auth.models import PURPOSE_VERIFY_EMAIL, AccessClaims
from auth.service import CredentialService
from auth.tokens import REFRESH_TOKEN_TTL
from core.config import get_settings

# Auth policy:
# - register, verify, resend, password/*, login, refresh, logout: public
# - GET  /auth/me:                      requires access token (get_current_claims)
# - POST /auth/accounts/{id}/revoke:    requires admin (require_admin)
router = APIRouter()

_REFRESH_COOKIE = "refresh_token"
_REFRESH_COOKIE_PATH = "/api/v1/auth"


def _service(request: Request) -> CredentialService:
    return request.app.state.service


# ---------------------------------------------------------------------------
# Registration and verification
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=MessageResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> MessageResponse:
    """Create an unverified account. The verify code goes out by notification."""
    _service(request).register(body.email, body.password, full_name=body.full_name)
    return MessageResponse(message="Registration successful. Please check your email for OTP verification.")


@router.post("/auth/verify", response_model=VerifyResponse)
def verify(request: Request, body: VerifyRequest) -> VerifyResponse:
    record = _service(request).verify(body.email, body.otp)
    if record.purpose == PURPOSE_VERIFY_EMAIL:
        message = "Email verified successfully."
    else:
        message = "OTP verified. You may now reset your password."
    return VerifyResponse(message=message, purpose=record.purpose)


@router.post("/auth/resend", response_model=MessageResponse)
def resend(request: Request, body: ResendRequest) -> MessageResponse:
    _service(request).resend(body.email, body.purpose.value)
    return MessageResponse(message="OTP sent to email successfully.")


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Always 200 with the same message so the response does not reveal registration."""
    _service(request).request_password_reset(body.email)
    return MessageResponse(message="If an account with that email exists, a password reset OTP has been sent.")


@router.post("/auth/password/reset", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    _service(request).complete_password_reset(body.email, body.otp, body.new_password)
    return MessageResponse(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return tokens and set the refresh cookie."""
    account, pair = _service(request).login(body.email, body.password)
    resp = JSONResponse(
        content=LoginResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            account=AccountInfo(
                id=account.id,
                email=account.email,
                full_name=account.full_name,
                role=account.role,
            ),
        ).model_dump()
    )
    _set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange the current refresh credential for a new pair.

    The presented credential stops working. Presenting an already-rotated
    credential revokes the session.
    """
    pair = _service(request).refresh(_presented_refresh_token(request, body) or "")
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
        ).model_dump()
    )
    _set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the session and clear the cookie. Succeeds even for stale credentials."""
    _service(request).logout(_presented_refresh_token(request, body))
    resp = JSONResponse(content=MessageResponse(message="Logged out successfully").model_dump())
    resp.delete_cookie(_REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    return MeResponse(
        account_id=claims.account_id,
        email=claims.email,
        role=claims.role,
        expires_at=claims.expires_at.isoformat(),
    )


@router.post("/auth/accounts/{account_id}/revoke", response_model=MessageResponse)
def revoke_account(
    request: Request,
    account_id: int,
    claims: AccessClaims = Depends(require_admin),
) -> MessageResponse:
    """End another account's session. Admin only. Idempotent."""
    _service(request).revoke_account_sessions(account_id)
    return MessageResponse(message="Session revoked.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _presented_refresh_token(request: Request, body: Optional[RefreshRequest]) -> str | None:
    cookie = request.cookies.get(_REFRESH_COOKIE)
    if cookie:
        return cookie
    return body.refresh_token if body is not None else None


def _set_refresh_cookie(response: JSONResponse, token: str) -> None:
    """Write the refresh credential as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    path: only sent to the auth endpoints that need it.
    max_age: matches the stored session expiry.
    """
    response.set_cookie(
        _REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="lax",
        secure=get_settings().secure_cookies,
        max_age=int(REFRESH_TOKEN_TTL.total_seconds()),
        path=_REFRESH_COOKIE_PATH,
    )
