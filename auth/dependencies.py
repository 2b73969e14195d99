"""
auth/dependencies.py -- FastAPI Depends() helpers for access-token authentication.

Access tokens arrive as "Authorization: Bearer <token>". Verification is
stateless (signature + expiry); no store lookup happens here.

get_current_claims() raises Unauthorized for a missing, invalid or expired token.
require_admin() wraps get_current_claims() and raises Forbidden if not admin.

The errors raised are the core's typed failures; api/main.py renders them.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AccessTokenExpired, AuthError, Expired, Forbidden, Unauthorized
from auth.models import AccessClaims
from auth.service import CredentialService


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: AccessClaims = Depends(get_current_claims)): ...

    An expired token raises Unauthorized with code "token_expired" so clients
    know to call /auth/refresh rather than send the user to the login page.
    """
    token = _bearer_token(request)
    if not token:
        raise Unauthorized()
    service: CredentialService = request.app.state.service
    try:
        return service.authenticate(token)
    except Expired as exc:
        raise AccessTokenExpired() from exc
    except AuthError as exc:
        raise Unauthorized("Invalid access token.") from exc


def require_admin(request: Request) -> AccessClaims:
    """Require the admin role. Unauthorized if unauthenticated, Forbidden if not admin."""
    claims = get_current_claims(request)
    if claims.role != "admin":
        raise Forbidden("Admin access required.")
    return claims
