"""
auth/errors.py -- Typed failures raised by the credential core.

Every failure carries a stable machine-readable `code`, the HTTP status the
transport layer should map it to, and a caller-safe `message`. The API layer
renders these into the ErrorResponse envelope; nothing here knows about HTTP
beyond the status hint.

Messages must never include secrets, digests, or whether a stored secret
matched. Login failures for unknown email and wrong password share one
Unauthorized message.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for every failure the credential core surfaces."""

    code = "unexpected"
    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid input."


class InputTooLarge(ValidationError):
    code = "input_too_large"
    default_message = "Input exceeds the maximum allowed length."


class NotFound(AuthError):
    code = "not_found"
    status_code = 404
    default_message = "Not found."


class Expired(AuthError):
    code = "expired"
    status_code = 400
    default_message = "The code or token has expired."


class Mismatch(AuthError):
    code = "mismatch"
    status_code = 400
    default_message = "Invalid code."


class InvalidCredential(AuthError):
    code = "invalid_credential"
    status_code = 401
    default_message = "Invalid or expired credential."


class InvalidSignature(InvalidCredential):
    code = "invalid_signature"
    default_message = "Token signature is invalid."


class RateLimited(AuthError):
    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(message or f"Please wait {self.retry_after}s before requesting another code.")


class Conflict(AuthError):
    code = "conflict"
    status_code = 409
    default_message = "The request conflicts with existing state."


class SamePassword(Conflict):
    code = "same_password"
    default_message = "New password cannot be the same as the old password."


class Unauthorized(AuthError):
    code = "unauthorized"
    status_code = 401
    default_message = "Authentication required."


class AccessTokenExpired(Unauthorized):
    code = "token_expired"
    default_message = "Access token has expired."


class Forbidden(Unauthorized):
    code = "forbidden"
    status_code = 403
    default_message = "You do not have access to this resource."


class Unexpected(AuthError):
    pass
