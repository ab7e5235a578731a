from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code``. Protocol endpoints render ``error_code`` as the RFC 6749
    ``error`` value; the ``/v1`` API renders it inside the error envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

# OIDC protocol errors


class MalformedRequestError(ValidationError):
    """Missing or invalid protocol parameter (400)."""
    error_code = "invalid_request"


class UnsupportedGrantTypeError(MalformedRequestError):
    error_code = "unsupported_grant_type"


class UnsupportedResponseTypeError(MalformedRequestError):
    error_code = "unsupported_response_type"


class UnknownClientError(AuthenticationError):
    """Unregistered client or redirect URI outside the client's allowlist (401)."""
    error_code = "invalid_client"


class InvalidSessionError(AuthenticationError):
    """Missing, malformed, or unrecognized session or bootstrap token (401)."""
    error_code = "login_required"


class InvalidCodeError(AuthenticationError):
    """Authorization code with a bad signature, wrong issuer, or past expiry (401)."""
    error_code = "invalid_grant"


class ExpiredCodeError(InvalidCodeError):
    """Well-formed authorization code presented after its expiry (401)."""


class CodeReplayError(InvalidCodeError):
    """Authorization code that has already been redeemed (401)."""

    def __init__(self, message: str = "Authorization code has already been used", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ClientAuthError(AuthenticationError):
    """Confidential client presented a missing or wrong secret (401)."""
    error_code = "invalid_client"


class InvalidTokenError(AuthenticationError):
    """Bearer token missing, malformed, expired, or not an access token (401)."""
    error_code = "invalid_token"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "RateLimitedError",
    "MalformedRequestError",
    "UnsupportedGrantTypeError",
    "UnsupportedResponseTypeError",
    "UnknownClientError",
    "InvalidSessionError",
    "InvalidCodeError",
    "ExpiredCodeError",
    "CodeReplayError",
    "ClientAuthError",
    "InvalidTokenError",
]
