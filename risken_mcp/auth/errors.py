"""
Error taxonomy of the OAuth proxy.

Every `OAuthError` carries the HTTP status, the RFC 6749 `error` code and a
short, safe description that may be shown to the caller. Anything more
specific (which claim failed, what the IdP answered) goes to the log only.
"""

from fastapi import status


class OAuthError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    error: str = "invalid_request"
    description: str = "Invalid request"

    def __init__(self, description: str | None = None, *, error: str | None = None, status_code: int | None = None):
        if description is not None:
            self.description = description
        if error is not None:
            self.error = error
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.description}


class BadRequestError(OAuthError):
    """Malformed or missing OAuth parameters."""


class UnsupportedGrantTypeError(BadRequestError):
    error = "unsupported_grant_type"
    description = "Only the authorization_code grant is supported"


class SessionInvalidError(OAuthError):
    """Expired, forged or undecodable flow state or authorization code."""

    error = "invalid_grant"
    description = "Invalid or expired session"


class UnauthorizedError(OAuthError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "invalid_token"
    description = "Invalid or expired token"


class UpstreamError(OAuthError):
    """The IdP was unreachable or answered with an error."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "server_error"
    description = "Upstream identity provider error"


class InternalError(OAuthError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "server_error"
    description = "Internal server error"


class MetadataError(UpstreamError):
    """The IdP discovery document is missing a required field."""


class InvalidTokenError(Exception):
    """
    A bearer token failed validation.

    `str(exc)` holds the internal reason for logging; callers answer with a
    generic 401 regardless of it.
    """


class KeyNotFoundError(InvalidTokenError):
    """The token's `kid` is absent or does not match any loaded signing key."""
