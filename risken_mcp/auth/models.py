"""
Typed OAuth request/response shapes.

The inbound models are bound by FastAPI (`Query()`, `Form()`, JSON body), so
a failed constraint surfaces as `RequestValidationError`, which the
application turns into a 400 `invalid_request`.
"""

import time
from typing import Annotated, Literal
from urllib.parse import urlparse

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .pkce import is_valid_code_verifier


def _check_redirect_uri(value: str) -> str:
    parsed = urlparse(value)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError("must be an absolute URL")
    return value


def _check_code_verifier(value: str) -> str:
    if not is_valid_code_verifier(value):
        raise ValueError("must be 43-128 characters of [A-Za-z0-9-._~]")
    return value


RedirectURI = Annotated[str, AfterValidator(_check_redirect_uri)]
NonEmpty = Annotated[str, Field(min_length=1)]


class AuthorizeRequest(BaseModel):
    response_type: Literal["code"]
    client_id: NonEmpty
    redirect_uri: RedirectURI
    state: NonEmpty
    code_challenge: NonEmpty
    code_challenge_method: Literal["S256"]
    scope: str = ""


class CallbackRequest(BaseModel):
    code: str = ""
    state: str = ""
    error: str = ""
    error_description: str = ""


class TokenRequest(BaseModel):
    grant_type: NonEmpty
    code: NonEmpty
    redirect_uri: RedirectURI
    client_id: NonEmpty
    code_verifier: Annotated[str, AfterValidator(_check_code_verifier)]
    state: str = ""


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 3600
    scope: str = "openid profile email"


class RegistrationRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    redirect_uris: Annotated[list[RedirectURI], Field(min_length=1)]
    client_name: str = ""
    scope: str = ""
    grant_types: list[str] = []
    response_types: list[str] = []
    token_endpoint_auth_method: str = ""
    application_type: str = ""


class RegistrationResponse(BaseModel):
    client_id: str
    client_id_issued_at: int = Field(default_factory=lambda: int(time.time()))
    redirect_uris: list[str]
    client_name: str = ""
    grant_types: list[str]
    response_types: list[str]
    token_endpoint_auth_method: str
    application_type: str


class ProtectedResourceMetadata(BaseModel):
    resource: str
    authorization_servers: list[str]
    scopes_supported: list[str] = ["openid"]
    bearer_methods_supported: list[str] = ["header"]
