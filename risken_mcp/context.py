"""
Per-request identity handed from the protected-resource middleware to the MCP
tools. Values live in the ASGI scope's `state`, which is what
`request.state` reads, so fastmcp tools can reach them through
`get_http_request()`.
"""

from typing import Optional

from fastmcp.server.dependencies import get_http_request
from starlette.requests import Request
from starlette.types import Scope

from .auth.jwt_validator import TokenClaims
from .risken_client import RiskenClient

RISKEN_CLIENT_STATE_KEY = "risken_client"
TOKEN_CLAIMS_STATE_KEY = "token_claims"


def with_risken_client(scope: Scope, client: RiskenClient, claims: Optional[TokenClaims] = None) -> Scope:
    state = scope.setdefault("state", {})
    state[RISKEN_CLIENT_STATE_KEY] = client
    if claims is not None:
        state[TOKEN_CLAIMS_STATE_KEY] = claims
    return scope


def get_risken_client(request: Optional[Request] = None) -> RiskenClient:
    if request is None:
        request = get_http_request()
    client = getattr(request.state, RISKEN_CLIENT_STATE_KEY, None)
    if client is None:
        raise RuntimeError("no RISKEN client found in request state")
    return client


def get_token_claims(request: Optional[Request] = None) -> Optional[TokenClaims]:
    if request is None:
        request = get_http_request()
    return getattr(request.state, TOKEN_CLAIMS_STATE_KEY, None)
