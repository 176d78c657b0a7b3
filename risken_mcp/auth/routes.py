"""
===========================================================================
OAUTH PROXY: THIRD-PARTY AUTHORIZATION FLOW
===========================================================================

### Requirement ###
-------------------------------
MCP clients expect the MCP server to be an OAuth 2.1 authorization server
with PKCE and Dynamic Client Registration. The users, however, authenticate
against an external OIDC Identity Provider (IdP) that knows nothing about MCP
clients and will only talk to this server's statically registered client.

### Solution and Mechanism ###
-----------------------------
1.  Discovery: `/.well-known/oauth-authorization-server` serves the IdP's
    metadata with the interactive endpoints rewritten to point here.

2.  DCR Interception: `/register` answers every registration with the same
    public client record. Nothing is stored.

3.  Authorization: `/authorize` validates the MCP client's request, signs the
    client's redirect URI, state and PKCE challenge into a JWT and sends the
    browser to the IdP with that JWT as `state`.

4.  Code Brokerage: `/oauth/callback` recovers the flow state from the JWT,
    wraps the IdP's code into a signed internal authorization code and sends
    the browser back to the MCP client.

5.  Token Exchange: `/token` verifies the internal code, PKCE, redirect URI
    and state, redeems the IdP code with this server's credentials and
    returns the IdP access token. That token is then checked against the
    IdP's JWKS on every `/mcp` request.

No step keeps server-side state, so any instance sharing `JWT_SIGNING_KEY`
can serve any step.
"""

import re
from typing import Annotated
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from fastapi import APIRouter, Depends, Form, Query, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from ..logging_util import get_logger, redact
from .errors import BadRequestError, SessionInvalidError, UnsupportedGrantTypeError
from .metadata import proxied_metadata
from .models import (
    AuthorizeRequest,
    CallbackRequest,
    ProtectedResourceMetadata,
    RegistrationRequest,
    RegistrationResponse,
    TokenRequest,
    TokenResponse,
)
from .pkce import verify_pkce
from .provider import OAuthProvider, get_oauth_provider
from .session import FlowState

logger = get_logger(__name__)

authRouter = APIRouter()

PUBLIC_CLIENT_ID = "mcp-public-client"
IDP_SCOPE = "openid"
METADATA_CACHE_HEADERS = {"Cache-Control": "public, max-age=3600"}
TOKEN_RESPONSE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_OAUTH_ERROR_CODE_RE = re.compile(r"^[a-z_]{1,64}$")

Provider = Annotated[OAuthProvider, Depends(get_oauth_provider)]


def build_url_with_params(base_uri: str, params: dict[str, str | None]) -> str:
    """
    Append or merge query parameters into base_uri. `None` values are skipped.
    """
    url = urlparse(base_uri)
    query = dict(parse_qsl(url.query, keep_blank_values=True))
    query.update({k: v for k, v in params.items() if v is not None})
    return urlunparse(url._replace(query=urlencode(query)))


@authRouter.get("/health", response_class=PlainTextResponse)
async def health():
    return "OK"


@authRouter.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource(provider: Provider):
    """
    ## Protected Resource Metadata (RFC 9728)

    Points MCP clients at this server as their authorization server. The
    `WWW-Authenticate` challenge on `/mcp` links here.
    """
    base = provider.config.mcp_server_url
    metadata = ProtectedResourceMetadata(resource=base, authorization_servers=[base])
    return JSONResponse(content=metadata.model_dump(), headers=METADATA_CACHE_HEADERS)


@authRouter.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server(provider: Provider):
    """
    ## Authorization Server Metadata (RFC 8414), proxied

    The IdP document loaded at startup, re-pointed at this server's
    `/authorize`, `/token` and `/register`.
    """
    document = proxied_metadata(provider.metadata, provider.config)
    logger.debug(f"Served cached authorization server metadata for issuer {provider.metadata.issuer}")
    return JSONResponse(content=document, headers=METADATA_CACHE_HEADERS)


@authRouter.post("/register", status_code=status.HTTP_201_CREATED)
async def register_client(payload: RegistrationRequest):
    """
    ## Dynamic Client Registration (RFC 7591), simplified

    Every MCP client is treated as the same public client. The request is
    validated and echoed back; no registry is kept.
    """
    logger.info(
        f"Dynamic Client Registration request received: client_name={payload.client_name!r}, "
        f"redirect_uris={payload.redirect_uris}"
    )
    response = RegistrationResponse(
        client_id=PUBLIC_CLIENT_ID,
        redirect_uris=payload.redirect_uris,
        client_name=payload.client_name,
        grant_types=payload.grant_types or ["authorization_code"],
        response_types=payload.response_types or ["code"],
        token_endpoint_auth_method=payload.token_endpoint_auth_method or "none",
        application_type=payload.application_type or "native",
    )
    logger.info(f"Client registered: client_id={response.client_id}, auth_method={response.token_endpoint_auth_method}")
    return JSONResponse(content=response.model_dump(), status_code=status.HTTP_201_CREATED)


@authRouter.get("/authorize")
async def authorize(params: Annotated[AuthorizeRequest, Query()], provider: Provider):
    """
    ## Authorization Endpoint

    Received -> Validated -> SessionStored -> RedirectedToIdP.

    Validation happens while binding `AuthorizeRequest` (400 on failure). The
    client's state, PKCE challenge and redirect URI are signed into the flow
    state JWT, which becomes the `state` sent to the IdP together with this
    server's own client id and callback.
    """
    logger.info(
        f"Authorization request received: client_id={params.client_id}, "
        f"redirect_uri={params.redirect_uri}, code_challenge_method={params.code_challenge_method}"
    )

    flow = FlowState(
        state=params.state,
        code_challenge=params.code_challenge,
        redirect_uri=params.redirect_uri,
        client_id=params.client_id,
    )
    internal_state = provider.session_codec.encode(flow)

    idp_url = build_url_with_params(provider.metadata.authorization_endpoint, {
        "response_type": "code",
        "client_id": provider.config.client_id,
        "redirect_uri": provider.config.callback_url,
        "state": internal_state,
        "scope": IDP_SCOPE,
    })

    logger.info(f"Redirecting to IdP for authorization: {provider.metadata.authorization_endpoint}")
    return RedirectResponse(url=idp_url, status_code=status.HTTP_302_FOUND)


@authRouter.get("/oauth/callback")
async def oauth_callback(params: Annotated[CallbackRequest, Query()], provider: Provider):
    """
    ## Callback Endpoint (Code Brokerage)

    Received -> Decoded -> CodeIssued -> RedirectedToClient, with the
    IdPError and InvalidSession branches answering 400.

    The IdP's code is never shown to the MCP client as-is: it is wrapped,
    together with the recovered flow state, into a signed internal
    authorization code. The client's original `state` is only echoed when it
    was non-empty.
    """
    if params.error:
        logger.error(f"OAuth error from IdP: error={params.error!r}, error_description={params.error_description!r}")
        error = params.error if _OAUTH_ERROR_CODE_RE.match(params.error) else "access_denied"
        raise BadRequestError("Authorization failed at the identity provider", error=error)

    if not params.code:
        logger.warning("Callback received without code")
        raise BadRequestError("Missing code parameter")

    flow = provider.session_codec.decode(params.state)
    if flow is None:
        logger.error(f"Invalid or expired state parameter: {redact(params.state)}")
        raise SessionInvalidError("Invalid or expired session", error="invalid_request")

    internal_code = provider.session_codec.encode_auth_code(flow, params.code)

    redirect_url = build_url_with_params(flow.redirect_uri, {
        "code": internal_code,
        "state": flow.state or None,
    })
    logger.info(f"Redirecting back to MCP client: client_id={flow.client_id}, redirect_uri={flow.redirect_uri}")
    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


def verify_state(session_state: str, provided_state: str) -> bool:
    """
    A flow started without a state must be redeemed without one; a flow
    started with a state must be redeemed with the same state.
    """
    if not session_state:
        return provided_state == ""
    return session_state == provided_state


@authRouter.post("/token")
async def token_exchange(params: Annotated[TokenRequest, Form()], provider: Provider):
    """
    ## Token Endpoint

    Received -> Validated -> CodeDecoded -> PKCEVerified ->
    RedirectURIVerified -> StateVerified -> Exchanged -> Issued.

    Every check short-circuits with a 400; only a failed upstream exchange
    answers 500. The PKCE failure message is the same whichever half is
    wrong.
    """
    logger.info(
        f"Token request received: grant_type={params.grant_type}, client_id={params.client_id}, "
        f"redirect_uri={params.redirect_uri}"
    )

    if params.grant_type != "authorization_code":
        logger.warning(f"Unsupported grant type: {params.grant_type}")
        raise UnsupportedGrantTypeError()

    grant = provider.session_codec.decode_auth_code(params.code)

    if not verify_pkce(grant.code_challenge, params.code_verifier):
        logger.error(f"PKCE verification failed: code_verifier_length={len(params.code_verifier)}")
        raise SessionInvalidError("PKCE verification failed")

    if grant.redirect_uri != params.redirect_uri:
        logger.error(f"Redirect URI mismatch: expected={grant.redirect_uri}, provided={params.redirect_uri}")
        raise SessionInvalidError("Redirect URI mismatch")

    if not verify_state(grant.state, params.state):
        logger.error("State verification failed")
        raise SessionInvalidError("State verification failed")

    logger.info(f"PKCE verification successful for client_id={grant.client_id}")

    upstream = await provider.exchange_code_for_token(grant.idp_code)

    token = TokenResponse(access_token=upstream["access_token"])
    if isinstance(upstream.get("scope"), str) and upstream["scope"]:
        token = token.model_copy(update={"scope": upstream["scope"]})

    logger.info(f"Token issued successfully: redirect_uri={params.redirect_uri}")
    return JSONResponse(content=token.model_dump(), headers=TOKEN_RESPONSE_HEADERS)
