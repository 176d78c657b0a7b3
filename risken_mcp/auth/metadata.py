"""
## IdP Authorization Server Metadata (RFC 8414)

The IdP's discovery document is fetched once at startup and cached on the
`OAuthProvider`. MCP requires a few things many IdPs do not advertise (PKCE,
public clients, dynamic client registration), so the loader fills those in
before the document is ever served back to MCP clients.
"""

import httpx
from pydantic import BaseModel, ConfigDict

from ..config import OAuthConfig, is_absolute_url
from ..logging_util import get_logger
from .errors import MetadataError, UpstreamError

logger = get_logger(__name__)

REQUIRED_FIELDS = ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri")
DEFAULT_SCOPES = ["openid", "email", "profile"]
DEFAULT_CODE_CHALLENGE_METHODS = ["S256"]


class AuthorizationServerMetadata(BaseModel):
    # extra="allow" keeps IdP-specific fields so the proxied document stays faithful
    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: str = ""
    authorization_endpoint: str = ""
    token_endpoint: str = ""
    jwks_uri: str = ""
    registration_endpoint: str = ""
    scopes_supported: list[str] = []
    response_types_supported: list[str] = []
    grant_types_supported: list[str] = []
    token_endpoint_auth_methods_supported: list[str] = []
    revocation_endpoint: str | None = None
    introspection_endpoint: str | None = None
    code_challenge_methods_supported: list[str] = []


async def fetch_metadata(discovery_url: str, http_client: httpx.AsyncClient, timeout: float = 10.0) -> dict:
    try:
        response = await http_client.get(discovery_url, timeout=timeout)
    except httpx.HTTPError as e:
        raise UpstreamError(f"Failed to fetch discovery document: {e}") from e

    if response.status_code != 200:
        raise UpstreamError(f"Discovery failed with status: {response.status_code}")

    try:
        document = response.json()
    except ValueError as e:
        raise UpstreamError("Discovery document is not valid JSON") from e
    if not isinstance(document, dict):
        raise UpstreamError("Discovery document is not a JSON object")

    logger.debug(f"Fetched authorization server metadata from {discovery_url}")
    return document


def normalize_metadata(document: dict, config: OAuthConfig) -> AuthorizationServerMetadata:
    """
    Validate the required endpoints and apply the MCP defaults:

    - `registration_endpoint`: this server's `/register` when the IdP has none
    - `code_challenge_methods_supported`: `["S256"]` when empty
    - `token_endpoint_auth_methods_supported`: always contains `"none"`
    - `scopes_supported`: `["openid", "email", "profile"]` when empty
    """
    for field in REQUIRED_FIELDS:
        value = document.get(field)
        if not value or not isinstance(value, str):
            raise MetadataError(f"IdP metadata missing {field}")
        if not is_absolute_url(value):
            raise MetadataError(f"IdP metadata {field} is not an absolute URL: {value}")

    document = dict(document)

    if not document.get("registration_endpoint"):
        document["registration_endpoint"] = f"{config.mcp_server_url}/register"
        logger.info(f"Added MCP server DCR endpoint: {document['registration_endpoint']}")

    if not document.get("code_challenge_methods_supported"):
        document["code_challenge_methods_supported"] = list(DEFAULT_CODE_CHALLENGE_METHODS)
        logger.info("Added PKCE support: S256")

    auth_methods = list(document.get("token_endpoint_auth_methods_supported") or [])
    if "none" not in auth_methods:
        auth_methods.append("none")
        logger.info("Added public client support")
    document["token_endpoint_auth_methods_supported"] = auth_methods

    if not document.get("scopes_supported"):
        document["scopes_supported"] = list(DEFAULT_SCOPES)
        logger.info(f"Added default scopes support: {DEFAULT_SCOPES}")

    return AuthorizationServerMetadata.model_validate(document)


async def load_metadata(config: OAuthConfig, http_client: httpx.AsyncClient) -> AuthorizationServerMetadata:
    document = await fetch_metadata(config.authz_metadata_endpoint, http_client, timeout=config.idp_timeout_seconds)
    metadata = normalize_metadata(document, config)
    logger.info(
        f"Loaded authorization server metadata from IdP: issuer={metadata.issuer}, "
        f"authorization_endpoint={metadata.authorization_endpoint}, "
        f"token_endpoint={metadata.token_endpoint}, "
        f"registration_endpoint={metadata.registration_endpoint}"
    )
    return metadata


def proxied_metadata(metadata: AuthorizationServerMetadata, config: OAuthConfig) -> dict:
    """
    The RFC 8414 document served to MCP clients: the IdP's metadata, but with
    the issuer and the interactive endpoints pointing back at this server.
    `jwks_uri` stays the IdP's, since access tokens are IdP-signed.
    """
    document = metadata.model_dump(exclude_none=True)
    base = config.mcp_server_url
    document.update({
        "issuer": base,
        "authorization_endpoint": f"{base}/authorize",
        "token_endpoint": f"{base}/token",
        "registration_endpoint": f"{base}/register",
    })
    return document
