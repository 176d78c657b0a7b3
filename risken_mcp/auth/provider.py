from typing import Optional

import httpx
from fastapi import Request

from ..config import OAuthConfig
from ..logging_util import get_logger, redact
from .errors import InternalError, UpstreamError
from .jwt_validator import JWTValidator, load_jwks
from .metadata import AuthorizationServerMetadata, load_metadata
from .session import SessionCodec

logger = get_logger(__name__)


class OAuthProvider:
    """
    Process-wide OAuth state: the IdP metadata, the JWT validator and the
    session codec. Built once at startup, initialized in the app lifespan and
    read-only afterwards. Handlers reach it through `request.app.state.oauth`.
    """

    def __init__(self, config: OAuthConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.session_codec = SessionCodec(config.jwt_signing_key)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.idp_timeout_seconds)
        self._metadata: Optional[AuthorizationServerMetadata] = None
        self._validator: Optional[JWTValidator] = None

    @property
    def initialized(self) -> bool:
        return self._metadata is not None and self._validator is not None

    @property
    def metadata(self) -> AuthorizationServerMetadata:
        if self._metadata is None:
            raise InternalError("Server not properly initialized")
        return self._metadata

    @property
    def validator(self) -> JWTValidator:
        if self._validator is None:
            raise InternalError("Server not properly initialized")
        return self._validator

    async def initialize(self) -> None:
        """Load the IdP metadata and JWKS. Any failure here must abort startup."""
        metadata = await load_metadata(self.config, self.http_client)
        keys = await load_jwks(metadata.jwks_uri, self.http_client, timeout=self.config.idp_timeout_seconds)
        if not len(keys):
            raise UpstreamError("JWKS contains no usable RSA signing keys")

        self._validator = JWTValidator(
            metadata,
            keys,
            leeway=self.config.jwt_leeway_seconds,
            http_client=self.http_client,
            refresh_on_unknown_kid=self.config.jwks_refresh_on_unknown_kid,
            timeout=self.config.idp_timeout_seconds,
        )
        self._metadata = metadata
        logger.info(
            f"MCP Resource Server initialized for Third-Party Authorization Flow: "
            f"idp_issuer={metadata.issuer}, key_count={len(keys)}"
        )

    async def exchange_code_for_token(self, idp_code: str) -> dict:
        """
        ## Upstream Token Exchange

        Trades the IdP's authorization code for the IdP access token using this
        server's own client credentials and the fixed callback redirect URI.
        """
        data = {
            "grant_type": "authorization_code",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": idp_code,
            "redirect_uri": self.config.callback_url,
        }
        try:
            response = await self.http_client.post(
                self.metadata.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
                timeout=self.config.idp_timeout_seconds,
            )
            response.raise_for_status()
            tokens = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Upstream token endpoint returned {e.response.status_code}: {e.response.text[:500]}")
            raise UpstreamError("Token exchange failed") from e
        except httpx.HTTPError as e:
            logger.error(f"Upstream token exchange request failed: {e!r}")
            raise UpstreamError("Token exchange failed") from e
        except ValueError as e:
            logger.error("Upstream token endpoint returned a non-JSON body")
            raise UpstreamError("Token exchange failed") from e

        if not isinstance(tokens, dict) or not isinstance(tokens.get("access_token"), str) or not tokens["access_token"]:
            logger.error("Upstream token response has no access_token")
            raise UpstreamError("Token exchange failed")

        logger.debug(f"Upstream token exchange succeeded: access_token={redact(tokens['access_token'])}")
        return tokens

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()


def get_oauth_provider(request: Request) -> OAuthProvider:
    provider = getattr(request.app.state, "oauth", None)
    if provider is None:
        logger.error("OAuth provider not found in app.state")
        raise InternalError("Server not properly initialized")
    return provider
