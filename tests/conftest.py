"""
Shared fixtures.

The IdP is faked with `httpx.MockTransport` (see `tests/idp.py`): it serves a
discovery document, a JWKS with one RSA key and a token endpoint. Access
tokens for the protected endpoint are minted with `make_token`, signed by the
same RSA key the fake JWKS publishes.
"""

import time

import httpx
import jwt
import pytest

from risken_mcp.auth.provider import OAuthProvider
from risken_mcp.config import OAuthConfig
from risken_mcp.http_server import create_app
from risken_mcp.risken_client import RiskenAPIError, RiskenClient

from .idp import DISCOVERY_URL, IDP_ISSUER, SERVER_URL, TEST_KID, FakeIdP, generate_rsa_key, public_jwk


@pytest.fixture(scope="session")
def rsa_key():
    return generate_rsa_key()


@pytest.fixture
def fake_idp(rsa_key):
    return FakeIdP({"keys": [public_jwk(rsa_key)]})


@pytest.fixture
def oauth_config():
    return OAuthConfig(
        mcp_server_url=SERVER_URL,
        authz_metadata_endpoint=DISCOVERY_URL,
        client_id="mcp-server-client",
        client_secret="mcp-server-secret",
        jwt_signing_key="test-signing-key-that-is-long-enough",
    )


@pytest.fixture
async def idp_http_client(fake_idp):
    async with httpx.AsyncClient(transport=fake_idp.transport) as client:
        yield client


@pytest.fixture
async def provider(oauth_config, idp_http_client):
    provider = OAuthProvider(oauth_config, http_client=idp_http_client)
    await provider.initialize()
    return provider


@pytest.fixture
def make_token(rsa_key):
    """
    Factory for IdP-style access tokens.

    Usage:
        token = make_token(sub="alice", email="alice@example.com")
        token = make_token(exp_delta=-60)            # expired
        token = make_token(kid="rotated-key")        # unknown kid
    """

    def _make_token(
        key=None,
        kid: str | None = TEST_KID,
        algorithm: str = "RS256",
        issuer: str = IDP_ISSUER,
        exp_delta: int = 3600,
        include_exp: bool = True,
        **claims,
    ) -> str:
        now = int(time.time())
        payload = {"iss": issuer, "sub": "user-123", "iat": now}
        if include_exp:
            payload["exp"] = now + exp_delta
        payload.update(claims)
        headers = {"kid": kid} if kid is not None else None
        return jwt.encode(payload, key or rsa_key, algorithm=algorithm, headers=headers)

    return _make_token


@pytest.fixture
def risken_client_factory():
    """Stands in for the RISKEN sign-in: header value "bad" fails, anything else works."""

    async def _factory(request, claims):
        token = request.headers.get("RISKEN-ACCESS-TOKEN", "")
        if token == "bad":
            raise RiskenAPIError("invalid project")
        client = RiskenClient(token or "risken-token", api_endpoint="https://risken.example.com")
        client.project_id = 1001
        return client

    return _factory


@pytest.fixture
def app(provider, risken_client_factory):
    return create_app(provider=provider, client_factory=risken_client_factory)


@pytest.fixture
async def client(app):
    # lifespan is not run by ASGITransport; the provider fixture is already initialized
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
        yield client
