import json
import logging

import httpx
import pytest
from starlette.applications import Starlette
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from risken_mcp.auth.middleware import ProtectedResourceMiddleware, extract_bearer_token
from risken_mcp.http import AccessLogMiddleware

from .idp import SERVER_URL, generate_rsa_key

RESOURCE_METADATA_CHALLENGE = f'Bearer resource_metadata="{SERVER_URL}/.well-known/oauth-protected-resource"'
INITIALIZE = {"jsonrpc": "2.0", "id": 7, "method": "initialize", "params": {}}


async def echo(request):
    body = await request.body()
    return JSONResponse({
        "body": body.decode(),
        "project_id": request.state.risken_client.project_id,
        "subject": request.state.token_claims.subject,
    })


async def public(request):
    return PlainTextResponse("public")


downstream = Starlette(routes=[
    Route("/mcp", echo, methods=["GET", "POST"]),
    Route("/public", public),
])


@pytest.fixture
async def guarded(provider, risken_client_factory):
    app = ProtectedResourceMiddleware(downstream, provider=provider, client_factory=risken_client_factory)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
        yield client


def assert_unauthorized(response, request_id=7, code=-32001):
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == RESOURCE_METADATA_CHALLENGE
    body = response.json()
    assert body["jsonrpc"] == "2.0"
    assert body["id"] == request_id
    assert body["error"]["code"] == code


class TestExtractBearerToken:

    @pytest.mark.parametrize("header,expected", [
        ("Bearer abc.def", "abc.def"),
        ("bearer abc", "abc"),
        ("Basic dXNlcjpwYXNz", ""),
        ("Bearer", ""),
        ("", ""),
        (None, ""),
    ])
    def test_extract(self, header, expected):
        assert extract_bearer_token(header) == expected


class TestProtectedResourceMiddleware:

    async def test_other_paths_pass_through(self, guarded):
        response = await guarded.get("/public")
        assert response.status_code == 200
        assert response.text == "public"

    async def test_missing_token(self, guarded):
        response = await guarded.post("/mcp", json=INITIALIZE)
        assert_unauthorized(response)
        assert response.json()["error"]["message"] == "Bearer token required"

    async def test_trailing_slash_is_guarded(self, guarded):
        response = await guarded.post("/mcp/", json=INITIALIZE)
        assert_unauthorized(response)

    async def test_wrongly_signed_token(self, guarded, make_token):
        token = make_token(key=generate_rsa_key())
        response = await guarded.post("/mcp", json=INITIALIZE, headers={"Authorization": f"Bearer {token}"})
        assert_unauthorized(response)
        assert response.json()["error"]["message"] == "Invalid JWT token"

    async def test_expired_token(self, guarded, make_token):
        token = make_token(exp_delta=-60)
        response = await guarded.post("/mcp", json=INITIALIZE, headers={"Authorization": f"Bearer {token}"})
        assert_unauthorized(response)

    async def test_string_id_is_echoed(self, guarded):
        response = await guarded.post("/mcp", json={**INITIALIZE, "id": "req-1"})
        assert_unauthorized(response, request_id="req-1")

    async def test_get_without_body_has_null_id(self, guarded):
        response = await guarded.get("/mcp")
        assert_unauthorized(response, request_id=None)

    async def test_unparsable_body(self, guarded, make_token):
        response = await guarded.post(
            "/mcp",
            content=b"{not json",
            headers={"Authorization": f"Bearer {make_token()}", "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["id"] is None
        assert body["error"]["code"] == -32700

    async def test_authenticated_request_reaches_downstream(self, guarded, make_token):
        token = make_token(sub="alice")
        response = await guarded.post(
            "/mcp",
            json=INITIALIZE,
            headers={"Authorization": f"Bearer {token}", "RISKEN-ACCESS-TOKEN": "risken-token"},
        )
        assert response.status_code == 200
        body = response.json()
        assert json.loads(body["body"]) == INITIALIZE
        assert body["project_id"] == 1001
        assert body["subject"] == "alice"

    async def test_risken_signin_failure(self, guarded, make_token):
        response = await guarded.post(
            "/mcp",
            json=INITIALIZE,
            headers={"Authorization": f"Bearer {make_token()}", "RISKEN-ACCESS-TOKEN": "bad"},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["id"] == 7
        assert body["error"] == {"code": -32603, "message": "Failed to create RISKEN client"}

    async def test_body_too_large(self, provider, risken_client_factory, make_token):
        app = ProtectedResourceMiddleware(
            downstream, provider=provider, client_factory=risken_client_factory, max_body_size=16
        )
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
            response = await client.post("/mcp", json=INITIALIZE, headers={"Authorization": f"Bearer {make_token()}"})
        assert response.status_code == 413
        assert response.json()["error"]["code"] == -32600

    async def test_custom_endpoint_path(self, provider, risken_client_factory):
        app = ProtectedResourceMiddleware(
            downstream, provider=provider, client_factory=risken_client_factory, endpoint_path="/public"
        )
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
            response = await client.get("/public")
        assert_unauthorized(response, request_id=None)


class TestApplicationStack:

    async def test_mcp_endpoint_requires_token(self, client):
        response = await client.post("/mcp", json=INITIALIZE)
        assert_unauthorized(response)

    async def test_unknown_path_is_not_found(self, client):
        response = await client.get("/does-not-exist")
        assert response.status_code == 404


class TestAccessLogMiddleware:

    async def test_logs_request(self, caplog):
        app = AccessLogMiddleware(downstream)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
            with caplog.at_level(logging.DEBUG, logger="risken_mcp.http"):
                await client.get("/public", headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "Mcp-Session-Id": "s-1"})

        records = [r for r in caplog.records if r.name == "risken_mcp.http"]
        assert len(records) == 1
        assert records[0].levelno == logging.INFO
        message = records[0].getMessage()
        assert "GET /public status=200" in message
        assert "client_ip=203.0.113.9" in message
        assert "mcp_session_id=s-1" in message

    async def test_health_is_logged_at_debug(self, caplog):
        app = AccessLogMiddleware(downstream)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url=SERVER_URL) as client:
            with caplog.at_level(logging.DEBUG, logger="risken_mcp.http"):
                await client.get("/health")

        records = [r for r in caplog.records if r.name == "risken_mcp.http"]
        assert [r.levelno for r in records] == [logging.DEBUG]
        assert "status=404" in records[0].getMessage()
