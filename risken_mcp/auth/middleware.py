from typing import Awaitable, Callable, Optional

import anyio
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .. import jsonrpc
from ..context import with_risken_client
from ..logging_util import get_logger
from ..risken_client import RiskenAPIError, RiskenClient, create_and_validate_risken_client
from .errors import InternalError, InvalidTokenError
from .jwt_validator import TokenClaims
from .provider import OAuthProvider

logger = get_logger(__name__)

RISKEN_TOKEN_HEADER = "RISKEN-ACCESS-TOKEN"

ClientFactory = Callable[[Request, TokenClaims], Awaitable[RiskenClient]]


def extract_bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def risken_client_factory(risken_url: str) -> ClientFactory:
    """Default factory: sign in to RISKEN with the caller's `RISKEN-ACCESS-TOKEN`."""

    async def factory(request: Request, claims: TokenClaims) -> RiskenClient:
        return await create_and_validate_risken_client(risken_url, request.headers.get(RISKEN_TOKEN_HEADER, ""))

    return factory


class _ClientDisconnected(Exception):
    pass


class _BodyTooLarge(Exception):
    def __init__(self, more_body: bool):
        super().__init__()
        self.more_body = more_body


class ProtectedResourceMiddleware:
    """
    Guards the MCP transport endpoint with IdP-issued bearer tokens.

    Only requests for `endpoint_path` are checked; everything else (OAuth
    endpoints, discovery, health) passes through untouched. For a guarded
    request the JSON-RPC id is read first so every rejection is a JSON-RPC
    shaped error, then the bearer token is validated, then a RISKEN client is
    built for the caller and put into the request state before delegating.

    Every 401 carries the RFC 9728 `WWW-Authenticate` challenge pointing at
    the protected resource metadata.
    """

    def __init__(
        self,
        app: ASGIApp,
        provider: OAuthProvider,
        client_factory: ClientFactory,
        endpoint_path: Optional[str] = None,
        max_body_size: int = 4 * 1024 * 1024,
        drain_timeout_seconds: float = 1.0,
    ):
        self.app = app
        self.provider = provider
        self.client_factory = client_factory
        path = (endpoint_path or provider.config.mcp_endpoint_path).rstrip("/") or "/"
        self.protected_paths = {path, path + "/"} if path != "/" else {"/"}
        self.max_body_size = max_body_size
        self.drain_timeout_seconds = drain_timeout_seconds

    @property
    def challenge_headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": f'Bearer resource_metadata="{self.provider.config.resource_metadata_url}"'}

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] not in self.protected_paths:
            await self.app(scope, receive, send)
            return

        try:
            body = await self._read_body(receive)
        except _ClientDisconnected:
            logger.debug("Client disconnected before the request body was read")
            return
        except _BodyTooLarge as e:
            if e.more_body:
                await self._drain_body(receive)
            response = jsonrpc.error_response(None, jsonrpc.INVALID_REQUEST, "Request body too large", 413)
            await response(scope, receive, send)
            return

        try:
            request_id = jsonrpc.parse_request_id(body)
        except jsonrpc.JSONRPCParseError as e:
            logger.warning(f"Rejected MCP request with unparsable body: {e}")
            response = jsonrpc.error_response(None, jsonrpc.PARSE_ERROR, "Parse error(requestID)", 400)
            await response(scope, receive, send)
            return

        headers = Headers(scope=scope)
        token = extract_bearer_token(headers.get("authorization"))
        if not token:
            logger.info(f"Request rejected: no Bearer token for {scope['path']}")
            response = jsonrpc.error_response(
                request_id, jsonrpc.UNAUTHORIZED, "Bearer token required", 401, headers=self.challenge_headers
            )
            await response(scope, receive, send)
            return

        try:
            claims = await self.provider.validator.validate(token)
        except InternalError as e:
            logger.error(f"Cannot validate bearer token: {e}")
            response = jsonrpc.error_response(request_id, jsonrpc.INTERNAL_ERROR, "Internal error", 500)
            await response(scope, receive, send)
            return
        except InvalidTokenError as e:
            # the reason stays in the log; the caller only learns the token was refused
            logger.info(f"Request rejected: invalid bearer token ({type(e).__name__}: {e})")
            response = jsonrpc.error_response(
                request_id, jsonrpc.UNAUTHORIZED, "Invalid JWT token", 401, headers=self.challenge_headers
            )
            await response(scope, receive, send)
            return

        try:
            client = await self.client_factory(Request(scope), claims)
        except RiskenAPIError as e:
            logger.warning(f"Failed to create RISKEN client for subject={claims.subject}: {e}")
            response = jsonrpc.error_response(
                request_id, jsonrpc.INTERNAL_ERROR, "Failed to create RISKEN client", 401
            )
            await response(scope, receive, send)
            return

        with_risken_client(scope, client, claims)
        logger.debug(f"JWT authenticated request: user={claims.email}, username={claims.username}, scope={claims.scope}")

        await self.app(scope, self._replay(body, receive), send)

    async def _read_body(self, receive: Receive) -> bytes:
        chunks: list[bytes] = []
        total = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                raise _ClientDisconnected()
            chunk = message.get("body", b"") or b""
            total += len(chunk)
            if total > self.max_body_size:
                raise _BodyTooLarge(bool(message.get("more_body", False)))
            chunks.append(chunk)
            more_body = bool(message.get("more_body", False))
        return b"".join(chunks)

    async def _drain_body(self, receive: Receive) -> None:
        """Best-effort drain so the client reads the 413 instead of a reset."""
        with anyio.move_on_after(self.drain_timeout_seconds):
            while True:
                message = await receive()
                if message["type"] == "http.disconnect" or not message.get("more_body", False):
                    return

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        sent = False

        async def replay_receive() -> Message:
            nonlocal sent
            if not sent:
                sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay_receive
