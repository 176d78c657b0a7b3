import logging
import time
from typing import Optional

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .logging_util import get_logger

logger = get_logger(__name__)

QUIET_PATHS = frozenset({"/health"})


def get_client_ip(scope: Scope) -> Optional[str]:
    """First hop of `X-Forwarded-For` when present, otherwise the peer address."""
    headers = Headers(scope=scope)
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    client = scope.get("client")
    return client[0] if client else None


class AccessLogMiddleware:
    """
    One log line per HTTP request: method, path, status, duration, client IP
    and the MCP session id (request header, or the one the server assigned in
    its response). Health checks are logged at DEBUG.
    """

    def __init__(self, app: ASGIApp, quiet_paths: frozenset[str] = QUIET_PATHS):
        self.app = app
        self.quiet_paths = quiet_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500
        session_id = Headers(scope=scope).get("mcp-session-id")

        async def logging_send(message: Message) -> None:
            nonlocal status_code, session_id
            if message["type"] == "http.response.start":
                status_code = message["status"]
                if not session_id:
                    session_id = Headers(raw=message.get("headers", [])).get("mcp-session-id")
            await send(message)

        try:
            await self.app(scope, receive, logging_send)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            level = logging.DEBUG if scope["path"] in self.quiet_paths else logging.INFO
            logger.log(
                level,
                f"{scope['method']} {scope['path']} status={status_code} "
                f"duration={duration_ms:.1f}ms client_ip={get_client_ip(scope) or '-'} "
                f"mcp_session_id={session_id or '-'}",
            )
