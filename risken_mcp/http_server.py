import contextlib
import sys
import threading
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastmcp import FastMCP

from .auth.middleware import ClientFactory, ProtectedResourceMiddleware, risken_client_factory
from .auth.provider import OAuthProvider
from .auth.routes import authRouter
from .config import ConfigError, OAuthConfig, Settings
from .http import AccessLogMiddleware
from .logging_util import configure_logging, get_logger
from .utils.exceptions import register_exception_handlers

logger = get_logger(__name__)

STARTUP_FAILURE = 3


def create_app(
    config: Optional[OAuthConfig] = None,
    provider: Optional[OAuthProvider] = None,
    client_factory: Optional[ClientFactory] = None,
    mcp_server: Optional[FastMCP] = None,
    risken_url: Optional[str] = None,
) -> FastAPI:
    """
    Build the ASGI application: OAuth proxy routes, the protected MCP
    transport and the middleware stack around them.

    The provider is initialized in the lifespan unless it already is, so
    tests can hand in a pre-initialized one and skip the IdP round trips.
    """
    if provider is None:
        provider = OAuthProvider(config or OAuthConfig.from_settings())
    config = provider.config

    if mcp_server is None:
        from .mcp_instance import mcp as mcp_server

    if client_factory is None:
        client_factory = risken_client_factory(risken_url or Settings.RISKEN_URL)

    mcp_app = mcp_server.http_app(path=config.mcp_endpoint_path, transport="streamable-http")

    @contextlib.asynccontextmanager
    async def oauth_lifespan(app: FastAPI):
        if not provider.initialized:
            # raising here aborts startup
            await provider.initialize()
        try:
            yield
        finally:
            await provider.aclose()

    @contextlib.asynccontextmanager
    async def combined_lifespan(app: FastAPI):
        async with oauth_lifespan(app):
            async with mcp_app.lifespan(app):
                yield

    app = FastAPI(lifespan=combined_lifespan)
    app.state.oauth = provider

    register_exception_handlers(app)
    app.include_router(authRouter, prefix="")
    app.add_middleware(
        ProtectedResourceMiddleware,
        provider=provider,
        client_factory=client_factory,
        endpoint_path=config.mcp_endpoint_path,
    )
    app.add_middleware(AccessLogMiddleware)
    # exact path only, not a catch-all mount
    app.add_route(config.mcp_endpoint_path, mcp_app, include_in_schema=False)

    logger.info(f"MCP endpoint: {config.mcp_server_url}{config.mcp_endpoint_path}")
    return app


class HTTPServer:
    """Thin uvicorn wrapper whose `shutdown()` may be called from another thread."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8080):
        self.app = app
        self.host = host
        self.port = port
        self._server: Optional[uvicorn.Server] = None
        self._lock = threading.Lock()
        self._stopped = False

    def _build(self) -> Optional[uvicorn.Server]:
        with self._lock:
            if self._stopped:
                return None
            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                lifespan="on",
                # streaming MCP connections stay idle between messages
                timeout_keep_alive=300,
                log_config=None,
            )
            self._server = uvicorn.Server(config)
            return self._server

    def start(self) -> bool:
        """Serve until shut down. Returns False when startup failed."""
        server = self._build()
        if server is None:
            logger.info("Server shut down before it started")
            return True
        logger.info(f"Starting MCP server on {self.host}:{self.port}")
        server.run()
        return server.started

    def shutdown(self) -> None:
        with self._lock:
            self._stopped = True
            if self._server is not None:
                logger.info("Shutting down MCP server")
                self._server.should_exit = True


def main():
    configure_logging(
        level=Settings.LOG_LEVEL,
        console_level=Settings.LOG_LEVEL,
        file_level="DEBUG" if Settings.DEBUG else Settings.LOG_LEVEL,
        log_file=Settings.LOG_FILE,
        max_bytes=5 * 1024 * 1024,  # 5 MB
        backup_count=3,
    )

    try:
        config = OAuthConfig.from_settings()
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    app = create_app(config)
    if not HTTPServer(app, port=Settings.PORT).start():
        logger.error("Failed to start MCP server")
        sys.exit(STARTUP_FAILURE)


if __name__ == "__main__":
    main()
