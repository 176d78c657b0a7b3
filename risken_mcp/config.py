import os
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:

    # General Settings
    RISKEN_URL = os.getenv("RISKEN_URL", "https://api.risken.io")
    MCP_ENDPOINT_PATH = os.getenv("MCP_ENDPOINT_PATH", "/mcp")
    PORT = int(os.getenv("PORT") or 8080)
    DEBUG = _env_flag("DEBUG")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG" if DEBUG else "INFO")
    LOG_FILE = os.getenv("LOG_FILE")

    # OAuth (Third-Party Authorization Flow)
    MCP_SERVER_URL = os.getenv("MCP_SERVER_URL", "")
    AUTHZ_METADATA_ENDPOINT = os.getenv("AUTHZ_METADATA_ENDPOINT", "")
    CLIENT_ID = os.getenv("CLIENT_ID", "")
    CLIENT_SECRET = os.getenv("CLIENT_SECRET", "")
    JWT_SIGNING_KEY = os.getenv("JWT_SIGNING_KEY", "")

    ## Token validation
    IDP_TIMEOUT_SECONDS = float(os.getenv("IDP_TIMEOUT_SECONDS") or 10)
    JWT_LEEWAY_SECONDS = int(os.getenv("JWT_LEEWAY_SECONDS") or 0)
    JWKS_REFRESH_ON_UNKNOWN_KID = _env_flag("JWKS_REFRESH_ON_UNKNOWN_KID")


class ConfigError(ValueError):
    """Raised when the OAuth configuration is incomplete or malformed."""


def is_absolute_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme in ("http", "https") and parsed.netloc)


class OAuthConfig(BaseModel):
    """
    Read-only configuration of the OAuth proxy.

    `mcp_server_url` is this server's public URL, `authz_metadata_endpoint` is
    the IdP discovery document, `client_id`/`client_secret` are the credentials
    this server uses when it acts as a client of the IdP, and
    `jwt_signing_key` signs the flow state and internal authorization codes.
    """

    model_config = ConfigDict(frozen=True)

    mcp_server_url: str
    authz_metadata_endpoint: str
    client_id: str
    client_secret: str
    jwt_signing_key: str
    mcp_endpoint_path: str = "/mcp"
    idp_timeout_seconds: float = 10.0
    jwt_leeway_seconds: int = 0
    jwks_refresh_on_unknown_kid: bool = False

    @field_validator("client_id", "client_secret", "jwt_signing_key")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("mcp_server_url", "authz_metadata_endpoint")
    @classmethod
    def _absolute_url(cls, value: str) -> str:
        if not is_absolute_url(value):
            raise ValueError("must be an absolute http(s) URL")
        return value.rstrip("/")

    @field_validator("mcp_endpoint_path")
    @classmethod
    def _endpoint_path(cls, value: str) -> str:
        if not value.startswith("/"):
            value = "/" + value
        return value.rstrip("/") or "/"

    @property
    def callback_url(self) -> str:
        return f"{self.mcp_server_url}/oauth/callback"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.mcp_server_url}/.well-known/oauth-protected-resource"

    @classmethod
    def from_settings(cls, settings: type[Settings] = Settings) -> "OAuthConfig":
        values = {
            "mcp_server_url": settings.MCP_SERVER_URL,
            "authz_metadata_endpoint": settings.AUTHZ_METADATA_ENDPOINT,
            "client_id": settings.CLIENT_ID,
            "client_secret": settings.CLIENT_SECRET,
            "jwt_signing_key": settings.JWT_SIGNING_KEY,
            "mcp_endpoint_path": settings.MCP_ENDPOINT_PATH,
            "idp_timeout_seconds": settings.IDP_TIMEOUT_SECONDS,
            "jwt_leeway_seconds": settings.JWT_LEEWAY_SECONDS,
            "jwks_refresh_on_unknown_kid": settings.JWKS_REFRESH_ON_UNKNOWN_KID,
        }
        try:
            return cls(**values)
        except ValidationError as e:
            # field names only, the values may be secrets
            fields = ", ".join(".".join(map(str, err["loc"])) for err in e.errors())
            raise ConfigError(f"Invalid OAuth configuration: {fields}") from None
