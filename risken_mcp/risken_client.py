from typing import Any, Optional

import httpx

from .logging_util import get_logger

logger = get_logger(__name__)


class RiskenAPIError(Exception):
    """Raised when the RISKEN API rejects a call or cannot be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class RiskenClient:
    """
    Minimal async client for the RISKEN API.

    One instance per authenticated MCP request; it is bound to the caller's
    RISKEN access token and the project that token belongs to (known after
    `signin()`).
    """

    def __init__(self, access_token: str, api_endpoint: str, timeout: float = 30.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.api_endpoint = api_endpoint.rstrip("/")
        self.timeout = timeout
        self.project_id: Optional[int] = None
        self._http_client = http_client

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.api_endpoint}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise RiskenAPIError(f"RISKEN API request failed: {e!r}") from e

        if response.status_code >= 400:
            raise RiskenAPIError(f"RISKEN API {path} returned {response.status_code}", response.status_code)
        try:
            body = response.json()
        except ValueError as e:
            raise RiskenAPIError(f"RISKEN API {path} returned a non-JSON body") from e
        return body.get("data", body) if isinstance(body, dict) else body

    async def signin(self) -> int:
        data = await self._request("GET", "/api/v1/signin/")
        project_id = data.get("project_id") if isinstance(data, dict) else None
        if not project_id:
            raise RiskenAPIError(f"invalid project: {data!r}")
        self.project_id = int(project_id)
        return self.project_id

    async def get_project(self) -> Any:
        return await self._request("GET", "/api/v1/project/list-project/", params={"project_id": self.project_id})

    def _project_params(self, **filters) -> dict[str, Any]:
        params: dict[str, Any] = {"project_id": self.project_id}
        for key, value in filters.items():
            if value is None:
                continue
            # list filters travel comma separated
            if isinstance(value, (list, tuple)):
                if not value:
                    continue
                value = ",".join(str(v) for v in value)
            params[key] = value
        return params

    async def list_finding(self, **filters) -> Any:
        """List finding IDs matching `filters`; the API answers `{finding_id, count, total}`."""
        return await self._request("GET", "/api/v1/finding/list-finding/", params=self._project_params(**filters))

    async def get_finding(self, finding_id: int) -> Any:
        data = await self._request(
            "GET", "/api/v1/finding/get-finding/", params=self._project_params(finding_id=finding_id)
        )
        if isinstance(data, dict) and "finding" in data:
            return data["finding"]
        return data

    async def list_alert(self, status: Optional[list[int]] = None) -> Any:
        return await self._request("GET", "/api/v1/alert/list-alert/", params=self._project_params(status=status))


async def create_and_validate_risken_client(risken_url: str, token: str) -> RiskenClient:
    """Build a client for `token` and sign in to prove the token is usable."""
    if not token:
        raise RiskenAPIError("RISKEN access token is required")
    client = RiskenClient(token, api_endpoint=risken_url)
    project_id = await client.signin()
    logger.debug(f"RISKEN sign-in succeeded for project_id={project_id}")
    return client
