from typing import Any, Literal, Optional

from fastmcp import FastMCP

from .context import get_risken_client
from .risken_client import RiskenAPIError

mcp = FastMCP("RISKEN MCP Server")

# Finding status: 0 all, 1 active, 2 pending
FINDING_STATUS_ALL = 0
FINDING_STATUS_ACTIVE = 1

# Alert status: 1 active, 2 pending, 3 deactive
ALERT_STATUS_ACTIVE = 1

DEFAULT_FROM_SCORE = 0.1
MAX_LIMIT = 100

DataSource = Literal["aws", "google", "code", "osint", "diagnosis", "azure"]


def finding_search_params(
    finding_id: Optional[int] = None,
    alert_id: Optional[int] = None,
    data_source: Optional[list[str]] = None,
    resource_name: Optional[list[str]] = None,
    from_score: Optional[float] = None,
    status: Optional[int] = None,
    offset: int = 0,
    limit: int = 10,
) -> dict[str, Any]:
    """
    Build the list-finding query for a search.

    Without filters only active findings scoring at least 0.1 are listed.
    A `finding_id` looks up that one finding whatever its score or status and
    ignores every other filter; an `alert_id` lists the alert's findings at
    any score.
    """
    params: dict[str, Any] = {
        "offset": max(offset, 0),
        "limit": min(max(limit, 1), MAX_LIMIT),
        "from_score": DEFAULT_FROM_SCORE,
        "status": FINDING_STATUS_ACTIVE,
    }
    if finding_id is not None:
        params.update(finding_id=finding_id, from_score=0.0, status=FINDING_STATUS_ALL)
        return params
    if alert_id is not None:
        params.update(alert_id=alert_id, from_score=0.0)
        return params

    if data_source:
        params["data_source"] = list(data_source)
    if resource_name:
        params["resource_name"] = list(resource_name)
    if from_score is not None:
        params["from_score"] = min(max(from_score, 0.0), 1.0)
    if status is not None:
        params["status"] = status
    return params


@mcp.tool()
async def get_project() -> Any:
    """Get details of the RISKEN project the caller's access token belongs to."""
    client = get_risken_client()
    try:
        return await client.get_project()
    except RiskenAPIError as e:
        return {"error": e.message}


@mcp.tool()
async def search_finding(
    finding_id: Optional[int] = None,
    alert_id: Optional[int] = None,
    data_source: Optional[list[DataSource]] = None,
    resource_name: Optional[list[str]] = None,
    from_score: Optional[float] = None,
    status: Optional[Literal[0, 1, 2]] = None,
    offset: int = 0,
    limit: int = 10,
) -> Any:
    """
    Search RISKEN findings in the caller's project. Use this when a request
    mentions a "finding" or an "issue".

    finding_id: fetch this finding only (other filters are ignored)
    alert_id: findings attached to this alert
    data_source: e.g. aws, google, code (github, gitlab, ...), osint, diagnosis, azure
    resource_name: e.g. "arn:aws:iam::123456789012:user/test-user"
    from_score: minimum score (0.0 - 1.0, 0.1 when unset)
    status: 0 all, 1 active (default), 2 pending
    limit: 1 - 100
    """
    client = get_risken_client()
    params = finding_search_params(
        finding_id=finding_id,
        alert_id=alert_id,
        data_source=data_source,
        resource_name=resource_name,
        from_score=from_score,
        status=status,
        offset=offset,
        limit=limit,
    )
    try:
        listed = await client.list_finding(**params)
        if not isinstance(listed, dict):
            listed = {}
        finding_ids = listed.get("finding_id") or []
        findings = [await client.get_finding(fid) for fid in finding_ids]
    except RiskenAPIError as e:
        return {"error": e.message}
    return {
        "findings": findings,
        "total": listed.get("total", 0),
        "offset": params["offset"],
        "limit": params["limit"],
    }


@mcp.tool()
async def search_alert(status: Literal[1, 2, 3] = ALERT_STATUS_ACTIVE) -> Any:
    """
    Search RISKEN alerts in the caller's project. Use this when a request
    mentions an "alert".

    status: 1 active (default), 2 pending, 3 deactive (resolved)
    """
    client = get_risken_client()
    try:
        return await client.list_alert(status=[status])
    except RiskenAPIError as e:
        return {"error": e.message}
