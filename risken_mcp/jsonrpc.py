"""JSON-RPC 2.0 error envelopes for responses produced outside the MCP dispatcher."""

import json
from typing import Any

from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    ErrorData,
    JSONRPCError,
)
from starlette.responses import JSONResponse

__all__ = [
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "UNAUTHORIZED",
    "JSONRPCParseError",
    "error_payload",
    "error_response",
    "parse_request_id",
]

# Custom errors (-32000 ~ -32099)
UNAUTHORIZED = -32001


class JSONRPCParseError(ValueError):
    pass


def error_payload(request_id: Any, code: int, message: str) -> dict:
    error = ErrorData(code=code, message=message)
    if request_id is None:
        # MCP ids are int or str; JSON-RPC answers an unknown id with null
        return {"jsonrpc": "2.0", "id": None, "error": error.model_dump(exclude_none=True)}
    envelope = JSONRPCError(jsonrpc="2.0", id=request_id, error=error)
    return envelope.model_dump(by_alias=True, exclude_none=True)


def error_response(
    request_id: Any,
    code: int,
    message: str,
    status_code: int,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(error_payload(request_id, code, message), status_code=status_code, headers=headers)


def parse_request_id(body: bytes) -> int | str | None:
    """
    Best-effort extraction of the JSON-RPC `id` so auth errors can be
    correlated by the client.

    Empty body (e.g. the GET that opens an SSE stream) and an empty-string id
    give `None`. Integral float ids become ints; any other id that is not an
    int or a string gives `None`. For a batch the first request's id is used.
    Raises `JSONRPCParseError` when the body is not JSON.
    """
    if not body or not body.strip():
        return None
    try:
        message = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise JSONRPCParseError(f"failed to unmarshal request body: {e}") from e

    if isinstance(message, list):
        message = message[0] if message else {}
    if not isinstance(message, dict):
        return None

    request_id = message.get("id")
    if isinstance(request_id, bool):
        return None
    if isinstance(request_id, float) and request_id.is_integer():
        return int(request_id)
    if request_id == "":
        return None
    if isinstance(request_id, (int, str)):
        return request_id
    return None
