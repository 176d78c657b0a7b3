from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..auth.errors import OAuthError
from ..logging_util import get_logger


logger = get_logger(__name__)


async def oauth_exception_handler(request: Request, exc: OAuthError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.error}: {exc.description}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.error}: {exc.description}")

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"Cache-Control": "no-store"},
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    OAuth wants 400 `invalid_request` for bad parameters, not FastAPI's 422.
    The offending fields are logged; only their names reach the caller.
    """
    invalid_params = []
    for error in exc.errors():
        invalid_params.append({
            "field": ".".join(map(str, error["loc"])),  # e.g., "query.redirect_uri"
            "reason": error["msg"],
            "type": error["type"],
        })

    logger.warning(f"Validation failed for {request.method} {request.url.path}: {invalid_params}")

    fields = sorted({p["field"].split(".")[-1] for p in invalid_params})
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": "invalid_request",
            "error_description": f"Invalid or missing parameters: {', '.join(fields)}",
        },
        headers={"Cache-Control": "no-store"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(OAuthError, oauth_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
