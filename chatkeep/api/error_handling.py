from __future__ import annotations

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatkeep.api.schemas import ErrorResponse
from chatkeep.config import get_settings
from chatkeep.logging import get_logger
from chatkeep.service.errors import ServiceError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    500: "server_error",
}

GENERIC_SERVER_MESSAGE = "Internal server error"


class PageRedirect(Exception):
    """Send a browser to another page instead of rendering an error body."""

    def __init__(self, location: str) -> None:
        super().__init__(location)
        self.location = location


def _expose_internals() -> bool:
    return get_settings().is_development


def _error_response(
    status_code: int,
    message: str,
    *,
    code: Optional[str] = None,
    errors: Optional[list] = None,
    detail: Optional[dict] = None,
) -> JSONResponse:
    body = ErrorResponse(
        message=message,
        code=code or _STATUS_TO_CODE.get(status_code, "server_error"),
        errors=errors,
        detail=detail,
    )
    return JSONResponse(
        status_code=status_code, content=body.model_dump(by_alias=True, exclude_none=True)
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as ``{success: false, message, code}``."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        if exc.status_code >= 500:
            # Storage and crypto failures keep their internals out of
            # non-development responses.
            if _expose_internals():
                return _error_response(
                    exc.status_code, exc.message, code=exc.error_code, detail=exc.detail
                )
            return _error_response(exc.status_code, GENERIC_SERVER_MESSAGE, code=exc.error_code)
        return _error_response(
            exc.status_code,
            exc.message,
            code=exc.error_code,
            errors=exc.detail.get("errors"),
        )

    @app.exception_handler(PageRedirect)
    async def handle_page_redirect(request: Request, exc: PageRedirect):
        return RedirectResponse(exc.location, status_code=303)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            errors=problems,
        )
        return _error_response(400, "Invalid request", errors=problems)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        detail = (
            {"error_type": type(exc).__name__, "error": str(exc)}
            if _expose_internals()
            else None
        )
        return _error_response(500, GENERIC_SERVER_MESSAGE, detail=detail)
