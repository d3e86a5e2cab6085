from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from .errors import DomainError


class RequestTimingLoggingMiddleware(BaseHTTPMiddleware):
    """Log one line per request and expose the handler time as 'X-Process-Time-Ms'."""

    def __init__(self, app: ASGIApp) -> None:
        super().__init__(app)
        self.logger = logging.getLogger("request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        response.headers["X-Process-Time-Ms"] = str(duration_ms)

        self.logger.info(
            "method=%s path=%s status=%s duration_ms=%s ip=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.client.host if request.client else "?",
        )
        return response


def error_payload(
    request: Request,
    status: int,
    message: str,
    code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "ok": False,
        "error": {
            "status": status,
            "code": code,
            "message": message,
            "details": details or {},
            "path": request.url.path,
        },
    }


def add_exception_handlers(app: FastAPI) -> None:
    """Render domain, HTTP, validation and unexpected errors with one payload shape."""

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        logging.getLogger("domain").info("code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_payload(request, exc.status_code, exc.message, exc.code, exc.details),
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else ""
        return JSONResponse(status_code=exc.status_code, content=error_payload(request, exc.status_code, message))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
        return JSONResponse(
            status_code=422,
            content=error_payload(
                request, 422, "Request validation failed", "ValidationError", {"errors": errors}
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        # Do not leak internals
        logging.getLogger("error").exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content=error_payload(request, 500, "Internal server error"))
