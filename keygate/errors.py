from __future__ import annotations
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class KeygateError(Exception):
    status_code = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        return {"message": self.message, **self.extra}


class ValidationError(KeygateError):
    status_code = 400


class AuthError(KeygateError):
    status_code = 401


class ForbiddenError(KeygateError):
    status_code = 403


class NotFound(KeygateError):
    status_code = 404


class InvalidKey(NotFound):
    pass


class ServiceUnavailable(NotFound):
    pass


class Conflict(KeygateError):
    status_code = 409


class KeyAlreadyUsed(Conflict):
    pass


class UpstreamFailure(KeygateError):
    # the caller sees a plain 500; the order row keeps the details
    status_code = 500

    def __init__(self, message: str, *, upstream_status: Optional[int] = None,
                 **extra: Any) -> None:
        super().__init__(message, **extra)
        self.upstream_status = upstream_status


# ----------------------------
# HTTP boundary
# ----------------------------
def _first_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
    msg = err.get("msg", "invalid value")
    return f"{loc}: {msg}" if loc else msg


def install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(KeygateError)
    async def _keygate_error(request: Request, exc: KeygateError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method,
                         request.url.path, exc.message)
        return ORJSONResponse(exc.to_body(), status_code=exc.status_code)

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return ORJSONResponse({"message": exc.detail},
                              status_code=exc.status_code,
                              headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request,
                                exc: RequestValidationError):
        return ORJSONResponse({"message": _first_error(exc)},
                              status_code=400)

    @app.exception_handler(Exception)
    async def _unexpected(request: Request, exc: Exception):
        logger.exception("unhandled error on %s %s", request.method,
                         request.url.path)
        return ORJSONResponse({"message": "Internal server error"},
                              status_code=500)
