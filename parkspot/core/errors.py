import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger("errors")


class APIError(Exception):
    status_code = 400
    error_code = "bad_request"

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.message = message or self.error_code.replace("_", " ").capitalize()
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            payload["details"] = self.details
        return payload


class Unauthorized(APIError):       status_code = 401; error_code = "unauthorized"
class InvalidPlan(APIError):        status_code = 400; error_code = "invalid_plan"
class Forbidden(APIError):          status_code = 403; error_code = "forbidden"
class NotFound(APIError):           status_code = 404; error_code = "not_found"
class InvalidSignature(APIError):   status_code = 400; error_code = "invalid_signature"
class RateLimited(APIError):        status_code = 429; error_code = "rate_limited"


class UnknownSubscriptionStatus(APIError):
    """The processor reported a status outside the mapping table."""

    status_code = 500
    error_code = "unknown_subscription_status"


class ProcessorError(APIError):
    """Raised by the billing processor client; subclasses are the typed cases."""

    status_code = 500
    error_code = "processor_error"


class CardDeclined(ProcessorError):          status_code = 400; error_code = "card_declined"
class ProcessorRequestError(ProcessorError): status_code = 400; error_code = "invalid_request"
class ProcessorNotFound(ProcessorError):     status_code = 404; error_code = "resource_missing"
class ProcessorUnavailable(ProcessorError):  status_code = 500; error_code = "processor_error"


def _json(status_code: int, payload: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(payload, status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    """Translate every failure into the ``{error, error_code}`` envelope."""

    @app.exception_handler(APIError)
    async def _api_error(request: Request, exc: APIError):
        if exc.status_code >= 500:
            log.error("api.error path=%s code=%s msg=%s", request.url.path, exc.error_code, exc.message)
        else:
            log.info("api.reject path=%s status=%s code=%s", request.url.path, exc.status_code, exc.error_code)
        return _json(exc.status_code, exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        fields = [".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()]
        return _json(
            400,
            {"error": "Invalid request body", "error_code": "validation_error", "details": {"fields": fields}},
        )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        code = "not_found" if exc.status_code == 404 else "http_error"
        return _json(exc.status_code, {"error": str(exc.detail), "error_code": code})

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(request: Request, exc: SQLAlchemyError):
        log.exception("store.error path=%s", request.url.path, exc_info=exc)
        return _json(500, {"error": "Database error", "error_code": "store_error"})

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.exception("unhandled.error path=%s", request.url.path, exc_info=exc)
        return _json(500, {"error": "Internal server error", "error_code": "internal_error"})
