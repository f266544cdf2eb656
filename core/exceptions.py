"""
Error taxonomy for the order workflow and its mapping onto HTTP responses.

Services raise these; routers never translate them by hand. The handlers
registered by ``register_exception_handlers`` turn each one into a JSON body
with the status code listed on the class.
"""
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from core.config import settings
from core.logging import get_logger

logger = get_logger(__name__)


class StorefrontError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        return {"success": False, "detail": self.message}


class ValidationError(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthorizationError(StorefrontError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Not authorized"

    def to_body(self) -> dict[str, Any]:
        # Never leak which check failed
        return {"success": False, "detail": self.default_message}


class NotFoundError(StorefrontError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictError(StorefrontError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Order was modified concurrently, retry the request"


class GatewayError(StorefrontError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Payment gateway request failed"

    def __init__(self, provider: str, raw_message: Any = None, http_status: Optional[int] = None, message: Optional[str] = None):
        self.provider = provider
        self.raw_message = raw_message
        self.http_status = http_status
        super().__init__(message or f"Failed to connect to {provider} payment service")

    def to_body(self) -> dict[str, Any]:
        return {
            "success": False,
            "detail": self.message,
            "provider": self.provider,
            "error": self.raw_message,
            "http_status": self.http_status,
        }


class InternalError(StorefrontError):
    def to_body(self) -> dict[str, Any]:
        body = {"success": False, "detail": "Server error"}
        if settings.DEBUG:
            body["error"] = self.message
        return body


async def _storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message, path=request.url.path)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    # A path id that does not parse cannot name an existing record
    if any(err.get("loc", ("",))[0] == "path" for err in errors):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"success": False, "detail": "Not found"})
    detail = [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in errors]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "detail": detail})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StorefrontError, _storefront_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
