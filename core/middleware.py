"""
Last-resort error handling.

Pure ASGI middleware (not BaseHTTPMiddleware) so it does not interfere with
generator dependencies such as ``get_db``.
"""
import json

from fastapi import HTTPException
from starlette.types import ASGIApp, Receive, Scope, Send

from core.config import settings
from core.logging import get_logger

logger = get_logger(__name__)


class ErrorHandlerMiddleware:
    """
    Turns exceptions nothing else handled into a JSON 500.

    HTTPException and the storefront error types are answered by FastAPI's
    exception handlers before they reach this layer.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False
        original_send = send

        async def send_wrapper(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await original_send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            if isinstance(e, HTTPException):
                raise

            logger.exception(
                "unhandled_exception",
                error=str(e),
                path=scope.get("path", "unknown"),
            )
            if response_started:
                # Headers already sent, can't change the response
                raise

            payload = {"success": False, "detail": "Server error"}
            if settings.DEBUG:
                payload["error"] = str(e)
                payload["type"] = type(e).__name__
            body = json.dumps(payload).encode("utf-8")

            await original_send({
                "type": "http.response.start",
                "status": 500,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            })
            await original_send({
                "type": "http.response.body",
                "body": body,
            })
