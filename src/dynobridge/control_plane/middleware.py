"""ASGI middleware shared by the webhook front door."""

from __future__ import annotations

import asyncio
from http import HTTPStatus

import structlog
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

LOGGER = structlog.get_logger("dynobridge.middleware")


def reason_response(status_code: int) -> PlainTextResponse:
    """Plain-text response whose body is the standard reason phrase."""

    return PlainTextResponse(HTTPStatus(status_code).phrase, status_code=status_code)


class RequestTimeoutMiddleware:
    """Abort handlers that run longer than ``timeout`` seconds with a 503.

    The handler is cancelled, which also cancels any outbound request it is
    awaiting. Once the response has started it can no longer be replaced, so
    a late timeout only drops the connection's remaining body.
    """

    def __init__(self, app: ASGIApp, timeout: float) -> None:
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), timeout=self.timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Request timed out",
                method=scope.get("method"),
                path=scope.get("path"),
                timeout_seconds=self.timeout,
                response_started=response_started,
            )
            if response_started:
                return
            response = reason_response(HTTPStatus.SERVICE_UNAVAILABLE)
            await response(scope, receive, send)
