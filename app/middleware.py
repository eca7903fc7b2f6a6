import asyncio

from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from app.errors import RequestTimeoutError
from app.responses import error_response
from logger_config import setup_logger

logger = setup_logger()


class RequestTimeoutMiddleware:
    """Cancel HTTP requests that run longer than ``timeout_seconds``.

    If the response has not started a 408 envelope is sent; otherwise nothing
    more is written and the server drops the connection.
    """

    def __init__(self, app: ASGIApp, timeout_seconds: float):
        self.app = app
        self.timeout_seconds = timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), self.timeout_seconds)
        except asyncio.TimeoutError:
            path = scope.get("path")
            if response_started:
                logger.warning(f"Request to {path} timed out after headers were sent, dropping connection")
                return
            logger.warning(f"Request to {path} timed out after {self.timeout_seconds}s")
            response = error_response(RequestTimeoutError())
            await response(scope, receive, send)


class RateLimitHeadersMiddleware:
    """Add RateLimit-* headers for requests that went through a rate limiter."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: Message):
            if message["type"] == "http.response.start":
                decision = scope.get("state", {}).get("rate_limit")
                if decision is not None:
                    headers = MutableHeaders(scope=message)
                    for name, value in decision.headers().items():
                        headers[name] = value
            await send(message)

        await self.app(scope, receive, send_wrapper)
