"""
tenancy/middleware.py
---------------------
Pure ASGI middleware that gives every request a fresh tenant context.

At request start the tenant is reset to "unset" and the structlog context
is cleared; at request end both are restored/discarded. The tenant router
dependency fills the context in between, once routing has produced path
parameters.
"""

import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from commerce.core.logging import bind_log_context, clear_log_context, get_logger
from commerce.tenancy.context import reset_tenant, set_tenant

logger = get_logger(__name__)


class TenantContextMiddleware:

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        token = set_tenant(None)
        clear_log_context()
        bind_log_context(method=scope["method"], path=scope["path"])
        start = time.monotonic()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            logger.info(
                "Request handled",
                status=status_code,
                latency_ms=round((time.monotonic() - start) * 1000, 1),
            )
            clear_log_context()
            reset_tenant(token)
