import logging

from fastapi.responses import JSONResponse

from wecom_proxy.forwarding.route import UpstreamStreamBroken
from wecom_proxy.utils.exception_logging import (
    find_exception_in_exception_groups,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")

CORS_HEADERS = [
    (b"access-control-allow-origin", b"*"),
    (b"access-control-allow-methods", b"GET, POST, OPTIONS"),
    (b"access-control-allow-headers", b"Content-Type, Authorization"),
]


class CORSHeadersMiddleware:
    """
    Add permissive CORS headers to every HTTP response, whether or not the
    request carried an Origin. Headers already set (e.g. by the upstream)
    are kept.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_cors(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                present = {name.lower() for name, _ in headers}
                headers.extend(
                    header for header in CORS_HEADERS if header[0] not in present
                )
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_cors)


class HandlerFaultMiddleware:
    """
    Outermost fault boundary for request handling.

    Unexpected exceptions are logged and counted. A 500 envelope is returned
    when nothing was sent yet; once the response has started the exception
    is re-raised so the server drops the connection. UpstreamStreamBroken has
    already been counted by the relay and is only re-raised.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_tracking(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_tracking)
        except Exception as exc:
            if find_exception_in_exception_groups(exc, UpstreamStreamBroken) is None:
                scope["app"].state.stats.record_error()
                log_exception_with_details(
                    logger,
                    f"[HandlerFault] {scope.get('method')} {scope.get('path')}",
                    exc,
                )
            if response_started:
                raise
            response = JSONResponse(
                status_code=500,
                content={"errcode": -1, "errmsg": "Internal proxy error"},
            )
            await response(scope, receive, send)
