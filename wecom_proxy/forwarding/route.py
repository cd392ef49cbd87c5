import asyncio
import logging
import time
from typing import AsyncIterator, List, Optional, Tuple

import anyio
import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from wecom_proxy.forwarding.stats import ProxyStats, get_proxy_stats
from wecom_proxy.utils.exception_logging import describe_exception
from wecom_proxy.utils.traced_requests import traced_request
from wecom_proxy.vars import FORWARD_PREFIX, PROXY_TIMEOUT_MS, TARGET_HOST, TARGET_PORT

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Inbound headers that are never copied upstream. Host and Connection are
# replaced, proxy-chain headers are dropped, and the body is re-framed by httpx.
STRIPPED_REQUEST_HEADERS = {
    b"host",
    b"connection",
    b"transfer-encoding",
    b"x-forwarded-for",
    b"x-forwarded-proto",
}

# Upstream headers that conflict with the framing chosen by the ASGI server
STRIPPED_RESPONSE_HEADERS = {b"transfer-encoding"}

GATEWAY_TIMEOUT_MESSAGE = "Gateway timeout"
NOT_FOUND_MESSAGE = f"Not Found - Only {FORWARD_PREFIX} paths are proxied"


class UpstreamStreamBroken(Exception):
    """The upstream body failed after the response headers were already sent."""


def error_envelope(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errcode": -1, "errmsg": message})


def not_found() -> PlainTextResponse:
    return PlainTextResponse(NOT_FOUND_MESSAGE, status_code=404)


def target_base_url() -> str:
    scheme = "https" if TARGET_PORT == 443 else "http"
    return f"{scheme}://{TARGET_HOST}:{TARGET_PORT}"


def raw_request_path(request: Request) -> bytes:
    """Path exactly as received, without percent-decoding and without the query."""
    raw_path = request.scope.get("raw_path")
    if raw_path is None:
        raw_path = request.scope["path"].encode("utf-8")
    return raw_path.split(b"?", 1)[0]


def get_forward_path(request: Request) -> str:
    """The raw path and query string of the inbound request, concatenated."""
    path = raw_request_path(request)
    query = request.scope.get("query_string", b"")
    if query:
        path = path + b"?" + query
    return path.decode("ascii")


def get_target_url(request: Request) -> httpx.URL:
    return httpx.URL(target_base_url() + get_forward_path(request))


def prepare_headers(request: Request) -> List[Tuple[bytes, bytes]]:
    """
    Copy the inbound headers for the upstream request.

    Repeated headers and their order are kept. Host is forced to the target,
    and Connection to "close" so no upstream connection is reused across
    unrelated clients.
    """
    headers = [
        (name, value)
        for name, value in request.headers.raw
        if name.lower() not in STRIPPED_REQUEST_HEADERS
    ]
    headers.append((b"host", TARGET_HOST.encode("ascii")))
    headers.append((b"connection", b"close"))
    return headers


def filter_response_headers(raw_headers: List[Tuple[bytes, bytes]]) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower(), value)
        for name, value in raw_headers
        if name.lower() not in STRIPPED_RESPONSE_HEADERS
    ]


def request_body(request: Request) -> Optional[AsyncIterator[bytes]]:
    """Stream the inbound body, or None when the client declared no body."""
    if "content-length" in request.headers or "transfer-encoding" in request.headers:
        return request.stream()
    return None


def build_client() -> httpx.AsyncClient:
    # One client per request: nothing is pooled between unrelated callers
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT_MS / 1000),
        follow_redirects=False,
        trust_env=False,
    )


async def tracked_body(
    body: AsyncIterator[bytes], body_sent: asyncio.Event
) -> AsyncIterator[bytes]:
    async for chunk in body:
        yield chunk
    body_sent.set()


def build_upstream_request(
    request: Request, target_url: httpx.URL, body_sent: asyncio.Event
) -> httpx.Request:
    """
    Build the outbound request without the client's default headers, so
    upstream sees exactly the rewritten inbound header set (no injected
    Accept-Encoding or User-Agent).

    ``body_sent`` is set once the inbound body has been read to the end.
    """
    body = request_body(request)
    if body is None:
        body_sent.set()
    else:
        body = tracked_body(body, body_sent)
    return httpx.Request(
        request.method,
        target_url,
        headers=prepare_headers(request),
        content=body,
        extensions={"timeout": httpx.Timeout(PROXY_TIMEOUT_MS / 1000).as_dict()},
    )


async def wait_for_disconnect(request: Request, body_sent: asyncio.Event) -> None:
    """Return when the client hangs up. Reads nothing until the upload is done."""
    await body_sent.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


async def cancel_task(task: asyncio.Future) -> None:
    """Cancel a task and collect its outcome; a response that still arrived is closed."""
    task.cancel()
    await asyncio.wait({task})
    if task.cancelled():
        return
    exception = task.exception()
    if exception is not None:
        logger.debug(f"Abandoned task failed: {describe_exception(exception)}")
    elif isinstance(task.result(), httpx.Response):
        await task.result().aclose()


async def send_upstream(
    client: httpx.AsyncClient, request: Request, target_url: httpx.URL
) -> httpx.Response:
    """
    Send the outbound request and wait for the response headers.

    The send races the deadline and the inbound client hanging up. Raises
    asyncio.TimeoutError or ClientDisconnect when either wins; the pending
    send is cancelled first.
    """
    body_sent = asyncio.Event()
    sending = asyncio.create_task(
        client.send(build_upstream_request(request, target_url, body_sent), stream=True)
    )
    watching = asyncio.create_task(wait_for_disconnect(request, body_sent))
    try:
        done, _ = await asyncio.wait(
            {sending, watching},
            timeout=PROXY_TIMEOUT_MS / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        with anyio.CancelScope(shield=True):
            await cancel_task(watching)
            abandoned = not sending.done()
            if abandoned:
                await cancel_task(sending)

    if not abandoned:
        return sending.result()
    if watching in done:
        raise ClientDisconnect()
    raise asyncio.TimeoutError()


async def close_upstream(
    client: httpx.AsyncClient, response: Optional[httpx.Response] = None
) -> None:
    """Release the upstream socket, even when the caller is being cancelled."""
    with anyio.CancelScope(shield=True):
        if response is not None:
            await response.aclose()
        await client.aclose()


async def relay_body(
    upstream_response: httpx.Response,
    client: httpx.AsyncClient,
    stats: ProxyStats,
    method: str,
    forward_path: str,
) -> AsyncIterator[bytes]:
    """
    Yield the upstream body verbatim, one chunk at a time.

    Content-Encoding is left untouched, so raw bytes are relayed rather than
    decoded ones. A failure here cannot change the status code any more; it is
    counted once and raised as UpstreamStreamBroken so the server aborts the
    inbound connection.
    """
    try:
        async for chunk in upstream_response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        stats.record_error()
        message = describe_exception(e)
        logger.error(
            f"ERROR: {method} {forward_path} - upstream body broken after headers: {message}"
        )
        raise UpstreamStreamBroken(message) from e
    finally:
        await close_upstream(client, upstream_response)


async def forward_to_target(request: Request, stats: ProxyStats) -> Response:
    """
    Forward a /cgi-bin/ request to the fixed upstream and stream the answer back.

    Anything outside the prefix is rejected with 404 before any counting or
    upstream contact. Upstream failures before the response headers arrive are
    turned into the {errcode, errmsg} envelope: 504 when the deadline expires,
    502 for every other transport failure.
    """
    if not raw_request_path(request).startswith(FORWARD_PREFIX.encode("ascii")):
        return not_found()

    stats.record_request()
    start = time.monotonic()
    method = request.method

    try:
        forward_path = get_forward_path(request)
        target_url = get_target_url(request)
    except (UnicodeDecodeError, httpx.InvalidURL) as e:
        stats.record_error()
        logger.error(f"ERROR: {method} {request.url.path} - invalid target: {e}")
        return error_envelope(502, f"Proxy error: {describe_exception(e)}")

    with traced_request(
        tracer,
        operation="proxy_request",
        method=method,
        target_url=str(target_url),
        start_message=f"Proxying {method} {forward_path} -> {target_url}",
    ) as span:
        client = build_client()
        try:
            upstream_response = await send_upstream(client, request, target_url)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            await close_upstream(client)
            stats.record_error()
            span.set_attribute("proxy.error", "timeout")
            logger.error(f"ERROR: {method} {forward_path} - Request timeout")
            return error_envelope(504, GATEWAY_TIMEOUT_MESSAGE)
        except ClientDisconnect:
            await close_upstream(client)
            span.set_attribute("proxy.error", "client_disconnect")
            logger.info(
                f"{method} {forward_path} - client disconnected before upstream responded"
            )
            return Response(status_code=499)
        except (httpx.HTTPError, OSError) as e:
            await close_upstream(client)
            stats.record_error()
            message = describe_exception(e)
            span.set_attribute("proxy.error", "transport_error")
            logger.error(f"ERROR: {method} {forward_path} - {message}")
            return error_envelope(502, f"Proxy error: {message}")
        except BaseException:
            await close_upstream(client)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        span.set_attribute("proxy.status_code", upstream_response.status_code)
        logger.info(
            f"{method} {forward_path} -> {upstream_response.status_code} "
            f"({duration_ms}ms) {TARGET_HOST}"
        )

        response = StreamingResponse(
            relay_body(upstream_response, client, stats, method, forward_path),
            status_code=upstream_response.status_code,
        )
        response.raw_headers = filter_response_headers(upstream_response.headers.raw)
        return response


async def proxy_all(request: Request) -> Response:
    """Catch-all route: relays /cgi-bin/ requests, rejects everything else."""
    return await forward_to_target(request, get_proxy_stats(request))


# Register catch-all route for proxying; no method list, so any verb matches
router.add_route("/{path:path}", proxy_all, include_in_schema=False)
