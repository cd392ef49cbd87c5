from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from wecom_proxy import __version__
from wecom_proxy.forwarding.route import not_found
from wecom_proxy.forwarding.stats import ProxyStats, get_proxy_stats, utc_timestamp
from wecom_proxy.vars import (
    FORWARD_PREFIX,
    PROXY_PORT,
    PROXY_TIMEOUT_MS,
    SERVICE_NAME,
    TARGET_HOST,
    TARGET_PORT,
)

router = APIRouter()


def is_exact_target(request: Request) -> bool:
    """Service endpoints answer only their bare path; with a query they are not found."""
    return not request.scope.get("query_string")


@router.get("/health")
async def health(request: Request, stats: ProxyStats = Depends(get_proxy_stats)):
    if not is_exact_target(request):
        return not_found()
    snapshot = stats.snapshot()
    return JSONResponse(
        content={
            "status": "ok",
            "service": SERVICE_NAME,
            "version": __version__,
            "target": {"host": TARGET_HOST, "port": TARGET_PORT},
            "stats": snapshot,
            "timestamp": utc_timestamp(),
        }
    )


@router.get("/stats")
async def request_stats(request: Request, stats: ProxyStats = Depends(get_proxy_stats)):
    if not is_exact_target(request):
        return not_found()
    return JSONResponse(content={**stats.snapshot(), "timestamp": utc_timestamp()})


def render_help(stats: ProxyStats) -> str:
    return f"""
WeChat Work API Proxy Service
==============================

Endpoints:
  GET  /health          - Health check
  GET  /stats           - Request statistics
  GET  /metrics         - Prometheus metrics
  GET  /                - This help message

Proxy:
  All {FORWARD_PREFIX}* requests are proxied to {TARGET_HOST}:{TARGET_PORT}
  Upstream timeout: {PROXY_TIMEOUT_MS}ms

Environment Variables:
  PROXY_PORT        - Proxy listen port (current: {PROXY_PORT})
  TARGET_HOST       - Target server (current: {TARGET_HOST})
  TARGET_PORT       - Target port (current: {TARGET_PORT})
  PROXY_TIMEOUT_MS  - Upstream timeout in ms (current: {PROXY_TIMEOUT_MS})

Stats:
  Total Requests: {stats.total_requests}
  Total Errors: {stats.total_errors}
  Uptime: {int(stats.uptime())}s
"""


@router.get("/")
async def root(request: Request, stats: ProxyStats = Depends(get_proxy_stats)):
    if not is_exact_target(request):
        return not_found()
    return PlainTextResponse(render_help(stats))


@router.options("/{path:path}")
async def preflight(path: str):
    """CORS preflight for any path; the CORS headers are added by middleware."""
    return Response(status_code=204)
