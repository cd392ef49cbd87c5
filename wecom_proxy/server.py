import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Sequence

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    SpanExporter,
    SpanExportResult,
)
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from wecom_proxy import __version__
from wecom_proxy.forwarding.route import router as forwarding_router
from wecom_proxy.forwarding.stats import ProxyStats
from wecom_proxy.middleware import CORSHeadersMiddleware, HandlerFaultMiddleware
from wecom_proxy.routes import router
from wecom_proxy.utils.exception_logging import log_exception_with_details
from wecom_proxy.vars import (
    FORWARD_PREFIX,
    LISTEN_HOST,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PROXY_PORT,
    PROXY_TIMEOUT_MS,
    SERVICE_NAME,
    TARGET_HOST,
    TARGET_PORT,
)

logger = logging.getLogger("uvicorn.error")


def handle_loop_exception(stats: ProxyStats, loop, context: dict) -> None:
    """Count and log faults that escaped every task (e.g. never-awaited failures)."""
    stats.record_error()
    exception = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exception is not None:
        log_exception_with_details(logger, f"[EventLoop] {message}", exception)
    else:
        logger.error(f"[EventLoop] {message}")


def log_banner() -> None:
    logger.info("========================================")
    logger.info(f"  WeChat Work API Proxy Service ({SERVICE_NAME} {__version__})")
    logger.info("========================================")
    logger.info(f"  Proxy Port: {PROXY_PORT}")
    logger.info(f"  Target Host: {TARGET_HOST}")
    logger.info(f"  Target Port: {TARGET_PORT}")
    logger.info(f"  Timeout: {PROXY_TIMEOUT_MS}ms")
    logger.info("========================================")
    logger.info(f"Proxy server listening on http://{LISTEN_HOST}:{PROXY_PORT}")
    logger.info(f"Proxying {FORWARD_PREFIX}* to {TARGET_HOST}:{TARGET_PORT}")
    logger.info(f"  Health: http://localhost:{PROXY_PORT}/health")
    logger.info(f"  Stats:  http://localhost:{PROXY_PORT}/stats")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_banner()
    loop = asyncio.get_running_loop()
    previous_handler = loop.get_exception_handler()
    loop.set_exception_handler(partial(handle_loop_exception, app.state.stats))
    try:
        yield
    finally:
        loop.set_exception_handler(previous_handler)
        logger.info("Server closed")


app = FastAPI(
    title=SERVICE_NAME,
    version=__version__,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)
app.state.stats = ProxyStats()

instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, include_in_schema=False)


class FilteringSpanExporter(SpanExporter):
    """
    Wrapper exporter that filters out noisy ASGI body spans from streaming responses.
    A relayed body produces one such span per chunk.
    """

    def __init__(self, exporter: SpanExporter):
        self.exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        filtered_spans = [
            span
            for span in spans
            if not (
                span.attributes
                and span.attributes.get("asgi.event.type") == "http.response.body"
            )
        ]
        if filtered_spans:
            return self.exporter.export(filtered_spans)
        return SpanExportResult.SUCCESS

    def shutdown(self):
        return self.exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000):
        return self.exporter.force_flush(timeout_millis)


trace.set_tracer_provider(
    TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME}))
)
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=OTLP_HEADERS or None,
    )
    tracer_provider.add_span_processor(
        BatchSpanProcessor(FilteringSpanExporter(otlp_exporter))
    )

FastAPIInstrumentor.instrument_app(app)

app_info = Info("wecom_proxy_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME, "version": __version__, "target": TARGET_HOST})

# The fault boundary sits inside CORS so 500 envelopes carry CORS headers too
app.add_middleware(HandlerFaultMiddleware)
app.add_middleware(CORSHeadersMiddleware)

app.include_router(router)
app.include_router(forwarding_router)
