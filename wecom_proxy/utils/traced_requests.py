import logging
from typing import Optional
from contextlib import contextmanager

from opentelemetry.trace import Tracer

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    method: str,
    target_url: str,
    start_message: Optional[str] = None,
):
    """Open a span for one upstream attempt, tagged with method and target."""
    with tracer.start_as_current_span(operation) as span:
        span.set_attribute("http.request.method", method)
        span.set_attribute("proxy.target_url", target_url)
        if start_message:
            logger.debug(start_message)
        yield span
