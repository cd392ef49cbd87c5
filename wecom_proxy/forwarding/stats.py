"""
Process-lifetime request/error counters shared by every handler.

One ``ProxyStats`` instance is created with the application and kept on
``app.state``; handlers receive it through the ``get_proxy_stats`` dependency.
"""

import resource
import sys
import threading
import time
from datetime import datetime, timezone

from fastapi import Request


class ProxyStats:
    """Monotonic counters for forwarding attempts and observed errors."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests = 0
        self._errors = 0
        self._started = time.monotonic()

    def record_request(self) -> int:
        with self._lock:
            self._requests += 1
            return self._requests

    def record_error(self) -> int:
        with self._lock:
            self._errors += 1
            return self._errors

    @property
    def total_requests(self) -> int:
        return self._requests

    @property
    def total_errors(self) -> int:
        return self._errors

    def uptime(self) -> float:
        """Seconds since the counters were created."""
        return time.monotonic() - self._started

    def snapshot(self) -> dict:
        with self._lock:
            requests, errors = self._requests, self._errors
        return {
            "totalRequests": requests,
            "totalErrors": errors,
            "uptime": round(self.uptime(), 3),
            "memoryUsage": memory_usage(),
        }


def memory_usage() -> dict:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is reported in bytes on macOS and in kilobytes elsewhere
    max_rss = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    return {
        "maxRss": max_rss,
        "allocatedBlocks": sys.getallocatedblocks(),
    }


def utc_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def get_proxy_stats(request: Request) -> ProxyStats:
    """FastAPI dependency returning the application's counters."""
    return request.app.state.stats
