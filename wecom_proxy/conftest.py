import inspect

import httpx
import pytest

from wecom_proxy.forwarding.stats import ProxyStats


class FakeUpstream:
    """Stands in for the upstream host; records every request it receives."""

    def __init__(self):
        self.requests = []
        self.handler = lambda request: httpx.Response(
            200, stream=httpx.ByteStream(b"ok")
        )

    async def dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response


@pytest.fixture
def upstream(monkeypatch):
    """Route all outbound traffic of the forwarding pipeline to a FakeUpstream."""
    fake = FakeUpstream()
    monkeypatch.setattr(
        "wecom_proxy.forwarding.route.build_client",
        lambda: httpx.AsyncClient(
            transport=httpx.MockTransport(fake.dispatch), follow_redirects=False
        ),
    )
    return fake


@pytest.fixture
def stats(monkeypatch):
    """Fresh counters installed on the application for the duration of a test."""
    from wecom_proxy.server import app

    proxy_stats = ProxyStats()
    monkeypatch.setattr(app.state, "stats", proxy_stats)
    return proxy_stats
