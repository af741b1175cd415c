import dataclasses

import httpx
import logfire
import pytest
from fastapi.testclient import TestClient

from relayproxy.app import create_app
from relayproxy.config import Settings

# Keep logfire local and quiet under test
logfire.configure(send_to_logfire=False, console=False)


@pytest.fixture
def settings():
    return Settings(timeout=2.0, connect_timeout=1.0)


class Upstream:
    """An httpx MockTransport that records what reached it."""

    def __init__(self, handler=None):
        self.requests: list[httpx.Request] = []
        self.handler = handler or (lambda request: httpx.Response(200, text="upstream ok"))
        self.transport = httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request):
        self.requests.append(request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def make_client(settings):
    """Build a TestClient around the app with a given upstream and settings."""
    clients = []

    def _make(upstream: Upstream, **overrides) -> TestClient:
        app_settings = dataclasses.replace(settings, **overrides)
        client = TestClient(create_app(app_settings, transport=upstream.transport))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
