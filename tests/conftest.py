import logging
import os
import sys

import pytest

# Ensure the project root is in the Python path for imports in tests
project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if project_root not in sys.path:
    sys.path.insert(0, project_root)


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse."""

    def __init__(self, status=200, body=b"", headers=None):
        self.status = status
        self.body = body
        self.headers = headers or {}

    async def read(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Serves canned responses by URL and records every GET.

    A route is a (status, body, headers) tuple, an exception instance to raise,
    or a list of those consumed one per request. Unknown URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url):
        self.calls.append(url)
        route = self.routes.get(url, (404, b"", {}))
        if isinstance(route, list):
            route = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(route, BaseException):
            raise route
        status, body, headers = route
        return FakeResponse(status, body, headers)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture(autouse=True)
def configure_logging(caplog):
    """Ensure logging is configured to capture DEBUG level messages for all tests."""
    caplog.set_level(logging.DEBUG)
