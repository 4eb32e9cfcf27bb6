import json

import httpx
import pytest

from hme.settings import settings
from hme.store.session_store import SessionStore
from hme.store.storage import MemoryStorage

AUTH = settings.ICLOUD_AUTH_URL
SETUP = settings.ICLOUD_SETUP_URL
HME_URL = "https://p68-maildomainws.icloud.com"


def authenticated_data():
    return {
        "headers": {
            "X-Apple-ID-Session-Id": "sess-1",
            "X-Apple-Session-Token": "tok-1",
            "scnt": "scnt-1",
        },
        "webservices": {"premiummailsettings": {"url": HME_URL, "status": "active"}},
        "dsInfo": {"dsid": "123", "appleId": "user@example.com"},
    }


def signed_in_data():
    """Credentials accepted, second factor pending."""
    return {
        "headers": {"X-Apple-ID-Session-Id": "sess-1", "X-Apple-Session-Token": "tok-1", "scnt": "scnt-1"},
        "webservices": {},
    }


class FakeICloud:
    """
    Route table for httpx.MockTransport.
    Routes are keyed by (method, url without query) and rebuilt per request.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method, url, status=200, json_body=None, headers=None, exc=None):
        self.routes[(method, url)] = (status, json_body, headers or {}, exc)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url.copy_with(query=None))
        body = json.loads(request.content) if request.content else None
        self.calls.append({"method": request.method, "url": url, "json": body, "headers": dict(request.headers)})
        route = self.routes.get((request.method, url))
        if route is None:
            return httpx.Response(404, json={"error": "no route"})
        status, json_body, headers, exc = route
        if exc is not None:
            raise exc
        return httpx.Response(status, json=json_body if json_body is not None else {}, headers=headers)

    def urls(self):
        return [c["url"] for c in self.calls]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def fake_icloud():
    return FakeICloud()


@pytest.fixture
def memory_storage():
    return MemoryStorage()


@pytest.fixture
def store(memory_storage):
    return SessionStore(memory_storage, surface_id="surface-a")
