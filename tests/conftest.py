import time

import httpx
import pytest

from sbaudit.config import config_from_mapping
from sbaudit.identities import IdentitySet
from sbaudit.prober import ProbeExecutor
from sbaudit.utils.http import HttpSession

BASE_URL = "https://demo.supabase.co"
ANON_KEY = "anon-key"
USER_JWT = "user-jwt"


def tier_of(request: httpx.Request) -> str:
    if 'apikey' not in request.headers:
        return 'noauth'
    if request.headers.get('authorization') == f"Bearer {ANON_KEY}":
        return 'anon'
    return 'user'


class FakeApi:
    """In-memory stand-in for the gateway. Unknown routes answer 404."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.times = []

    def add(self, method, path, status=200, json=None, content=None, headers=None, tier=None, error=None):
        self.routes[(method, path, tier)] = {
            'status': status, 'json': json, 'content': content,
            'headers': headers or {}, 'error': error
        }
        return self

    def calls(self, method=None, path=None, tier=None):
        return [
            call for call in self.requests
            if (method is None or call[0] == method)
            and (path is None or call[1] == path)
            and (tier is None or call[2] == tier)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        tier = tier_of(request)
        path = request.url.path
        self.requests.append((request.method, path, tier))
        self.times.append(time.monotonic())

        route = self.routes.get((request.method, path, tier)) or self.routes.get((request.method, path, None))
        if route is None:
            return httpx.Response(404, json={'message': 'not found'})
        if route['error'] is not None:
            raise route['error']("simulated failure", request=request)
        if route['content'] is not None:
            return httpx.Response(route['status'], content=route['content'], headers=route['headers'])
        return httpx.Response(route['status'], json=route['json'], headers=route['headers'])

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def make_config(**settings):
    data = {'url': BASE_URL, 'anon_key': ANON_KEY}
    data.update(settings)
    return config_from_mapping(data)


@pytest.fixture
def api():
    return FakeApi()


@pytest.fixture
def executor_for(api):
    """Build a ProbeExecutor bound to the fake API for a given config."""
    sessions = []

    def factory(config):
        session = HttpSession(transport=api.transport)
        sessions.append(session)
        return ProbeExecutor(config, IdentitySet.from_config(config), session)

    return factory
