import json

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from ppvnet.config import EnvFile, RunSettings
from ppvnet.context import build_context


def make_response(status, body=None, headers=None, url="https://example.test/"):
    response = requests.Response()
    response.status_code = status
    response.url = url
    response.headers = CaseInsensitiveDict(headers or {})
    if body is None:
        response._content = b""
    elif isinstance(body, (dict, list)):
        response._content = json.dumps(body).encode()
    else:
        response._content = str(body).encode()
    return response


class FakeSession:
    """Replays queued responses and records every request."""

    def __init__(self, responses=None, routes=None):
        self.queue = list(responses or [])
        self.routes = routes or {}
        self.calls = []

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        for (route_method, fragment), handler in self.routes.items():
            if route_method == method and fragment in url:
                return handler() if callable(handler) else handler
        if not self.queue:
            raise AssertionError(f"unexpected request {method} {url}")
        item = self.queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeTokens:
    def __init__(self):
        self.requested = []

    def get_token(self, audience):
        self.requested.append(audience)
        return f"token-for-{audience}"


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tokens():
    return FakeTokens()


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text(
        "# deployment settings\n"
        "TENANT_ID=tenant-1\n"
        "AZURE_SUBSCRIPTION_ID=sub-1\n"
        "AZURE_LOCATION=westeurope\n"
        "\n"
        "RESOURCE_GROUP=rg-vnet\n"
        "ENTERPRISE_POLICY_NAME=ep-fabrikam\n"
        "POWER_PLATFORM_ENVIRONMENT_NAME=Fabrikam-Tst\n"
        "POWER_PLATFORM_LOCATION=europe\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def make_context(tokens, clock):
    def factory(path, session, runner=None, **settings):
        settings.setdefault("poll_interval", 5)
        settings.setdefault("max_attempts", 3)
        kwargs = {}
        if runner is not None:
            kwargs["runner"] = runner
        return build_context(
            EnvFile.load(path),
            RunSettings(**settings),
            tokens=tokens,
            session=session,
            sleep=clock.sleep,
            clock=clock,
            **kwargs,
        )

    return factory
