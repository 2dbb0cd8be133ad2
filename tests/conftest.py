import copy

import pytest

from tokenfeed.utils.config_loader import DEFAULT_SETTINGS

INVALID_JSON = object()


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}

    def json(self):
        if self._payload is INVALID_JSON:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Stands in for requests.Session: routes GETs by URL suffix to queued responses.

    The last queued item for a route is reused once the queue drains. Items
    may be FakeResponse objects, exceptions to raise, or callables taking the
    request params.
    """

    INVALID_JSON = INVALID_JSON

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False

    @staticmethod
    def response(status_code=200, payload=None, headers=None):
        return FakeResponse(status_code, payload, headers)

    def route(self, path, *items):
        self.routes.setdefault(path, []).extend(items)

    def calls_to(self, path):
        return [call for call in self.calls if call["url"].endswith(path)]

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": headers, "timeout": timeout})
        for path, queue in self.routes.items():
            if not url.endswith(path):
                continue
            item = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(params or {})
            return item
        return FakeResponse(404, {"error": f"no route for {url}"})

    def close(self):
        self.closed = True


def build_records(count, start=0, prefix="TK"):
    """Mobula-shaped records with strictly descending market caps."""
    return [
        {
            "id": f"{prefix.lower()}-{i}",
            "name": f"Token {i}",
            "symbol": f"{prefix}{i}",
            "price": float(i + 1),
            "market_cap": float(10_000_000 - i * 1000),
            "price_change_24h": 1.5,
            "volume": 5000.0,
            "rank": i + 1,
            "logo": f"https://example.com/{i}.png",
        }
        for i in range(start, start + count)
    ]


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def settings():
    data = copy.deepcopy(DEFAULT_SETTINGS)
    data["provider"]["mobula"]["api_key"] = "test-key"
    data["cache"]["durable_enabled"] = False
    return data


class SleepRecorder:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
def clock():
    class Clock:
        def __init__(self):
            self.now = 1_700_000_000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return Clock()


@pytest.fixture
def make_records():
    return build_records
