import threading
from unittest.mock import MagicMock

import pytest
import requests

from tokenfeed.core.errors import (
    FetchCancelled,
    HardUpstreamError,
    MalformedPayload,
    RateLimited,
    TransientNetworkError,
)
from tokenfeed.core.retrying_fetcher import RetryingFetcher

URL = "https://api.mobula.io/api/1/market/list"


class TestRetryingFetcher:

    @pytest.fixture
    def fetcher(self, fake_session, no_sleep):
        return RetryingFetcher(session=fake_session, sleep=no_sleep, max_attempts=4, initial_delay=2.0)

    def test_success_returns_payload(self, fetcher, fake_session, no_sleep):
        fake_session.route("market/list", fake_session.response(200, {"data": [{"symbol": "BTC"}]}))

        response = fetcher.fetch(URL, params={"limit": 400})

        assert response.status_code == 200
        assert response.payload == {"data": [{"symbol": "BTC"}]}
        assert response.attempts == 1
        assert no_sleep.calls == []
        assert fake_session.calls[0]["params"] == {"limit": 400}
        assert fake_session.calls[0]["timeout"] == 12

    def test_rate_limited_then_success_backs_off_exponentially(self, fetcher, fake_session, no_sleep):
        fake_session.route(
            "market/list",
            fake_session.response(429),
            fake_session.response(429),
            fake_session.response(429),
            fake_session.response(200, []),
        )

        response = fetcher.fetch(URL)

        assert response.attempts == 4
        assert no_sleep.calls == [2.0, 4.0, 8.0]

    def test_rate_limit_exhaustion_raises(self, fetcher, fake_session, no_sleep):
        fake_session.route("market/list", fake_session.response(429))

        with pytest.raises(RateLimited) as exc_info:
            fetcher.fetch(URL)

        assert exc_info.value.status_code == 429
        assert exc_info.value.attempts == 4
        assert len(fake_session.calls) == 4
        assert no_sleep.calls == [2.0, 4.0, 8.0]

    def test_retry_after_header_extends_wait(self, fetcher, fake_session, no_sleep):
        fake_session.route(
            "market/list",
            fake_session.response(429, headers={"Retry-After": "5"}),
            fake_session.response(200, []),
        )

        fetcher.fetch(URL)

        assert no_sleep.calls == [5.0]

    def test_hard_error_is_not_retried(self, fetcher, fake_session, no_sleep):
        fake_session.route("market/list", fake_session.response(500, {"error": "boom"}))

        with pytest.raises(HardUpstreamError) as exc_info:
            fetcher.fetch(URL)

        assert exc_info.value.status_code == 500
        assert len(fake_session.calls) == 1
        assert no_sleep.calls == []

    def test_not_found_is_hard_error(self, fetcher, fake_session):
        with pytest.raises(HardUpstreamError) as exc_info:
            fetcher.fetch("https://api.mobula.io/api/1/unknown")
        assert exc_info.value.status_code == 404

    def test_transport_error_is_retried(self, fetcher, fake_session, no_sleep):
        fake_session.route(
            "market/list",
            requests.exceptions.Timeout("read timed out"),
            fake_session.response(200, []),
        )

        response = fetcher.fetch(URL)

        assert response.attempts == 2
        assert no_sleep.calls == [2.0]

    def test_transport_exhaustion_raises(self, fetcher, fake_session):
        fake_session.route("market/list", requests.exceptions.ConnectionError("reset"))

        with pytest.raises(TransientNetworkError) as exc_info:
            fetcher.fetch(URL, max_attempts=2)

        assert exc_info.value.attempts == 2
        assert len(fake_session.calls) == 2

    def test_invalid_json_is_malformed(self, fetcher, fake_session):
        fake_session.route("market/list", fake_session.response(200, fake_session.INVALID_JSON))

        with pytest.raises(MalformedPayload):
            fetcher.fetch(URL)
        assert len(fake_session.calls) == 1

    def test_scalar_payload_is_malformed(self, fetcher, fake_session):
        fake_session.route("market/list", fake_session.response(200, "ok"))

        with pytest.raises(MalformedPayload):
            fetcher.fetch(URL)

    def test_cancelled_before_first_attempt(self, fetcher, fake_session):
        event = threading.Event()
        event.set()

        with pytest.raises(FetchCancelled):
            fetcher.fetch(URL, cancel_event=event)
        assert fake_session.calls == []

    def test_cancelled_during_backoff(self, fetcher, fake_session, no_sleep):
        fake_session.route("market/list", fake_session.response(429))
        event = MagicMock()
        event.is_set.side_effect = [False, True]

        with pytest.raises(FetchCancelled):
            fetcher.fetch(URL, cancel_event=event)

        assert no_sleep.calls == [2.0]
        assert len(fake_session.calls) == 1

    def test_backoff_waits_on_cancel_event_without_sleep_hook(self, fake_session):
        fake_session.route("market/list", fake_session.response(429))
        fetcher = RetryingFetcher(session=fake_session, initial_delay=2.0)
        event = MagicMock()
        event.is_set.return_value = False
        event.wait.return_value = True

        with pytest.raises(FetchCancelled):
            fetcher.fetch(URL, cancel_event=event)

        event.wait.assert_called_once_with(2.0)

    def test_headers_are_passed_per_call(self, fetcher, fake_session):
        fake_session.route("market/list", fake_session.response(200, []))

        fetcher.fetch(URL, headers={"Authorization": "Bearer abc"})

        assert fake_session.calls[0]["headers"] == {"Authorization": "Bearer abc"}

    def test_zero_attempts_rejected(self, fetcher):
        with pytest.raises(ValueError):
            fetcher.fetch(URL, max_attempts=0)

    def test_from_settings(self, settings, fake_session):
        settings["fetcher"]["timeout_seconds"] = 7
        settings["fetcher"]["max_attempts"] = 2

        fetcher = RetryingFetcher.from_settings(settings, session=fake_session)

        assert fetcher.timeout == 7
        assert fetcher.max_attempts == 2
        assert fetcher.session is fake_session

    def test_default_session_is_pooled(self):
        fetcher = RetryingFetcher(pool_size=5)
        try:
            adapter = fetcher.session.get_adapter("https://api.mobula.io")
            assert adapter.max_retries.total == 0
            assert fetcher.session.headers["Accept"] == "application/json"
        finally:
            fetcher.close()

    def test_close_releases_session(self, fetcher, fake_session):
        fetcher.close()
        assert fake_session.closed is True
