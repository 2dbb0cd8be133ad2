import json
import logging

import pytest

from tokenfeed.utils.logger import (
    FileFormatter,
    RateLimiter,
    SecretSanitizer,
    correlation_decorator,
    get_correlation_id,
    set_correlation_id,
)


@pytest.fixture(autouse=True)
def reset_correlation_id():
    set_correlation_id(None)
    yield
    set_correlation_id(None)


class TestSecretSanitizer:

    def test_bearer_token_masked(self):
        text = SecretSanitizer.sanitize("Authorization: Bearer abc123.def")
        assert "abc123" not in text
        assert "****" in text

    def test_query_api_key_masked(self):
        text = SecretSanitizer.sanitize("GET /market/list?api_key=secret123&limit=400")
        assert text == "GET /market/list?api_key=****&limit=400"

    def test_plain_text_untouched(self):
        assert SecretSanitizer.sanitize("Fetched 300 assets") == "Fetched 300 assets"


class TestRateLimiter:

    def test_blocks_repeats_within_window(self):
        limiter = RateLimiter(max_messages=2, window_seconds=5)

        assert limiter.should_log("retrying", "WARNING") is True
        assert limiter.should_log("retrying", "WARNING") is True
        assert limiter.should_log("retrying", "WARNING") is False
        assert limiter.should_log("other", "WARNING") is True
        assert limiter.should_log("retrying", "ERROR") is True


class TestFileFormatter:

    def test_json_output_is_sanitized(self):
        record = logging.makeLogRecord({
            "name": "MarketDataService",
            "levelname": "INFO",
            "levelno": logging.INFO,
            "msg": "calling with api_key=topsecret",
            "correlation_id": "abcd1234",
        })

        data = json.loads(FileFormatter(use_json=True).format(record))

        assert data["message"] == "calling with api_key=****"
        assert data["correlation_id"] == "abcd1234"
        assert data["module"] == "MarketDataService"

    def test_long_messages_truncated(self):
        record = logging.makeLogRecord({"msg": "x" * 50, "levelname": "INFO", "levelno": logging.INFO})

        data = json.loads(FileFormatter(use_json=True, max_message_length=10).format(record))

        assert data["message"] == "x" * 10 + "...[truncated]"


class TestCorrelationDecorator:

    def test_explicit_id_is_active_during_call(self):
        @correlation_decorator("fixed-id")
        def work():
            return get_correlation_id()

        assert work() == "fixed-id"
        assert get_correlation_id() is None

    def test_generates_id_when_none_active(self):
        @correlation_decorator()
        def work():
            return get_correlation_id()

        cid = work()
        assert cid and len(cid) == 8

    def test_inherits_outer_id(self):
        set_correlation_id("outer")

        @correlation_decorator()
        def work():
            return get_correlation_id()

        assert work() == "outer"
        assert get_correlation_id() == "outer"

    def test_exception_propagates_and_restores_id(self):
        set_correlation_id("outer")

        @correlation_decorator("inner")
        def work():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            work()
        assert get_correlation_id() == "outer"
