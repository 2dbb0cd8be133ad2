import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from tokenfeed.core.errors import (
    FetchCancelled,
    HardUpstreamError,
    MalformedPayload,
    RateLimited,
    TransientNetworkError,
)
from tokenfeed.utils.logger import get_logger, log_metric

TRANSPORT_ERRORS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
    requests.exceptions.ChunkedEncodingError,
)

MAX_RETRY_AFTER_SECONDS = 60.0


@dataclass
class RawResponse:
    url: str
    status_code: int
    payload: Any
    attempts: int
    elapsed_ms: int


class RetryingFetcher:
    """Single logical HTTP GET with bounded retries and exponential backoff.

    429 and transport failures are retried, doubling the delay after each
    wait. Any other non-2xx status fails immediately with HardUpstreamError.
    Each attempt is bounded by ``timeout`` seconds and an optional
    ``threading.Event`` cancels the call between attempts or during a wait.
    """

    def __init__(
        self,
        timeout: float = 12,
        max_attempts: int = 4,
        initial_delay: float = 2.0,
        pool_size: int = 20,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.logger = get_logger("RetryingFetcher")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.pool_size = pool_size
        self._sleep = sleep
        self.session = session or self._initialize_session()

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **kwargs) -> "RetryingFetcher":
        fetcher_config = settings.get("fetcher", {})
        return cls(
            timeout=fetcher_config.get("timeout_seconds", 12),
            max_attempts=fetcher_config.get("max_attempts", 4),
            initial_delay=fetcher_config.get("initial_delay_seconds", 2.0),
            pool_size=fetcher_config.get("pool_size", 20),
            **kwargs,
        )

    def _initialize_session(self) -> requests.Session:
        session = requests.Session()

        # Retries happen in fetch(); the adapter only pools connections.
        adapter = HTTPAdapter(
            pool_connections=self.pool_size,
            pool_maxsize=self.pool_size,
            max_retries=Retry(total=0, raise_on_status=False),
        )
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        session.headers.update(
            {
                "User-Agent": "tokenfeed/1.0",
                "Accept": "application/json",
                "Accept-Encoding": "gzip, deflate",
            }
        )
        self.logger.info(f"HTTP session initialized ({self.pool_size}x{self.pool_size} pooling)")
        return session

    def _wait(self, delay: float, cancel_event: Optional[threading.Event]) -> None:
        if self._sleep is not None:
            self._sleep(delay)
            cancelled = cancel_event is not None and cancel_event.is_set()
        elif cancel_event is not None:
            cancelled = cancel_event.wait(delay)
        else:
            time.sleep(delay)
            cancelled = False

        if cancelled:
            raise FetchCancelled("Fetch cancelled during backoff")

    @staticmethod
    def _retry_after(response: requests.Response) -> Optional[float]:
        try:
            value = float(response.headers.get("Retry-After"))
        except (TypeError, ValueError):
            return None
        return min(value, MAX_RETRY_AFTER_SECONDS) if value > 0 else None

    def fetch(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        initial_delay: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> RawResponse:
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        delay = initial_delay if initial_delay is not None else self.initial_delay
        last_error = None

        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise FetchCancelled(f"Fetch cancelled before attempt {attempt}", url=url, attempts=attempt - 1)

            start_time = time.time()
            try:
                response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
            except TRANSPORT_ERRORS as e:
                last_error = f"{type(e).__name__}: {str(e)}"
                self.logger.warning(f"Transport error for {url} (attempt {attempt}/{attempts}): {last_error}")
                log_metric("fetch_transport_error", 1, {"url": url, "attempt": attempt})
                if attempt < attempts:
                    self._wait(delay, cancel_event)
                    delay *= 2
                    continue
                log_metric("fetch_exhausted", 1, {"url": url, "reason": "transport"})
                raise TransientNetworkError(
                    f"Transport failure after {attempts} attempts: {last_error}", url=url, attempts=attempt
                ) from e

            elapsed_ms = int((time.time() - start_time) * 1000)
            status_code = response.status_code

            if status_code == 429:
                self.logger.warning(f"Rate limited (429) for {url} (attempt {attempt}/{attempts})")
                log_metric("fetch_rate_limited", 1, {"url": url, "attempt": attempt})
                if attempt < attempts:
                    retry_after = self._retry_after(response)
                    self._wait(max(delay, retry_after or 0.0), cancel_event)
                    delay *= 2
                    continue
                log_metric("fetch_exhausted", 1, {"url": url, "reason": "rate_limited"})
                raise RateLimited(
                    f"Still rate limited after {attempts} attempts", url=url, status_code=429, attempts=attempt
                )

            if not 200 <= status_code < 300:
                self.logger.warning(f"HTTP error {status_code} for {url}, not retrying")
                log_metric("fetch_hard_error", 1, {"url": url, "status": status_code})
                raise HardUpstreamError(
                    f"HTTP {status_code} from {url}", url=url, status_code=status_code, attempts=attempt
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise MalformedPayload(
                    f"Invalid JSON from {url}", url=url, status_code=status_code, attempts=attempt
                ) from e

            if not isinstance(payload, (dict, list)):
                raise MalformedPayload(
                    f"Unexpected payload type {type(payload).__name__} from {url}",
                    url=url,
                    status_code=status_code,
                    attempts=attempt,
                )

            self.logger.debug(f"Fetched {url} (attempt {attempt}, {elapsed_ms}ms)")
            log_metric("fetch_success", 1, {"url": url, "attempt": attempt, "response_time_ms": elapsed_ms})
            return RawResponse(
                url=url, status_code=status_code, payload=payload, attempts=attempt, elapsed_ms=elapsed_ms
            )

        # attempts >= 1 always returns or raises inside the loop
        raise TransientNetworkError(f"No attempt completed: {last_error}", url=url, attempts=attempts)

    def close(self) -> None:
        if self.session:
            self.session.close()
            self.logger.debug("HTTP session closed")
