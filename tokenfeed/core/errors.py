from typing import Any, Dict, List, Optional


class TokenFeedError(Exception):
    """Base class for every error raised by tokenfeed."""


class FetchError(TokenFeedError):
    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        attempts: int = 0,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.attempts = attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "url": self.url,
            "status_code": self.status_code,
            "attempts": self.attempts,
        }


class RateLimited(FetchError):
    """HTTP 429 persisted through every attempt."""


class TransientNetworkError(FetchError):
    """Timeouts or connection failures persisted through every attempt."""


class HardUpstreamError(FetchError):
    """Non-2xx, non-429 response. Never retried."""


class MalformedPayload(FetchError):
    """Response parsed (or failed to) but does not match the expected shape."""


class FetchCancelled(FetchError):
    pass


class CacheBackendError(TokenFeedError):
    pass


class UpstreamUnavailable(TokenFeedError):
    """Every strategy failed and no cache tier had anything to serve."""

    def __init__(
        self,
        message: str,
        last_strategy: Optional[str] = None,
        last_status: Optional[int] = None,
        attempts: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message)
        self.last_strategy = last_strategy
        self.last_status = last_status
        self.attempts = attempts or []

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (last_strategy={self.last_strategy}, last_status={self.last_status})"
