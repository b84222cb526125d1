from __future__ import annotations


class ProviderError(Exception):
    """Base class for failures reported by a category provider."""


class ProviderTimeoutError(ProviderError):
    pass


class ProviderHTTPError(ProviderError):
    def __init__(self, status: int, message: str | None = None) -> None:
        self.status = int(status)
        super().__init__(message or f"Backend request failed: HTTP {self.status}")


class RateLimitedError(ProviderHTTPError):
    def __init__(self, message: str | None = None) -> None:
        super().__init__(429, message or "Backend rate limit exceeded (HTTP 429)")


class ProviderNotConfiguredError(ProviderError):
    pass
