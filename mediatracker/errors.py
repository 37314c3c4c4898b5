"""Exception types raised by provider clients."""

from __future__ import annotations


class ProviderError(RuntimeError):
    """A provider failed in a way that retrying will not fix."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code


class QuotaExceededError(ProviderError):
    """A provider rejected the request because its rate limit or quota ran out."""

    def __init__(self, provider: str, message: str = "quota exceeded"):
        super().__init__(provider, message, status_code=429)
