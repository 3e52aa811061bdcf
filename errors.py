"""
Error taxonomy for the URL metadata resolver.

Only InvalidInputError, RateLimitError and UpstreamFetchError ever reach a
caller. CacheWriteError is raised by the cache layer and recovered by the
orchestrator; ConfigError stops the process at startup.
"""


class ResolverError(Exception):
    """Base class for all resolver errors."""

    status_code: int = 500
    public_message: str = "Internal server error."


class InvalidInputError(ResolverError):
    """A required request field is missing or malformed."""

    status_code = 400

    def __init__(self, field: str, message: str | None = None):
        self.field = field
        self.public_message = message or f"{field} parameter is missing."
        super().__init__(self.public_message)


class RateLimitError(ResolverError):
    """The client exceeded its request quota for the current window."""

    status_code = 429
    public_message = "Too Many Requests"

    def __init__(self, client_key: str, retry_after_ms: int = 0):
        self.client_key = client_key
        self.retry_after_ms = retry_after_ms
        super().__init__(f"rate limit exceeded for {client_key}")


class UpstreamFetchError(ResolverError):
    """The target page could not be retrieved through the proxy."""

    status_code = 500

    def __init__(self, url: str, message: str, upstream_status: int | None = None):
        self.url = url
        self.upstream_status = upstream_status
        # Callers only ever see the URL, never the proxy or network detail
        self.public_message = f"Failed to retrieve preview from {url}."
        super().__init__(message)


class CacheWriteError(ResolverError):
    """Persisting a cache entry failed."""


class ConfigError(ResolverError):
    """Required configuration is missing or invalid."""
