"""
Upstream page fetcher routed through a forward proxy.

Each fetch is a GET with a browser user-agent, a fixed per-attempt timeout
and a bounded number of retries on network failures and transient status
codes. Proxy credentials never appear in logs or raised messages.
"""

import logging
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
    wait_none,
)

from config import Settings
from errors import UpstreamFetchError

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)

REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Status codes worth another attempt; anything else >= 400 fails immediately
RETRYABLE_STATUS = frozenset({408, 413, 429, 500, 502, 503, 504, 521, 522, 524})


class RetryableStatusError(Exception):
    """Upstream answered with a status worth another attempt."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


@dataclass
class FetchResult:
    html: str
    final_url: str  # after redirects
    status_code: int
    attempts: int = 1


class ProxiedFetcher:
    """Fetch target pages through the configured forward proxy.

    ``transport`` replaces the proxy hop entirely (tests pass an
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        proxy_url: str | None,
        timeout: float = 15.0,
        retries: int = 2,
        insecure_tls: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delay: float = 0.0,
    ):
        self._proxy_url = proxy_url
        self.timeout = timeout
        self.retries = retries
        self.insecure_tls = insecure_tls
        self._transport = transport
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ProxiedFetcher":
        if settings.proxy_insecure_tls:
            logger.warning("Certificate validation is disabled for the proxy hop (PROXY_INSECURE_TLS)")
        return cls(
            proxy_url=settings.proxy_url,
            timeout=settings.fetch_timeout_seconds,
            retries=settings.fetch_retries,
            insecure_tls=settings.proxy_insecure_tls,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        kwargs = {
            "headers": REQUEST_HEADERS,
            "timeout": httpx.Timeout(self.timeout),
            "follow_redirects": True,
            "verify": not self.insecure_tls,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        elif self._proxy_url:
            kwargs["proxy"] = self._proxy_url
        return httpx.AsyncClient(**kwargs)

    async def fetch(self, url: str) -> FetchResult:
        """GET ``url``; raise UpstreamFetchError once all attempts are spent."""
        attempts = 1 + self.retries
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential_jitter(initial=self.retry_delay, max=30) if self.retry_delay else wait_none(),
            retry=retry_if_exception_type((httpx.TransportError, RetryableStatusError)),
            before_sleep=_log_retry(url, attempts),
            reraise=True,
        )

        try:
            async with self._client() as client:
                async for attempt in retrying:
                    with attempt:
                        resp = await client.get(url)
                        if resp.status_code in RETRYABLE_STATUS:
                            raise RetryableStatusError(resp.status_code)
        except (httpx.HTTPError, httpx.InvalidURL, RetryableStatusError) as e:
            raise self._failure(url, _describe(e), getattr(e, "status_code", None)) from e

        if resp.status_code >= 400:
            logger.warning(f"Upstream returned {resp.status_code} for {url}, not retrying")
            raise self._failure(url, f"HTTP {resp.status_code}", resp.status_code)

        return FetchResult(
            html=resp.text,
            final_url=str(resp.url),
            status_code=resp.status_code,
            attempts=attempt.retry_state.attempt_number,
        )

    @staticmethod
    def _failure(url: str, error: str, status: int | None) -> UpstreamFetchError:
        logger.error(f"Scraping failed for {url} via proxy: {error} (status={status})")
        return UpstreamFetchError(url, error, upstream_status=status)


def _log_retry(url: str, attempts: int):
    def log(state: RetryCallState) -> None:
        error = _describe(state.outcome.exception())
        logger.warning(f"Fetch attempt {state.attempt_number}/{attempts} for {url} failed: {error}")

    return log


def _describe(exc: BaseException | None) -> str:
    if isinstance(exc, RetryableStatusError):
        return f"HTTP {exc.status_code}"
    return f"{type(exc).__name__}: {exc}"
