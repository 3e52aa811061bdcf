"""
Pytest configuration and fixtures.
"""
import httpx
import pytest

from cache import CacheStore, MemoryCacheBackend
from config import Settings
from fetcher import ProxiedFetcher
from ratelimit import FixedWindowRateLimiter
from resolver import ResolutionService

START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = START_MS):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class PageRoutes:
    """MockTransport handler serving canned pages by exact URL."""

    def __init__(self):
        self.pages: dict[str, tuple[int, str]] = {}
        self.redirects: dict[str, str] = {}
        self.requests: list[str] = []

    def add(self, url: str, html: str, status: int = 200) -> None:
        self.pages[url] = (status, html)

    def redirect(self, url: str, location: str) -> None:
        self.redirects[url] = location

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.redirects:
            return httpx.Response(302, headers={"Location": self.redirects[url]})
        status, html = self.pages.get(url, (404, "<html><body>Not found</body></html>"))
        return httpx.Response(status, html=html)


@pytest.fixture(autouse=True)
def proxy_env(monkeypatch):
    """Required proxy settings for anything that reads the environment."""
    monkeypatch.setenv("PROXY_ENDPOINT", "proxy.test")
    monkeypatch.setenv("PROXY_PORT", "8080")
    monkeypatch.setenv("PROXY_USERNAME", "proxy-user")
    monkeypatch.setenv("PROXY_PASSWORD", "proxy-secret")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def routes():
    return PageRoutes()


@pytest.fixture
def fetcher(routes):
    """Fetcher whose proxy hop is replaced by the canned routes."""
    return ProxiedFetcher(proxy_url=None, transport=httpx.MockTransport(routes), retries=2)


@pytest.fixture
def store(clock):
    return CacheStore(MemoryCacheBackend(), clock=clock)


@pytest.fixture
def limiter(clock):
    return FixedWindowRateLimiter(window_ms=60_000, max_requests=10, clock=clock)


@pytest.fixture
def service(store, fetcher, limiter):
    """Resolution service with the sweep switched off."""
    return ResolutionService(store=store, fetcher=fetcher, limiter=limiter, sweep_probability=0.0)


@pytest.fixture
def settings():
    return Settings(
        proxy_endpoint="proxy.test",
        proxy_port=8080,
        proxy_username="proxy-user",
        proxy_password="proxy-secret",
        app_env="development",
        _env_file=None,
    )


@pytest.fixture
def product_page():
    """Build a minimal product page with Open Graph tags."""

    def _build(
        title: str = "Blue Widget",
        description: str = "A very blue widget.",
        image: str | None = "https://cdn.shop.example/images/widget.jpg",
        price: str | None = "$19.99",
        body: str = "",
    ) -> str:
        head = [f'<meta property="og:title" content="{title}">']
        if description:
            head.append(f'<meta property="og:description" content="{description}">')
        if image:
            head.append(f'<meta property="og:image" content="{image}">')
        price_html = f'<span class="price">{price}</span>' if price else ""
        return (
            "<html><head><title>Shop | {t}</title>{h}</head>"
            "<body><h1>{t}</h1>{p}{b}</body></html>"
        ).format(t=title, h="".join(head), p=price_html, b=body)

    return _build
