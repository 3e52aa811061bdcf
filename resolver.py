"""
Resolution orchestrator: rate check -> cache lookup -> fetch -> extract -> cache write.

Per request:
  1. Count the request against the client's window (RateLimitError).
  2. Normalize the URL and look for an exact cache hit, then a similar one.
  3. On a hit, bump hitCount, persist, and serve the cached metadata.
  4. On a miss, maybe kick off an expiry sweep in the background, fetch
     the page through the proxy, extract, persist with hitCount=1, serve.

Cache-write failures are logged and never fail the request.
"""

import asyncio
import logging
import random
from urllib.parse import urlsplit

from cache import CacheMatch, CacheStore, SqliteCacheBackend
from config import Settings
from errors import CacheWriteError, InvalidInputError
from extractor import extract_metadata
from fetcher import ProxiedFetcher
from images import placeholder_image_url, resize_image_url
from models import CacheEntry, CacheInfo, ProductMetadata, ResolveResponse
from ratelimit import FixedWindowRateLimiter
from urls import extract_product_id, normalize_url, url_hash

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_PROBABILITY = 0.1
DEFAULT_SWEEP_BATCH = 25
MAX_IMAGE_DIMENSION = 2000


def validate_target_url(url: str | None) -> str:
    """Return the trimmed target URL or raise InvalidInputError."""
    if url is not None and not isinstance(url, str):
        raise InvalidInputError("url", "url parameter is not a valid URL.")
    url = (url or "").strip()
    if not url:
        raise InvalidInputError("url")
    if "://" not in url:
        url = "https://" + url
    try:
        parts = urlsplit(url)
    except ValueError:
        raise InvalidInputError("url", "url parameter is not a valid URL.") from None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise InvalidInputError("url", "url parameter is not a valid URL.")
    return url


def validate_dimension(value, name: str) -> int | None:
    """Parse an optional width/height, 1..MAX_IMAGE_DIMENSION."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidInputError(name, f"{name} parameter must be an integer.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidInputError(name, f"{name} parameter must be an integer.") from None
    if not 1 <= number <= MAX_IMAGE_DIMENSION:
        raise InvalidInputError(name, f"{name} parameter must be between 1 and {MAX_IMAGE_DIMENSION}.")
    return number


class ResolutionService:
    """Turns a product URL into cached, retailer-aware metadata."""

    def __init__(
        self,
        store: CacheStore,
        fetcher: ProxiedFetcher,
        limiter: FixedWindowRateLimiter,
        sweep_probability: float = DEFAULT_SWEEP_PROBABILITY,
        sweep_batch: int = DEFAULT_SWEEP_BATCH,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.fetcher = fetcher
        self.limiter = limiter
        self.sweep_probability = sweep_probability
        self.sweep_batch = sweep_batch
        self._rng = rng or random.Random()
        self._sweeps: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ResolutionService":
        store = CacheStore(
            SqliteCacheBackend(settings.cache_db_path),
            ttl_ms=settings.cache_ttl_ms,
            similarity_threshold=settings.cache_similarity_threshold,
        )
        limiter = FixedWindowRateLimiter(
            window_ms=settings.scrape_rate_limit_window,
            max_requests=settings.scrape_rate_limit_max,
        )
        return cls(
            store=store,
            fetcher=ProxiedFetcher.from_settings(settings),
            limiter=limiter,
            sweep_probability=settings.cache_sweep_probability,
            sweep_batch=settings.cache_sweep_batch,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    async def resolve(
        self,
        url: str | None,
        client_key: str,
        width: int | str | None = None,
        height: int | str | None = None,
    ) -> ResolveResponse:
        self.limiter.check(client_key)
        url = validate_target_url(url)
        width = validate_dimension(width, "width")
        height = validate_dimension(height, "height")
        normalized = normalize_url(url)

        match = await self._lookup(url, normalized)
        if match is not None:
            metadata, info = await self._serve_hit(match)
        else:
            metadata, info = await self._serve_miss(url, normalized)

        return self._build_response(url, metadata, info, width, height)

    async def _lookup(self, url: str, normalized: str) -> CacheMatch | None:
        entry = await asyncio.to_thread(self.store.get_exact, normalized)
        if entry is not None:
            return CacheMatch(entry, 1.0)
        return await asyncio.to_thread(self.store.get_similar, url)

    async def _serve_hit(self, match: CacheMatch) -> tuple[ProductMetadata, CacheInfo]:
        entry = match.entry
        hits = entry.hit_count + 1
        logger.info(f"Cache hit for {entry.normalized_url} (similarity={match.similarity:.2f}, hits={hits})")
        try:
            await asyncio.to_thread(self.store.put, entry.model_copy(update={"hit_count": hits}))
        except CacheWriteError:
            logger.warning(f"Could not record cache hit for {entry.normalized_url}", exc_info=True)

        info = CacheInfo(
            hit=True,
            original_url=entry.url,
            similarity=match.similarity,
            hit_count=hits,
            cached_at=entry.timestamp,
        )
        return entry.metadata, info

    async def _serve_miss(self, url: str, normalized: str) -> tuple[ProductMetadata, CacheInfo]:
        logger.info(f"Cache miss for {normalized}, fetching")
        self.maybe_schedule_sweep()

        result = await self.fetcher.fetch(url)
        metadata, report = extract_metadata(result.html, url, result.final_url)
        if report.missing:
            logger.info(f"Resolved {url} with missing fields: {', '.join(report.missing)}")

        entry = CacheEntry(
            url=url,
            normalized_url=normalized,
            url_hash=url_hash(normalized),
            product_id=extract_product_id(url),
            metadata=metadata,
            hit_count=1,
        )
        cached_at = self.store.now()
        try:
            stored = await asyncio.to_thread(self.store.put, entry)
            cached_at = stored.timestamp
        except CacheWriteError:
            logger.warning(f"Could not cache metadata for {url}", exc_info=True)

        return metadata, CacheInfo(hit=False, cached_at=cached_at)

    def _build_response(
        self,
        url: str,
        metadata: ProductMetadata,
        info: CacheInfo,
        width: int | None,
        height: int | None,
    ) -> ResolveResponse:
        image = metadata.image
        images = list(metadata.images)
        if width or height:
            if image:
                image = resize_image_url(image, width, height)
            else:
                image = placeholder_image_url(metadata.title or metadata.retailer or "Product", width, height)
            images = [resize_image_url(i, width, height) for i in images]

        return ResolveResponse(
            title=metadata.title,
            description=metadata.description,
            image=image,
            url=metadata.url or url,
            price=metadata.price,
            retailer=metadata.retailer,
            images=images,
            cache=info,
        )

    # ------------------------------------------------------------------
    # Background expiry sweep
    # ------------------------------------------------------------------

    def maybe_schedule_sweep(self) -> asyncio.Task | None:
        if self._rng.random() >= self.sweep_probability:
            return None
        task = asyncio.create_task(asyncio.to_thread(self.store.sweep_expired, self.sweep_batch))
        self._sweeps.add(task)
        task.add_done_callback(self._sweep_done)
        return task

    def _sweep_done(self, task: asyncio.Task) -> None:
        self._sweeps.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Expired-entry sweep failed", exc_info=exc)

    @property
    def pending_sweeps(self) -> int:
        return len(self._sweeps)

    async def shutdown(self) -> None:
        """Cancel outstanding sweeps."""
        tasks = list(self._sweeps)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Operational helpers
    # ------------------------------------------------------------------

    async def cache_stats(self) -> dict:
        size = await asyncio.to_thread(self.store.count)
        fresh = await asyncio.to_thread(self.store.count_fresh)
        return {
            "size": size,
            "fresh": fresh,
            "ttlDays": self.store.ttl_ms / (24 * 60 * 60 * 1000),
        }

    def reset_rate_limit(self, client_key: str) -> bool:
        return self.limiter.reset(client_key)
