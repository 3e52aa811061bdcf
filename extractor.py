"""
Retailer-aware metadata extractor.

Every field (title, description, image, price) is recovered by an ordered
chain of independent strategies: retailer page-template patterns first,
then a JSON-LD pass, then Open Graph / Twitter card meta tags. The first
strategy whose result survives the field's cleanup wins. A field no
strategy can fill is simply left empty.

Two layers run per page:
  A) Generic link-preview pass (any host)
  B) Retailer-specific chains for known hosts, layered on top of A
"""

import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable
from urllib.parse import urlsplit

import orjson
from bs4 import BeautifulSoup

from images import clean_image_url, looks_like_image_file
from models import MAX_IMAGES, ProductMetadata
from parser import ParsedPage, parse_html

logger = logging.getLogger(__name__)

FIELDS = ("title", "description", "image", "price")

MAX_TITLE_CHARS = 300
MAX_DESCRIPTION_CHARS = 1000


@dataclass
class PageContext:
    """What a strategy gets to look at."""

    url: str  # URL as requested
    final_url: str  # URL after redirects
    parsed: ParsedPage

    @property
    def html(self) -> str:
        return self.parsed.html

    @property
    def soup(self) -> BeautifulSoup:
        if self.parsed.soup is None:
            self.parsed.soup = BeautifulSoup(self.parsed.html, "lxml")
        return self.parsed.soup


@dataclass(frozen=True)
class Strategy:
    """One way of finding one field. Returns a raw string or None."""

    name: str
    fn: Callable[[PageContext], str | None]

    def __call__(self, ctx: PageContext) -> str | None:
        try:
            value = self.fn(ctx)
        except (ValueError, TypeError, KeyError, IndexError, orjson.JSONDecodeError) as e:
            logger.debug(f"Strategy {self.name} raised {e!r}")
            return None
        if isinstance(value, str):
            return value.strip() or None
        return None


@dataclass
class ExtractionReport:
    """Which strategy produced each field, and which fields stayed empty."""

    url: str = ""
    retailer: str = "generic"
    sources: dict[str, str] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)
    image_count: int = 0


# ---------------------------------------------------------------------------
# Field cleanup
# ---------------------------------------------------------------------------

_NON_PRICE_CHARS = re.compile(r"[^0-9.]")
_TWO_PLACES = Decimal("0.01")


def format_price(raw: str | None) -> str | None:
    """Normalize a scraped price to ``$<digits>.<2 digits>``.

    Strips every non-numeric character, then requires what is left to be a
    valid positive decimal. "1,299.5" -> "$1299.50"; "1.2.3" -> None.
    """
    if raw is None:
        return None
    cleaned = _NON_PRICE_CHARS.sub("", str(raw))
    if not cleaned or cleaned == ".":
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    try:
        return f"${amount.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)}"
    except InvalidOperation:
        # More digits than the decimal context can hold
        return None


def clean_text(raw: str | None, limit: int) -> str | None:
    """Unescape entities, strip tags, collapse whitespace, truncate."""
    if not raw:
        return None
    text = html_lib.unescape(str(raw))
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        return None
    if len(text) > limit:
        text = text[: limit - 1].rstrip() + "…"
    return text


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return None


# ---------------------------------------------------------------------------
# Strategy builders
# ---------------------------------------------------------------------------


def regex(name: str, pattern: str, flags: int = 0, group: int = 1, json_string: bool = False) -> Strategy:
    """First match of ``pattern`` against the raw HTML.

    With ``json_string`` the captured text is decoded as the body of a JSON
    string literal (for values lifted out of inline script state).
    """
    compiled = re.compile(pattern, flags)

    def _run(ctx: PageContext) -> str | None:
        match = compiled.search(ctx.html)
        if not match:
            return None
        value = match.group(group)
        if json_string:
            return orjson.loads(f'"{value}"')
        return value

    return Strategy(name, _run)


def css_text(name: str, selector: str) -> Strategy:
    """Visible text of the first element matching ``selector``.

    List containers (feature bullets) are joined item by item.
    """

    def _run(ctx: PageContext) -> str | None:
        el = ctx.soup.select_one(selector)
        if el is None:
            return None
        items = [li.get_text(" ", strip=True) for li in el.find_all("li")]
        items = [i for i in items if i]
        if items:
            return " ".join(items)
        return el.get_text(" ", strip=True)

    return Strategy(name, _run)


def css_attr(name: str, selector: str, *attrs: str) -> Strategy:
    """First non-empty attribute among ``attrs`` on elements matching ``selector``."""

    def _run(ctx: PageContext) -> str | None:
        for el in ctx.soup.select(selector):
            for attr in attrs:
                value = el.get(attr)
                if isinstance(value, str) and value.strip():
                    return value
        return None

    return Strategy(name, _run)


def meta(name: str, source: str, key: str) -> Strategy:
    """A parsed meta tag: ``source`` is "og", "twitter" or "meta"."""

    def _run(ctx: PageContext) -> str | None:
        tags = {
            "og": ctx.parsed.og_tags,
            "twitter": ctx.parsed.twitter_tags,
            "meta": ctx.parsed.meta_tags,
        }[source]
        return tags.get(key)

    return Strategy(name, _run)


def _first_image(value: Any) -> str | None:
    """JSON-LD ``image`` can be a string, a list, or an ImageObject."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("url") or value.get("contentUrl")
    if isinstance(value, list):
        for item in value:
            found = _first_image(item)
            if found:
                return found
    return None


def _ld_offer_price(product: dict) -> str | None:
    offers = product.get("offers")
    if isinstance(offers, list) and offers:
        offers = offers[0]
    if not isinstance(offers, dict):
        return None
    for key in ("price", "lowPrice", "highPrice"):
        if offers.get(key) not in (None, ""):
            return str(offers[key])
    spec = offers.get("priceSpecification")
    if isinstance(spec, dict) and spec.get("price") not in (None, ""):
        return str(spec["price"])
    return None


def json_ld(name: str, key: str) -> Strategy:
    """A field from the page's JSON-LD Product block."""

    def _run(ctx: PageContext) -> str | None:
        product = ctx.parsed.json_ld_product
        if product is None:
            return None
        if key == "image":
            return _first_image(product.get("image"))
        if key == "price":
            return _ld_offer_price(product)
        value = product.get(key)
        return str(value) if value is not None else None

    return Strategy(name, _run)


def _amazon_dynamic_image(ctx: PageContext) -> str | None:
    """Largest entry of the ``data-a-dynamic-image`` JSON map on the hero image."""
    el = ctx.soup.select_one("#landingImage[data-a-dynamic-image], img.a-dynamic-image[data-a-dynamic-image]")
    if el is None:
        return None
    sizes = orjson.loads(html_lib.unescape(el["data-a-dynamic-image"]))
    if not isinstance(sizes, dict) or not sizes:
        return None

    def _area(item: tuple[str, Any]) -> int:
        dims = item[1]
        if isinstance(dims, list) and len(dims) >= 2:
            return int(dims[0]) * int(dims[1])
        return 0

    return max(sizes.items(), key=_area)[0]


def _amazon_split_price(ctx: PageContext) -> str | None:
    """Whole + fraction spans rendered separately inside ``.a-price``."""
    whole = ctx.soup.select_one(".a-price .a-price-whole")
    if whole is None:
        return None
    fraction = whole.find_next_sibling(class_="a-price-fraction")
    digits = whole.get_text(strip=True).rstrip(".")
    if fraction is not None:
        return f"{digits}.{fraction.get_text(strip=True)}"
    return digits


# ---------------------------------------------------------------------------
# Structured-data and meta-tag fallbacks, shared by every chain
# ---------------------------------------------------------------------------

# Lower-priority catch-all price tokens
_GENERIC_PRICE = (
    regex("generic.dollar-amount", r"\$\s?([0-9][0-9,]*\.[0-9]{2})(?![0-9])"),
    regex("generic.usd-amount", r"USD\s+([0-9][0-9,]*\.?[0-9]*)"),
)


def _structured_fallbacks(field_name: str) -> tuple[Strategy, ...]:
    if field_name == "title":
        return (
            json_ld("json_ld.name", "name"),
            meta("og.title", "og", "title"),
            meta("twitter.title", "twitter", "title"),
        )
    if field_name == "description":
        return (
            json_ld("json_ld.description", "description"),
            meta("og.description", "og", "description"),
            meta("twitter.description", "twitter", "description"),
            meta("meta.description", "meta", "description"),
        )
    if field_name == "image":
        return (
            json_ld("json_ld.image", "image"),
            meta("og.image", "og", "image"),
            meta("og.image:secure_url", "og", "image:secure_url"),
            meta("twitter.image", "twitter", "image"),
            meta("twitter.image:src", "twitter", "image:src"),
        )
    if field_name == "price":
        return (
            json_ld("json_ld.offers.price", "price"),
            meta("og.price:amount", "og", "price:amount"),
            Strategy("meta.product:price:amount", _product_price_meta),
            css_attr("microdata.price", '[itemprop="price"]', "content"),
        ) + _GENERIC_PRICE
    raise ValueError(f"unknown field {field_name}")


def _product_price_meta(ctx: PageContext) -> str | None:
    el = ctx.soup.find("meta", attrs={"property": "product:price:amount"})
    return el.get("content") if el is not None else None


# ---------------------------------------------------------------------------
# Retailer profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetailerProfile:
    """Ordered strategy chains for one retailer."""

    name: str
    host_markers: tuple[str, ...]
    base_url: str | None
    chains: dict[str, tuple[Strategy, ...]]
    # Reject image candidates without a raster file extension
    require_image_extension: bool = False

    def matches(self, host: str) -> bool:
        return any(marker in host for marker in self.host_markers)

    def chain(self, field_name: str) -> tuple[Strategy, ...]:
        return self.chains.get(field_name, ()) + _structured_fallbacks(field_name)


AMAZON = RetailerProfile(
    name="amazon",
    host_markers=("amazon.", "amzn."),
    base_url="https://www.amazon.com",
    require_image_extension=True,
    chains={
        "image": (
            regex("amazon.hiRes", r'"hiRes":"([^"]+)"'),
            regex("amazon.large", r'"large":"([^"]+)"'),
            regex("amazon.data-old-hires", r'data-old-hires="([^"]+)"'),
            Strategy("amazon.dynamic-image", _amazon_dynamic_image),
            css_attr("amazon.landingImage", "#landingImage", "src"),
            css_attr("amazon.imgBlkFront", "#imgBlkFront", "src"),
            css_attr("amazon.a-dynamic-image", "img.a-dynamic-image", "src"),
        ),
        "price": (
            css_text("amazon.core-price", "#corePrice_feature_div .a-offscreen"),
            css_text("amazon.a-offscreen", ".a-price .a-offscreen"),
            Strategy("amazon.price-whole", _amazon_split_price),
            css_text("amazon.price_display", "#price_display"),
            css_text("amazon.a-price-range", ".a-price-range .a-offscreen"),
            regex("amazon.priceAmount", r'"priceAmount":\s*([0-9,]+\.?[0-9]*)'),
        ),
        "title": (
            css_text("amazon.productTitle", "#productTitle"),
            css_text("amazon.title", "#title"),
        ),
        "description": (
            css_text("amazon.feature-bullets", "#feature-bullets ul"),
            css_text("amazon.productDescription", "#productDescription"),
        ),
    },
)

TARGET = RetailerProfile(
    name="target",
    host_markers=("target.",),
    base_url="https://www.target.com",
    chains={
        "image": (
            regex("target.scene7-src", r'"src":"([^"]*target\.scene7\.com[^"]*)"'),
            regex("target.scene7-url", r'"url":"([^"]*target\.scene7\.com[^"]*)"'),
            css_attr("target.hero-image", '[data-test="hero-image-wrapper"] img', "src"),
            css_attr("target.product-images", ".ProductImages img", "src"),
        ),
        "price": (
            css_text("target.product-price", '[data-test="product-price"]'),
            regex("target.current_retail", r'"current_retail":\s*([0-9]+\.?[0-9]*)'),
            regex("target.formatted_current_price", r'"formatted_current_price":"\$([0-9,]+\.?[0-9]*)"'),
            css_text("target.price-characteristic", ".Price-characteristic"),
        ),
        "title": (
            css_text("target.product-title", '[data-test="product-title"]'),
        ),
        "description": (
            regex("target.downstream_description", r'"downstream_description":"((?:[^"\\]|\\.)+)"', json_string=True),
        ),
    },
)

WALMART = RetailerProfile(
    name="walmart",
    host_markers=("walmart.",),
    base_url="https://www.walmart.com",
    chains={
        "image": (
            regex("walmart.i5-url", r'"url":"([^"]*i5\.walmartimages\.com[^"]*)"'),
            regex("walmart.i5-src", r'"src":"([^"]*i5\.walmartimages\.com[^"]*)"'),
            css_attr("walmart.hero-image", '[data-testid="hero-image"] img', "src"),
            css_attr("walmart.prod-image", ".prod-ProductImage img", "src"),
        ),
        "price": (
            css_attr("walmart.itemprop-price", '[itemprop="price"]', "content"),
            css_text("walmart.itemprop-price-text", '[itemprop="price"]'),
            css_text("walmart.product-price", '[data-automation-id="product-price"]'),
            regex("walmart.priceString", r'"priceString":"\$([0-9,]+\.?[0-9]*)"'),
            regex("walmart.currentPrice", r'"currentPrice":\{"price":\s*([0-9]+\.?[0-9]*)'),
        ),
        "title": (
            css_text("walmart.product-title", '[data-automation-id="product-title"]'),
            css_text("walmart.itemprop-name", 'h1[itemprop="name"]'),
        ),
        "description": (
            regex("walmart.shortDescription", r'"shortDescription":"((?:[^"\\]|\\.)+)"', json_string=True),
        ),
    },
)

BESTBUY = RetailerProfile(
    name="bestbuy",
    host_markers=("bestbuy.",),
    base_url="https://www.bestbuy.com",
    chains={
        "image": (
            regex("bestbuy.pisces-src", r'"src":"([^"]*pisces\.bbystatic\.com[^"]*)"'),
            regex("bestbuy.pisces-url", r'"url":"([^"]*pisces\.bbystatic\.com[^"]*)"'),
            css_attr("bestbuy.primary-image", ".primary-image img, img.primary-image", "src"),
            css_attr("bestbuy.carousel", ".image-carousel img", "src"),
        ),
        "price": (
            css_text("bestbuy.customer-price", ".priceView-customer-price span"),
            css_text("bestbuy.price-range", ".pricing-price__range"),
            regex("bestbuy.currentPrice", r'"currentPrice":\s*([0-9]+\.?[0-9]*)'),
        ),
        "title": (
            css_text("bestbuy.sku-title", ".sku-title h1"),
            css_text("bestbuy.product-title", '[data-testid="product-title"]'),
        ),
        "description": (
            css_text("bestbuy.overview", ".product-description"),
        ),
    },
)

RETAILERS: tuple[RetailerProfile, ...] = (AMAZON, TARGET, WALMART, BESTBUY)

GENERIC = RetailerProfile(
    name="generic",
    host_markers=(),
    base_url=None,
    chains={
        # Generic pages: meta tags outrank JSON-LD, then document fallbacks
        "title": (
            meta("og.title", "og", "title"),
            meta("twitter.title", "twitter", "title"),
            json_ld("json_ld.name", "name"),
            meta("meta.title", "meta", "title"),
            Strategy("html.title", lambda ctx: ctx.parsed.title),
            Strategy("html.h1", lambda ctx: ctx.parsed.h1),
        ),
        "description": (
            meta("og.description", "og", "description"),
            meta("twitter.description", "twitter", "description"),
            meta("meta.description", "meta", "description"),
        ),
        "image": (
            meta("og.image", "og", "image"),
            meta("twitter.image", "twitter", "image"),
            json_ld("json_ld.image", "image"),
            Strategy("html.first-img", lambda ctx: ctx.parsed.image_urls[0] if ctx.parsed.image_urls else None),
        ),
    },
)


def retailer_for_url(url: str) -> RetailerProfile | None:
    """Match ``url``'s hostname against the known retailers (substring match)."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return None
    for profile in RETAILERS:
        if profile.matches(host):
            return profile
    return None


# ---------------------------------------------------------------------------
# Chain evaluation
# ---------------------------------------------------------------------------


def _accept(field_name: str, raw: str, profile: RetailerProfile, ctx: PageContext) -> str | None:
    """Clean a strategy's raw output; None means "not plausible, keep looking"."""
    if field_name == "price":
        return format_price(raw)
    if field_name == "title":
        return clean_text(raw, MAX_TITLE_CHARS)
    if field_name == "description":
        return clean_text(raw, MAX_DESCRIPTION_CHARS)
    if field_name == "image":
        base = profile.base_url or _origin(ctx.final_url)
        url = clean_image_url(html_lib.unescape(raw), base=base)
        if url and profile.require_image_extension and not looks_like_image_file(url):
            return None
        return url
    return raw


def run_chain(
    field_name: str, profile: RetailerProfile, ctx: PageContext
) -> tuple[str | None, str | None]:
    """Evaluate ``profile``'s chain for one field. Returns (value, strategy name)."""
    for strategy in profile.chain(field_name):
        raw = strategy(ctx)
        if raw is None:
            continue
        value = _accept(field_name, raw, profile, ctx)
        if value:
            return value, strategy.name
    return None, None


def _collect_images(ctx: PageContext, lead: str | None) -> list[str]:
    """Candidate product images: the chosen image, meta images, then every <img>.

    Deduplicated, logo/icon-like URLs excluded, capped at MAX_IMAGES.
    """
    parsed = ctx.parsed
    candidates: list[str | None] = [
        lead,
        parsed.og_tags.get("image"),
        parsed.twitter_tags.get("image"),
    ]
    product = parsed.json_ld_product
    if product is not None:
        image = product.get("image")
        if isinstance(image, list):
            candidates.extend(_first_image(i) for i in image)
        else:
            candidates.append(_first_image(image))
    candidates.extend(parsed.image_urls)

    base = _origin(ctx.final_url)
    urls: list[str] = []
    for candidate in candidates:
        url = clean_image_url(candidate, base=base) if candidate else None
        if url and url not in urls:
            urls.append(url)
        if len(urls) >= MAX_IMAGES:
            break
    return urls


def _extract_with(profile: RetailerProfile, ctx: PageContext, report: ExtractionReport) -> dict:
    fields: dict[str, str] = {}
    for field_name in FIELDS:
        value, source = run_chain(field_name, profile, ctx)
        if value:
            fields[field_name] = value
            report.sources[field_name] = source
    return fields


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def extract_generic(ctx: PageContext, report: ExtractionReport | None = None) -> ProductMetadata:
    """Link-preview pass that works on any page."""
    report = report if report is not None else ExtractionReport(url=ctx.url)
    fields = _extract_with(GENERIC, ctx, report)
    canonical = ctx.parsed.og_tags.get("url") or ctx.parsed.canonical_url or ctx.final_url
    return ProductMetadata(
        **fields,
        url=canonical if canonical and canonical.startswith("http") else ctx.final_url,
        retailer="generic",
        images=_collect_images(ctx, fields.get("image")),
    )


def extract_retailer(
    profile: RetailerProfile, ctx: PageContext, report: ExtractionReport | None = None
) -> ProductMetadata:
    """Retailer-specific pass: the profile's own chains, then shared fallbacks."""
    report = report if report is not None else ExtractionReport(url=ctx.url)
    fields = _extract_with(profile, ctx, report)
    images = [fields["image"]] if fields.get("image") else []
    return ProductMetadata(**fields, retailer=profile.name, images=images)


def extract_metadata(
    html: str, url: str, final_url: str | None = None
) -> tuple[ProductMetadata, ExtractionReport]:
    """Extract a product summary from ``html`` fetched for ``url``.

    Runs the generic pass, then layers the matching retailer's fields on
    top (retailer-specific values win where both exist).
    """
    final_url = final_url or url
    ctx = PageContext(url=url, final_url=final_url, parsed=parse_html(html))
    report = ExtractionReport(url=url)

    metadata = extract_generic(ctx, report)

    profile = retailer_for_url(url) or retailer_for_url(final_url)
    if profile is not None:
        report.retailer = profile.name
        enhanced = extract_retailer(profile, ctx, report)
        images = list(dict.fromkeys(enhanced.images + metadata.images))
        metadata = metadata.merged_with(enhanced).model_copy(update={"images": images[:MAX_IMAGES]})

    report.missing = [f for f in FIELDS if not getattr(metadata, f)]
    report.image_count = len(metadata.images)
    logger.debug(f"Extracted {url} ({report.retailer}): sources={report.sources} missing={report.missing}")
    return metadata, report
