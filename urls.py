"""
URL canonicalization for cache keying.

- normalize_url: canonical cache key for a raw URL (never raises)
- extract_product_id: retailer catalog identifier encoded in the URL path
- url_similarity: cheap [0, 1] score used for fuzzy cache lookups
- url_hash: fixed-length digest of a normalized URL
"""

import hashlib
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

# Score assigned when two URLs differ textually but carry the same catalog ID
PRODUCT_ID_MATCH_SCORE = 0.95

URL_HASH_LENGTH = 32


# ---------------------------------------------------------------------------
# Retailer catalog-ID patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductIdPattern:
    """Positional catalog-ID patterns for one retailer."""

    retailer: str
    host_markers: tuple[str, ...]
    patterns: tuple[re.Pattern, ...]
    uppercase: bool = False

    def matches_host(self, host: str) -> bool:
        return any(marker in host for marker in self.host_markers)

    def search(self, url: str) -> str | None:
        for pattern in self.patterns:
            match = pattern.search(url)
            if match:
                token = match.group(1)
                return token.upper() if self.uppercase else token
        return None


# ASIN-style: 10 alphanumerics after /dp/ or /gp/product/
_ASIN_PATTERNS = (
    re.compile(r"/dp/([A-Z0-9]{10})(?=[/?#]|$)", re.IGNORECASE),
    re.compile(r"/gp/product/([A-Z0-9]{10})(?=[/?#]|$)", re.IGNORECASE),
)

PRODUCT_ID_PATTERNS: tuple[ProductIdPattern, ...] = (
    ProductIdPattern(
        retailer="amazon",
        host_markers=("amazon.",),
        patterns=_ASIN_PATTERNS + (re.compile(r"[?&]asin=([A-Z0-9]{10})(?=[&#]|$)", re.IGNORECASE),),
        uppercase=True,
    ),
    ProductIdPattern(
        retailer="target",
        host_markers=("target.",),
        patterns=(re.compile(r"/A-(\d+)(?=[/?#]|$)", re.IGNORECASE),),
    ),
    ProductIdPattern(
        retailer="walmart",
        host_markers=("walmart.",),
        patterns=(re.compile(r"/ip/(?:[^/?#]+/)?(\d+)(?=[/?#]|$)"),),
    ),
    ProductIdPattern(
        retailer="bestbuy",
        host_markers=("bestbuy.",),
        patterns=(
            re.compile(r"/(\d{7})\.p(?=[/?#]|$)", re.IGNORECASE),
            re.compile(r"[?&]skuId=(\d+)(?=[&#]|$)", re.IGNORECASE),
        ),
    ),
)

# Patterns applied to hosts that aren't a known retailer
_GENERIC_ID_PATTERN = ProductIdPattern(
    retailer="generic", host_markers=(), patterns=_ASIN_PATTERNS, uppercase=True
)

# Shape of a synthetic key produced by normalize_url for a known retailer
_SYNTHETIC_KEY_RE = re.compile(
    r"^(?:%s):[A-Za-z0-9]+$" % "|".join(p.retailer for p in PRODUCT_ID_PATTERNS)
)

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


def _split(url: str):
    """urlsplit that tolerates scheme-less input like ``shop.example/item``."""
    url = url.strip()
    if not _SCHEME_RE.match(url):
        url = "https://" + url.lstrip("/")
    return urlsplit(url)


def _host_of(url: str) -> str:
    try:
        return (_split(url).hostname or "").lower()
    except ValueError:
        return ""


def retailer_for_host(host: str) -> ProductIdPattern | None:
    """Return the catalog-ID pattern set whose host marker appears in ``host``."""
    host = host.lower()
    for entry in PRODUCT_ID_PATTERNS:
        if entry.matches_host(host):
            return entry
    return None


# ---------------------------------------------------------------------------
# Product-ID extraction
# ---------------------------------------------------------------------------


def extract_product_id(url: str) -> str | None:
    """Pull a retailer catalog identifier out of ``url``, if it encodes one.

    Known retailer hosts use their own patterns; any other host still gets
    the ASIN-style ``/dp/<id>`` and ``/gp/product/<id>`` patterns.
    """
    if not url:
        return None
    entry = retailer_for_host(_host_of(url)) or _GENERIC_ID_PATTERN
    return entry.search(url)


def _retailer_key(url: str, host: str) -> str | None:
    entry = retailer_for_host(host)
    if entry is None:
        return None
    product_id = entry.search(url)
    if not product_id:
        return None
    return f"{entry.retailer}:{product_id}"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def normalize_url(url: str) -> str:
    """Canonical form of ``url`` for cache keying and comparison.

    Known retailers with a positional catalog ID collapse to
    ``"<retailer>:<id>"``; everything else becomes ``lowercase(host + path)``
    with the query string and fragment dropped. Never raises: unparseable
    input comes back lowercased.
    """
    raw = url.strip()
    if _SYNTHETIC_KEY_RE.match(raw):
        return raw
    try:
        parts = _split(raw)
        host = (parts.hostname or "").lower()
        if not host:
            raise ValueError("no host")
        key = _retailer_key(raw, host)
        if key:
            return key
        return (host + parts.path).lower()
    except ValueError:
        logger.debug(f"Could not parse {url!r}, using lowercased input as key")
        return raw.lower()


def url_hash(normalized_url: str) -> str:
    """Fixed-length hex digest of a normalized URL, for compact indexing."""
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()[:URL_HASH_LENGTH]


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def _jaccard(a: str, b: str) -> float:
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 1.0
    return len(set_a & set_b) / len(union)


def url_similarity(a: str, b: str) -> float:
    """Score how alike two URLs are, in [0, 1].

    1.0 for identical normalized forms, PRODUCT_ID_MATCH_SCORE when both
    carry the same catalog ID, otherwise Jaccard similarity over the
    *character sets* of the normalized forms.

    The character-set Jaccard is order-insensitive: two URLs that share an
    alphabet but not structure can score high. It is an approximate filter,
    not an edit distance.
    """
    norm_a, norm_b = normalize_url(a), normalize_url(b)
    if norm_a == norm_b:
        return 1.0

    id_a, id_b = extract_product_id(a), extract_product_id(b)
    if id_a and id_b and id_a == id_b:
        return PRODUCT_ID_MATCH_SCORE

    return _jaccard(norm_a, norm_b)
