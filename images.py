"""
Image URL helpers: cleanup of scraped image URLs and rewriting through a
third-party resizing endpoint.
"""

import re
from urllib.parse import quote, urlencode

RESIZE_ENDPOINT = "https://images.weserv.nl/"
PLACEHOLDER_HOST = "placehold.co"
DEFAULT_SIZE = 150

# Substrings that mark site chrome rather than product photos
_REJECT_SUBSTRINGS = ("logo", "icon")

# Already-sized placeholder images pass through resize untouched
_PLACEHOLDER_MARKERS = (PLACEHOLDER_HOST, "placeholder")

_ESCAPED_UNICODE_RE = re.compile(r"\\u([0-9a-fA-F]{4})")
_IMAGE_EXTENSION_RE = re.compile(r"\.(jpe?g|png|webp|gif|avif)(?:[?#_.]|$)", re.IGNORECASE)


def _unescape(url: str) -> str:
    """Decode JSON-style escapes left behind by regex extraction from script blobs."""
    url = _ESCAPED_UNICODE_RE.sub(lambda m: chr(int(m.group(1), 16)), url)
    return url.replace("\\", "")


def clean_image_url(url: str | None, base: str | None = None) -> str | None:
    """Unescape, absolutize and filter a scraped image URL.

    Protocol-relative URLs get ``https:``; root-relative paths are joined to
    ``base`` when one is given. Anything containing "logo" or "icon", or
    that still isn't http(s) afterwards, is rejected.
    """
    if not url or not isinstance(url, str):
        return None
    url = _unescape(url.strip()).replace("&amp;", "&")
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("/") and base:
        url = base.rstrip("/") + url
    if not url.startswith(("http://", "https://")):
        return None
    lower = url.lower()
    if any(s in lower for s in _REJECT_SUBSTRINGS):
        return None
    return url


def looks_like_image_file(url: str) -> bool:
    """True when the URL path carries a common raster image extension."""
    return bool(_IMAGE_EXTENSION_RE.search(url.split("?", 1)[0]))


def _quote_component(value: str, safe: str = "", encoding=None, errors=None) -> str:
    # Encode "/" too, so the nested URL survives as a single query value
    return quote(value, safe="", encoding=encoding, errors=errors)


def is_placeholder(url: str) -> bool:
    return any(marker in url for marker in _PLACEHOLDER_MARKERS)


def resize_image_url(url: str, width: int | None = None, height: int | None = None) -> str:
    """Rewrite ``url`` into a request against the resizing endpoint.

    Placeholder images and URLs already pointing at the resizing endpoint
    are returned unmodified.
    """
    if is_placeholder(url) or url.startswith(RESIZE_ENDPOINT):
        return url
    params = {
        "url": url,
        "w": width or DEFAULT_SIZE,
        "h": height or DEFAULT_SIZE,
        "fit": "cover",
        "errorredirect": "404",
    }
    return f"{RESIZE_ENDPOINT}?{urlencode(params, quote_via=_quote_component)}"


def placeholder_image_url(label: str, width: int | None = None, height: int | None = None) -> str:
    """Neutral placeholder image captioned with ``label``."""
    w, h = width or DEFAULT_SIZE, height or DEFAULT_SIZE
    text = quote(label or "Product", safe="")
    return f"https://{PLACEHOLDER_HOST}/{w}x{h}/e5e7eb/374151?text={text}&font=lato"
