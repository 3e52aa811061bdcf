"""
Generic HTML parser for product pages.

Extracts the universal, site-independent structure of a page: JSON-LD
blocks, Open Graph / Twitter card / standard meta tags, the document
title, canonical link and every image URL. Retailer-specific knowledge
lives in extractor.py.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from images import clean_image_url

logger = logging.getLogger(__name__)


@dataclass
class ParsedPage:
    """All structured data extracted from an HTML page."""

    html: str = field(default="", repr=False)
    soup: BeautifulSoup | None = field(default=None, repr=False)
    json_ld: list[dict] = field(default_factory=list)
    og_tags: dict[str, str] = field(default_factory=dict)
    twitter_tags: dict[str, str] = field(default_factory=dict)
    meta_tags: dict[str, str] = field(default_factory=dict)
    title: str | None = None
    h1: str | None = None
    canonical_url: str | None = None
    image_urls: list[str] = field(default_factory=list)

    @property
    def json_ld_product(self) -> dict | None:
        """First JSON-LD block typed as a Product (or ProductGroup)."""
        for block in self.json_ld:
            if _is_product_type(block.get("@type")):
                return block
        return None


def parse_html(html: str) -> ParsedPage:
    """Parse an HTML page and extract all structured data sources."""
    soup = BeautifulSoup(html or "", "lxml")

    return ParsedPage(
        html=html or "",
        soup=soup,
        json_ld=_extract_json_ld(soup),
        og_tags=_extract_prefixed_meta(soup, "og:"),
        twitter_tags=_extract_prefixed_meta(soup, "twitter:"),
        meta_tags=_extract_meta_tags(soup),
        title=_extract_title(soup),
        h1=_extract_h1(soup),
        canonical_url=_extract_canonical(soup),
        image_urls=_extract_image_urls(soup),
    )


# ---------------------------------------------------------------------------
# JSON-LD
# ---------------------------------------------------------------------------


def _is_product_type(ld_type: Any) -> bool:
    if isinstance(ld_type, list):
        return any(t in ("Product", "ProductGroup") for t in ld_type)
    return ld_type in ("Product", "ProductGroup")


def _extract_json_ld(soup: BeautifulSoup) -> list[dict]:
    """Extract all JSON-LD blocks from <script type="application/ld+json"> tags."""
    results: list[dict] = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = tag.string
        if not text:
            continue
        try:
            data = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            logger.debug("Skipping malformed JSON-LD block")
            continue
        # Flatten arrays and @graph containers
        if isinstance(data, list):
            results.extend(d for d in data if isinstance(d, dict))
        elif isinstance(data, dict):
            graph = data.get("@graph")
            if isinstance(graph, list):
                results.extend(d for d in graph if isinstance(d, dict))
            else:
                results.append(data)
    return results


# ---------------------------------------------------------------------------
# Meta tags
# ---------------------------------------------------------------------------


def _extract_prefixed_meta(soup: BeautifulSoup, prefix: str) -> dict[str, str]:
    """Collect ``<meta>`` tags whose property= or name= starts with ``prefix``.

    Keys are returned without the prefix; the first occurrence wins.
    """
    tags: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        prop = meta.get("property", "") or meta.get("name", "")
        if not isinstance(prop, str) or not prop.startswith(prefix):
            continue
        content = meta.get("content", "")
        if content and prop[len(prefix):] not in tags:
            tags[prop[len(prefix):]] = content.strip()
    return tags


def _extract_meta_tags(soup: BeautifulSoup) -> dict[str, str]:
    """Extract standard meta tags (description, keywords, title)."""
    tags: dict[str, str] = {}
    for name in ("description", "keywords", "title"):
        meta = soup.find("meta", attrs={"name": re.compile(f"^{name}$", re.IGNORECASE)})
        if meta and meta.get("content"):
            tags[name] = meta["content"].strip()
    return tags


# ---------------------------------------------------------------------------
# Title, headline, canonical link
# ---------------------------------------------------------------------------


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _extract_title(soup: BeautifulSoup) -> str | None:
    tag = soup.find("title")
    if tag is None:
        return None
    return _collapse(tag.get_text()) or None


def _extract_h1(soup: BeautifulSoup) -> str | None:
    tag = soup.find("h1")
    if tag is None:
        return None
    return _collapse(tag.get_text(" ")) or None


def _extract_canonical(soup: BeautifulSoup) -> str | None:
    for link in soup.find_all("link"):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        href = (link.get("href") or "").strip()
        if "canonical" in (r.lower() for r in rel) and href.startswith("http"):
            return href
    return None


# ---------------------------------------------------------------------------
# Image URL extraction
# ---------------------------------------------------------------------------


def _extract_image_urls(soup: BeautifulSoup) -> list[str]:
    """Extract every usable ``<img src>`` URL in document order.

    Protocol-relative URLs are upgraded, logo/icon-like URLs dropped and
    duplicates removed.
    """
    urls: list[str] = []
    for img in soup.find_all("img"):
        url = clean_image_url(img.get("src"))
        if url:
            urls.append(url)
    return list(dict.fromkeys(urls))  # deduplicate preserving order
