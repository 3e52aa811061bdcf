"""
Diagnostic: run the parser and extractor over saved HTML (no network).
Reports which strategy filled each field and which fields are missing.

    python diagnostics.py PAGE.html [PAGE.html ...] [--url URL]
"""

import argparse
from pathlib import Path

from extractor import FIELDS, extract_metadata
from parser import parse_html

DEFAULT_URL = "https://example.com/"


def diagnose_html(html: str, url: str = DEFAULT_URL) -> dict:
    parsed = parse_html(html)

    # Parser-level structure
    parser_stats = {
        "json_ld_blocks": len(parsed.json_ld),
        "json_ld_product": parsed.json_ld_product is not None,
        "og_tags": len(parsed.og_tags),
        "twitter_tags": len(parsed.twitter_tags),
        "meta_tags": list(parsed.meta_tags.keys()),
        "image_urls_from_html": len(parsed.image_urls),
        "canonical_url": parsed.canonical_url,
    }

    metadata, extraction = extract_metadata(html, url)

    report = {
        "url": url,
        "retailer": extraction.retailer,
        "parser": parser_stats,
        "fields": {},
        "sources": dict(extraction.sources),
        "filled": [],
        "missing": list(extraction.missing),
        "image_count": extraction.image_count,
    }
    for field in FIELDS:
        val = getattr(metadata, field)
        if val:
            report["filled"].append(field)
            report["fields"][field] = val[:150] + ("..." if len(val) > 150 else "")
        else:
            report["fields"][field] = None
    return report


def print_report(name: str, report: dict) -> None:
    print(f"{'=' * 70}")
    print(f"  {name}  ({report['retailer']})")
    print(f"{'=' * 70}")

    p = report["parser"]
    print(
        f"  Parser: {p['json_ld_blocks']} JSON-LD | {p['og_tags']} OG tags | "
        f"{p['twitter_tags']} Twitter tags | {p['image_urls_from_html']} imgs"
    )
    if p["canonical_url"]:
        print(f"  Canonical: {p['canonical_url']}")

    print(f"\n  Filled ({len(report['filled'])}/{len(FIELDS)}):")
    for field in report["filled"]:
        print(f"    {field:<12} {report['fields'][field]}")
        print(f"    {'':<12} <- {report['sources'].get(field, '?')}")

    if report["missing"]:
        print(f"\n  MISSING ({len(report['missing'])}): {report['missing']}")
    else:
        print("\n  All fields filled!")
    print(f"  Images collected: {report['image_count']}")
    print()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Show how each field of a saved page was extracted")
    parser.add_argument("files", nargs="+", type=Path, metavar="PAGE.html")
    parser.add_argument("--url", default=DEFAULT_URL, help="URL the page was fetched from (selects the retailer)")
    args = parser.parse_args(argv)

    print(f"Diagnosing {len(args.files)} file(s) (parser + extractor only, no network)\n")
    for filepath in args.files:
        html = filepath.read_text(encoding="utf-8", errors="replace")
        print_report(filepath.name, diagnose_html(html, args.url))


if __name__ == "__main__":
    main()
