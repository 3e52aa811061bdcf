"""
Command-line entry point.

    python main.py resolve URL [URL ...]   resolve URLs concurrently and print a report
    python main.py serve [--host] [--port] run the HTTP API with uvicorn
"""

import argparse
import asyncio
import logging
import sys
import time

import uvicorn

from config import configure_logging, load_settings
from errors import ConfigError, ResolverError
from models import ResolveResponse
from resolver import ResolutionService

logger = logging.getLogger(__name__)

CLI_CLIENT_KEY = "cli"


async def resolve_all(service: ResolutionService, urls: list[str]) -> list[ResolveResponse | BaseException]:
    """Resolve every URL concurrently; failures come back in place of their result."""
    results = await asyncio.gather(
        *[service.resolve(url, CLI_CLIENT_KEY) for url in urls],
        return_exceptions=True,
    )
    await service.shutdown()
    return results


def print_report(urls: list[str], results: list, wall_clock: float) -> None:
    """Print one block per URL plus a totals line."""
    print(f"\n{'=' * 70}")
    print("RESOLUTION REPORT")
    print(f"{'=' * 70}")

    hits = failures = 0
    for url, result in zip(urls, results):
        print(f"\n  {url}")
        if isinstance(result, ResolverError):
            failures += 1
            print(f"    ERROR:    {result.public_message}")
            continue
        if isinstance(result, BaseException):
            failures += 1
            print(f"    ERROR:    {type(result).__name__}: {result}")
            continue

        print(f"    Title:    {result.title or '-'}")
        print(f"    Price:    {result.price or '-'}")
        print(f"    Retailer: {result.retailer or '-'}")
        print(f"    Image:    {result.image or '-'}")
        print(f"    Images:   {len(result.images)} URLs")
        if result.cache.hit:
            hits += 1
            print(
                f"    Cache:    hit (similarity {result.cache.similarity:.2f}, "
                f"{result.cache.hit_count} hits, matched {result.cache.original_url})"
            )
        else:
            print("    Cache:    miss (fetched)")

    n = len(urls)
    print(f"\n{'-' * 70}")
    print(f"  Resolved {n - failures}/{n} | cache hits {hits} | failures {failures} | {wall_clock:.2f}s")
    print(f"{'=' * 70}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="URL metadata resolver")
    sub = parser.add_subparsers(dest="command", required=True)

    resolve = sub.add_parser("resolve", help="resolve product URLs and print their metadata")
    resolve.add_argument("urls", nargs="+", metavar="URL")

    serve = sub.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging()
        logger.error(f"{e}")
        return 2
    configure_logging(settings.log_level)

    if args.command == "serve":
        uvicorn.run("server:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    service = ResolutionService.from_settings(settings)
    t0 = time.monotonic()
    results = asyncio.run(resolve_all(service, args.urls))
    print_report(args.urls, results, time.monotonic() - t0)
    return 0 if not any(isinstance(r, BaseException) for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
