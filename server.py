"""
FastAPI server for URL metadata resolution.

Endpoints:
- GET  /resolve?url=...[&width=&height=]  → metadata + cache provenance
- POST /resolve {url}                      → same, body instead of query
- GET  /health                             → liveness, uptime, cache size
- GET  /cache/stats                        → cache size and freshness
- POST /rate-limit/reset {ip}              → clear a client's window (development only)
"""

import asyncio
import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import ORJSONResponse

from config import Settings, configure_logging, load_settings
from errors import InvalidInputError, ResolverError
from resolver import ResolutionService

logger = logging.getLogger("server")


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _client_key(request: Request) -> str:
    """Caller address: first X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidInputError("body", "Request body must be valid JSON.") from None
    return body if isinstance(body, dict) else {}


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


def create_app(service: ResolutionService | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the app. Anything not injected is built from the environment at startup."""
    app = FastAPI(
        title="URL Metadata Resolver",
        default_response_class=ORJSONResponse,
    )
    app.state.service = service
    app.state.settings = settings
    app.state.started_at = time.monotonic()

    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        max_age=86400,
    )

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.settings is None:
            app.state.settings = load_settings()
        configure_logging(app.state.settings.log_level)
        if app.state.service is None:
            app.state.service = ResolutionService.from_settings(app.state.settings)
        app.state.started_at = time.monotonic()
        logger.info("Resolver ready (env=%s)", app.state.settings.app_env)

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if app.state.service is not None:
            await app.state.service.shutdown()

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(ResolverError)
    async def resolver_error(request: Request, exc: ResolverError):
        if exc.status_code >= 500:
            logger.error("Request to %s failed: %s", request.url.path, exc)
        return ORJSONResponse({"error": exc.public_message}, status_code=exc.status_code)

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.get("/resolve")
    async def resolve_get(
        request: Request,
        url: str | None = None,
        width: str | None = None,
        height: str | None = None,
    ):
        """Resolve a product URL into metadata."""
        result = await app.state.service.resolve(url, _client_key(request), width=width, height=height)
        return ORJSONResponse(result.to_payload())

    @app.post("/resolve")
    async def resolve_post(request: Request):
        """Body-based alias of GET /resolve."""
        body = await _json_body(request)
        result = await app.state.service.resolve(
            body.get("url"),
            _client_key(request),
            width=body.get("width"),
            height=body.get("height"),
        )
        return ORJSONResponse(result.to_payload())

    @app.get("/health")
    async def health():
        size = await asyncio.to_thread(app.state.service.store.count)
        return {
            "status": "healthy",
            "uptime": round(time.monotonic() - app.state.started_at, 3),
            "cacheSize": size,
        }

    @app.get("/cache/stats")
    async def cache_stats():
        return await app.state.service.cache_stats()

    @app.post("/rate-limit/reset")
    async def reset_rate_limit(request: Request):
        """Clear one client's rate-limit window. Refused in production."""
        if app.state.settings is None or app.state.settings.is_production:
            return ORJSONResponse({"error": "Not available in production."}, status_code=403)
        body = await _json_body(request)
        ip = body.get("ip")
        if not isinstance(ip, str) or not ip.strip():
            raise InvalidInputError("ip")
        cleared = app.state.service.reset_rate_limit(ip.strip())
        logger.info("Rate limit reset for %s (had window: %s)", ip.strip(), cleared)
        return {"success": True, "ip": ip.strip(), "cleared": cleared}

    return app


app = create_app()
