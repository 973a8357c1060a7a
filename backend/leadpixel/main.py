"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from leadpixel import __version__
from leadpixel.deps import get_settings
from leadpixel.routers import pixel_track as pixel_track_router
from leadpixel.routers import pixel_webhook as pixel_webhook_router
from leadpixel.routers.pixel_track import add_cors_headers
from leadpixel.schemas import HealthResponse
from leadpixel.telemetry import init_sentry
from leadpixel.workers.arq_enqueue import reset_arq_pool

# Import models so Alembic can discover metadata
from leadpixel import models  # noqa: F401

PIXEL_TRACK_PATH = "/api/pixel/track"


class PixelCORSMiddleware(BaseHTTPMiddleware):
    """Handle CORS for the tracking endpoint.

    WHY: The capture agent posts from arbitrary customer websites, which
    the global CORSMiddleware allow-list does not (and should not) name.
    The origin is reflected back so beacons sent with credentials are
    accepted by the browser.
    """

    async def dispatch(self, request, call_next):
        if request.url.path == PIXEL_TRACK_PATH:
            origin = request.headers.get("origin", "*")

            # Handle preflight OPTIONS request
            if request.method == "OPTIONS":
                return add_cors_headers(StarletteResponse(status_code=200), origin)

            response = await call_next(request)
            return add_cors_headers(response, origin)

        return await call_next(request)


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="leadpixel API",
        description="""
        Visitor identity and event ingestion.

        This API provides endpoints for:
        - Behavioral events from the website capture agent
        - Identity-resolution webhooks from the identity provider

        Enrichment and the visitors API sync run on the arq worker.
        """,
        version=__version__,
    )

    # Trust X-Forwarded-* from the load balancer so request.client is the visitor
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()
    logger.info(f"[CORS] Allowed origins: {settings.cors_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom middleware for pixel endpoint CORS (must be added AFTER CORSMiddleware)
    # Middleware runs in reverse order, so this runs BEFORE CORSMiddleware
    app.add_middleware(PixelCORSMiddleware)

    app.include_router(pixel_track_router.router)
    app.include_router(pixel_webhook_router.router)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the shared arq Redis pool."""
        await reset_arq_pool()

    return app


app = create_app()
