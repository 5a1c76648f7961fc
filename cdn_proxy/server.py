import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cdn_proxy import health
from cdn_proxy.app_proxy import route as app_proxy
from cdn_proxy.app_proxy.rewrite import is_proxy_path
from cdn_proxy.config import Settings, load_settings
from cdn_proxy.cors import CorsMiddleware
from cdn_proxy.errors import ProxyError
from cdn_proxy.static_site import build_static_app
from cdn_proxy.telemetry import instrument_app

logger = logging.getLogger("uvicorn.error")


def create_app(
    settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None
) -> FastAPI:
    """
    Build the application from immutable settings.

    ``client`` replaces the pooled upstream client; the caller then owns it.
    Raises ConfigError when the settings cannot be served.
    """
    settings = settings or load_settings()
    proxy = settings.proxy

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        upstream_client = client or app_proxy.build_upstream_client(proxy)
        app.state.proxy_handler = app_proxy.ProxyHandler(
            proxy, settings.proxy_cors, upstream_client
        )
        logger.info(f"Proxy available at {proxy.path_prefix}/ -> {proxy.upstream_base_url}")
        logger.info(f"Health check at {settings.health_path}")
        try:
            yield
        finally:
            if client is None:
                await upstream_client.aclose()

    app = FastAPI(title=settings.service_name, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CorsMiddleware, policy=settings.cors, exempt_prefixes=(proxy.path_prefix,)
    )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
        headers = None
        if is_proxy_path(request.url.path, proxy.path_prefix):
            # Browsers only expose the error to the page with CORS headers
            headers = dict(settings.proxy_cors.evaluate(None).headers)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message},
            headers=headers,
        )

    app.include_router(health.build_router(settings.health_path, settings.service_name))
    app.include_router(app_proxy.build_router(proxy.path_prefix))
    instrument_app(app)

    if settings.serve_static:
        # Mounted last so it only sees paths no route claimed
        app.mount("/", build_static_app(settings.static_dir), name="static")
        logger.info(f"Serving static site from {settings.static_dir}")

    return app
