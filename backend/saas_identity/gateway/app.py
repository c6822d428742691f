"""
FastAPI application entry point for the edge gateway.

Every request passes ClerkGatewayAuthMiddleware and is then forwarded to the
backend with trusted X-User-Id / X-Org-Id headers.

Run:
    uvicorn saas_identity.gateway.app:create_gateway_app --factory --port 8080
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request

from saas_identity.auth.clerk_verifier import ClerkJWTVerifier
from saas_identity.config.settings import GatewaySettings, get_log_level
from saas_identity.gateway.middleware import ClerkGatewayAuthMiddleware
from saas_identity.gateway.proxy import BackendForwarder

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


def create_gateway_app(
    settings: Optional[GatewaySettings] = None,
    verifier: Optional[ClerkJWTVerifier] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Gateway settings (read from the environment if omitted)
        verifier: Pre-built verifier (built from settings if omitted)
        http_client: AsyncClient used to reach the backend; the app closes
            it on shutdown only if it created it

    Raises:
        ConfigurationError: If required environment variables are missing
    """
    settings = settings or GatewaySettings.from_env()
    verifier = verifier or ClerkJWTVerifier.from_settings(settings)
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.proxy_timeout_seconds)

    forwarder = BackendForwarder(
        settings.backend_url,
        client,
        shared_secret=settings.gateway_shared_secret,
        timeout_seconds=settings.proxy_timeout_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting identity gateway",
            extra={
                "issuer": settings.issuer,
                "jwks_url": settings.jwks_url,
                "backend_url": settings.backend_url,
                "gateway_secret": "set" if settings.gateway_shared_secret else "missing",
            },
        )
        yield
        if owns_client:
            await client.aclose()
        logger.info("Shutting down identity gateway")

    app = FastAPI(
        title="Identity Gateway",
        description="Verifies Clerk JWTs and forwards trusted identity headers",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    app.add_middleware(ClerkGatewayAuthMiddleware, verifier=verifier)

    app.state.settings = settings
    app.state.verifier = verifier
    app.state.forwarder = forwarder

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request):
        return await forwarder.forward(request)

    return app


def main() -> None:
    """Console entry point: serve the gateway with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=get_log_level(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_gateway_app(), host="0.0.0.0", port=8080)
