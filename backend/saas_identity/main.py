"""
FastAPI application entry point for the identity backend.

The backend sits behind the gateway and trusts its X-User-Id / X-Org-Id
headers. Only the Clerk webhook endpoint authenticates its own callers,
by Svix signature.

Run:
    uvicorn saas_identity.main:create_app --factory --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine

from saas_identity import __version__
from saas_identity.api.routes import health
from saas_identity.api.routes import organizations
from saas_identity.api.routes import users
from saas_identity.api.routes import webhooks_clerk
from saas_identity.auth.gateway_headers import GatewayHeaderAuthMiddleware
from saas_identity.auth.webhook_signature import WebhookSignatureVerifier
from saas_identity.config.settings import BackendSettings, get_log_level
from saas_identity.database.session import configure_engine, init_db, reset_engine

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[BackendSettings] = None,
    engine: Optional[Engine] = None,
) -> FastAPI:
    """
    Build the backend application.

    Args:
        settings: Backend settings (read from the environment if omitted)
        engine: Engine to initialize on startup (the pooled default if omitted)

    Raises:
        ConfigurationError: If required environment variables are missing
    """
    settings = settings or BackendSettings.from_env()
    webhook_verifier = WebhookSignatureVerifier(
        settings.webhook_secret,
        allow_unsigned=settings.webhook_allow_unsigned,
        tolerance_seconds=settings.webhook_tolerance_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        logger.info(
            "Starting identity backend",
            extra={
                "webhook_secret": "set" if webhook_verifier.is_configured else "missing",
                "gateway_secret": "set" if settings.gateway_shared_secret else "missing",
                "cors_origins": list(settings.cors_origins),
            },
        )
        configure_engine(settings.database_url, engine=engine)
        init_db()
        yield
        if engine is None:
            reset_engine()
        logger.info("Shutting down identity backend")

    app = FastAPI(
        title="Identity Backend",
        description="Clerk-synchronized users, organizations and memberships",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        GatewayHeaderAuthMiddleware,
        shared_secret=settings.gateway_shared_secret,
    )

    # Outermost middleware
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.settings = settings
    app.state.webhook_verifier = webhook_verifier

    app.include_router(health.router)
    app.include_router(webhooks_clerk.router)
    app.include_router(users.router)
    app.include_router(organizations.router)

    return app


def main() -> None:
    """Console entry point: serve the backend with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=get_log_level(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
