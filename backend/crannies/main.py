"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import billing as billing_router
from .routers import issues as issues_router
from .routers import workspaces as workspaces_router
from .telemetry import init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


PUBLIC_ENDPOINTS = ["/health", "/webhooks/stripe"]


def create_app() -> FastAPI:
    init_sentry()
    settings = get_settings()

    app = FastAPI(
        title="Crannies API",
        description="""
        Crannies backend: workspaces, deals (issues) and Stripe billing.

        New workspaces start a 7-day trial. Once it ends without an active
        subscription, deal routes answer 402 until the workspace subscribes
        through /billing/checkout.
        """,
        version="1.0.0",
    )

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [
        origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()
    ]
    if settings.FRONTEND_URL not in allowed_origins:
        allowed_origins.append(settings.FRONTEND_URL)
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workspaces_router.router)
    app.include_router(issues_router.router)
    app.include_router(billing_router.router)
    app.include_router(billing_router.webhook_router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="Unauthenticated liveness check for load balancers.",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    # Custom OpenAPI schema with security definitions
    def custom_openapi():
        if app.openapi_schema:
            return app.openapi_schema

        openapi_schema = get_openapi(
            title=app.title,
            version=app.version,
            description=app.description,
            routes=app.routes,
        )

        openapi_schema.setdefault("components", {})["securitySchemes"] = {
            "cookieAuth": {
                "type": "apiKey",
                "in": "cookie",
                "name": "access_token",
                "description": "JWT issued by the identity provider. Format: 'Bearer <token>'",
            }
        }

        for path, operations in openapi_schema["paths"].items():
            if path in PUBLIC_ENDPOINTS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"cookieAuth": []}])

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi
    return app


app = create_app()
