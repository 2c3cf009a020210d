"""FastAPI application factory"""

from fastapi import Depends, FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from spotme_settlement.api.dependencies import get_gateway
from spotme_settlement.api.middleware import RequestIDMiddleware, MetricsMiddleware
from spotme_settlement.api.registry import registry
from spotme_settlement.api.v1 import actions
from spotme_settlement.infrastructure.clients.gateway import GatewayPort
from spotme_settlement.infrastructure.observability.logging import setup_logging
from spotme_settlement.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="SpotMe Settlement Engine",
        description="Contribution checkout, settlement, webhooks, retries and payouts",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check reports whether contributions charge cards or settle directly
    @app.get("/health")
    def health_check(gateway: GatewayPort = Depends(get_gateway)):
        return {
            "status": "ok",
            "service": settings.service_name,
            "gateway_mode": gateway.mode,
            "actions": registry.actions(),
        }

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(actions.router, prefix="/v1", tags=["actions"])

    return app


app = create_app()
