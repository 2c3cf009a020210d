"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache

from fastapi import Request
from spotme_settlement.config import Settings, settings
from spotme_settlement.infrastructure.clients.gateway import GatewayPort, build_gateway


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


@lru_cache(maxsize=1)
def get_gateway() -> GatewayPort:
    """Payment gateway chosen once by the configuration health check"""
    return build_gateway(settings)


def get_settings() -> Settings:
    return settings
