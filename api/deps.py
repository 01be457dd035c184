"""Shared route dependencies."""

from starlette.requests import HTTPConnection

from services.container import ServiceContainer


def get_services(conn: HTTPConnection) -> ServiceContainer:
    """Service container created by the application lifespan."""
    return conn.app.state.services
