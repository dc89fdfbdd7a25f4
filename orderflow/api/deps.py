"""
Order Pipeline — Request dependencies
"""
from fastapi import Request

from orderflow.services.container import ServiceContainer


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
