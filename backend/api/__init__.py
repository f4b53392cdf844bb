# api/__init__.py
from api.server import create_app
from api.services import Services, build_services

__all__ = [
    "create_app",
    "Services",
    "build_services",
]
