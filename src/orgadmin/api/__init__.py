"""HTTP surface of the auth core (aiohttp)."""

from .auth_api import setup_routes
from .middleware import MANAGER_KEY, SETTINGS_KEY, cors_middleware, error_middleware

__all__ = [
    "setup_routes",
    "MANAGER_KEY",
    "SETTINGS_KEY",
    "cors_middleware",
    "error_middleware",
]
