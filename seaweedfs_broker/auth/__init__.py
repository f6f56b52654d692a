"""Authentication module."""

from .middleware import AuthMiddleware, API_VERSION_HEADER, AUTH_REALM

__all__ = [
    'AuthMiddleware',
    'API_VERSION_HEADER',
    'AUTH_REALM',
]
