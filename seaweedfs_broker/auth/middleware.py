"""Authentication middleware for the broker API."""

import hmac
import logging
from typing import Optional

from flask import Flask, g, jsonify, request

from seaweedfs_broker.config import AuthConfig
from seaweedfs_broker.exceptions import AuthenticationError, MissingAPIVersionError

logger = logging.getLogger(__name__)

API_VERSION_HEADER = 'X-Broker-API-Version'
AUTH_REALM = 'SeaweedFS Service Broker'


class AuthMiddleware:
    """HTTP basic auth followed by the broker API version check.

    Credentials are checked before the version header, so an anonymous
    caller learns nothing about the API.
    """

    def __init__(self, auth_config: AuthConfig, require_api_version: bool = True):
        self.auth_config = auth_config
        self.require_api_version = require_api_version

        # Endpoints that don't require authentication
        self.public_endpoints = {
            '/health',
            '/icon.png',
        }

    def init_app(self, app: Flask) -> None:
        """Initialize middleware with Flask app."""
        app.before_request(self.before_request)
        app.after_request(self.after_request)

        app.errorhandler(AuthenticationError)(self.handle_auth_error)

    def _credentials_valid(self, username: Optional[str], password: Optional[str]) -> bool:
        if username is None or password is None:
            return False
        user_ok = hmac.compare_digest(username.encode(), self.auth_config.username.encode())
        pass_ok = hmac.compare_digest(password.encode(), self.auth_config.password.encode())
        return user_ok and pass_ok

    def before_request(self):
        """Process request before routing."""
        if request.path in self.public_endpoints:
            return None

        auth = request.authorization
        username = auth.username if auth else None
        password = auth.password if auth else None
        if not self._credentials_valid(username, password):
            raise AuthenticationError("Invalid or missing credentials")

        g.broker_user = username

        version = request.headers.get(API_VERSION_HEADER)
        if self.require_api_version and not version:
            raise MissingAPIVersionError(API_VERSION_HEADER)
        g.broker_api_version = version

        logger.debug(f"Authenticated request: method={request.method}, path={request.path}, "
                     f"api_version={version}")
        return None

    def after_request(self, response):
        """Add security headers."""
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        return response

    def handle_auth_error(self, error: AuthenticationError):
        """Render a 401 with a basic-auth challenge."""
        logger.warning(f"Authentication failed: method={request.method}, path={request.path}, "
                       f"client={request.remote_addr}")
        response = jsonify(error.to_response())
        response.status_code = error.status_code
        response.headers['WWW-Authenticate'] = f'Basic realm="{AUTH_REALM}"'
        return response
