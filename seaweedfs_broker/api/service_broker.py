"""Open Service Broker API implementation."""

import asyncio
import logging
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import BadRequest

from seaweedfs_broker.auth.middleware import AuthMiddleware
from seaweedfs_broker.config import Config
from seaweedfs_broker.exceptions import BrokerError, ErrorCode, ValidationError
from seaweedfs_broker.icon import ICON_PNG
from seaweedfs_broker.models.service_broker import BindRequest, ErrorResponse, ProvisionRequest
from seaweedfs_broker.services.broker import BrokerResult, BrokerService
from seaweedfs_broker.services.operations import OperationWorker
from seaweedfs_broker.storage.factory import StorageFactory

logger = logging.getLogger(__name__)


def async_route(f):
    """Decorator to handle async routes in Flask."""
    @wraps(f)
    def wrapper(*args, **kwargs):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(f(*args, **kwargs))
        finally:
            loop.run_until_complete(loop.shutdown_default_executor())
            loop.close()
    return wrapper


def _json_body() -> Dict[str, Any]:
    """Parse the request body as a JSON object; an empty body is ``{}``."""
    if not request.get_data():
        return {}
    try:
        data = request.get_json(force=True)
    except BadRequest:
        raise ValidationError("Request body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _parse(model, data: Dict[str, Any]):
    try:
        return model(**data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid request format: {e}")


def _accepts_incomplete() -> bool:
    return request.args.get('accepts_incomplete', '').lower() == 'true'


def _render(body: BaseModel, status_code: int = 200):
    return jsonify(body.model_dump(exclude_none=True)), status_code


def _render_result(result: BrokerResult):
    return _render(result.body, result.status_code)


def _error(error: ErrorCode, description: str, status_code: int):
    return jsonify(ErrorResponse(error=error.value, description=description).model_dump()), status_code


def create_app(broker: BrokerService, config: Optional[Config] = None) -> Flask:
    """Create Flask application with OSB API routes."""
    config = config or broker.config
    app = Flask(__name__)
    app.config['BROKER'] = broker

    auth_middleware = AuthMiddleware(config.auth)
    auth_middleware.init_app(app)

    @app.route('/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok'})

    @app.route('/icon.png', methods=['GET'])
    def icon():
        return Response(ICON_PNG, mimetype='image/png',
                        headers={'Cache-Control': 'public, max-age=86400'})

    @app.route('/v2/catalog', methods=['GET'])
    def get_catalog():
        """Get service catalog."""
        return _render(broker.get_catalog())

    @app.route('/v2/service_instances/<instance_id>', methods=['PUT'])
    @async_route
    async def provision_service_instance(instance_id: str):
        """Provision a service instance."""
        existing = await broker.existing_provision(instance_id)
        if existing is not None:
            return _render_result(existing)

        provision_request = _parse(ProvisionRequest, _json_body())
        result = await broker.provision(instance_id, provision_request, _accepts_incomplete())
        return _render_result(result)

    @app.route('/v2/service_instances/<instance_id>', methods=['GET'])
    @async_route
    async def get_service_instance(instance_id: str):
        """Fetch a service instance."""
        return _render(await broker.get_instance(instance_id))

    @app.route('/v2/service_instances/<instance_id>', methods=['DELETE'])
    @async_route
    async def deprovision_service_instance(instance_id: str):
        """Deprovision a service instance."""
        result = await broker.deprovision(instance_id, _accepts_incomplete())
        return _render_result(result)

    @app.route('/v2/service_instances/<instance_id>/last_operation', methods=['GET'])
    @async_route
    async def get_last_operation(instance_id: str):
        """Get last operation status."""
        return _render(await broker.last_operation(instance_id))

    @app.route('/v2/service_instances/<instance_id>/service_bindings/<binding_id>', methods=['PUT'])
    @async_route
    async def bind_service_instance(instance_id: str, binding_id: str):
        """Create a service binding."""
        bind_request = _parse(BindRequest, _json_body())
        result = await broker.bind(instance_id, binding_id, bind_request)
        return _render_result(result)

    @app.route('/v2/service_instances/<instance_id>/service_bindings/<binding_id>', methods=['GET'])
    @async_route
    async def get_service_binding(instance_id: str, binding_id: str):
        """Fetch a service binding."""
        return _render(await broker.get_binding(instance_id, binding_id))

    @app.route('/v2/service_instances/<instance_id>/service_bindings/<binding_id>', methods=['DELETE'])
    @async_route
    async def unbind_service_instance(instance_id: str, binding_id: str):
        """Delete a service binding."""
        result = await broker.unbind(instance_id, binding_id)
        return _render_result(result)

    @app.errorhandler(BrokerError)
    def handle_broker_error(error: BrokerError):
        if error.status_code >= 500:
            logger.error(f"{request.method} {request.path} failed: {error}")
        else:
            logger.info(f"{request.method} {request.path} rejected: {error.message}")
        return jsonify(error.to_response()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return _error(ErrorCode.NOT_FOUND, "Endpoint not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error(ErrorCode.METHOD_NOT_ALLOWED, "Method not allowed for this endpoint", 405)

    @app.errorhandler(500)
    def internal_error(error):
        original = getattr(error, 'original_exception', None)
        logger.error(f"Unhandled error on {request.method} {request.path}: {original or error}",
                     exc_info=original)
        return _error(ErrorCode.INTERNAL_ERROR, "Internal server error", 500)

    return app


async def create_broker_service(config: Config, worker: Optional[OperationWorker] = None) -> BrokerService:
    """Open the state store and build the broker from configuration."""
    store = await StorageFactory.create_store(config.state_store)
    return BrokerService.from_config(config, store, worker or OperationWorker())


def run_server(config: Config):
    """Run the Flask server."""
    worker = OperationWorker()
    broker = asyncio.run(create_broker_service(config, worker))

    resumed = asyncio.run(broker.resume_pending_operations())
    if resumed:
        logger.info(f"Resumed {resumed} pending operations")

    app = create_app(broker, config)
    ssl_context = None
    if config.tls.enabled:
        ssl_context = (config.tls.cert_file, config.tls.key_file)

    logger.info(f"SeaweedFS service broker listening on {config.host}:{config.port} "
                f"(TLS: {config.tls.enabled})")
    try:
        app.run(host=config.host, port=config.port, ssl_context=ssl_context, threaded=True)
    finally:
        worker.shutdown(wait=False)
        asyncio.run(broker.close())
