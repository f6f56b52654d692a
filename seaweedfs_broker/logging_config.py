"""Logging configuration and setup."""

import logging
import logging.handlers
import json
from typing import Dict, Any, Optional
from datetime import datetime, timezone

from seaweedfs_broker.config import Config


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ('instance_id', 'binding_id', 'operation', 'deployment', 'task_id')

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class AuditLogger:
    """Specialized logger for the instance and binding lifecycle trail."""

    def __init__(self):
        self.logger = logging.getLogger('seaweedfs_broker.audit')

    def log_instance_operation(self, instance_id: str, operation: str,
                               details: Optional[Dict[str, Any]] = None):
        """Log provisioning and deprovisioning events."""
        extra = {
            'instance_id': instance_id,
            'operation': operation
        }

        message = f"Instance operation: {operation} for instance {instance_id}"
        if details:
            message += f" - Details: {json.dumps(details, sort_keys=True)}"

        self.logger.info(message, extra=extra)

    def log_binding_operation(self, instance_id: str, binding_id: str, operation: str,
                              details: Optional[Dict[str, Any]] = None):
        """Log bind and unbind events."""
        extra = {
            'instance_id': instance_id,
            'binding_id': binding_id,
            'operation': operation
        }

        message = f"Binding operation: {operation} for binding {binding_id} on instance {instance_id}"
        if details:
            message += f" - Details: {json.dumps(details, sort_keys=True)}"

        self.logger.info(message, extra=extra)


def setup_logging(config: Optional[Config] = None):
    """Set up logging configuration."""
    config = config or Config()
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(JSONFormatter())
    root_logger.addHandler(console_handler)

    if config.logging.file_path:
        file_handler = logging.handlers.RotatingFileHandler(
            config.logging.file_path,
            maxBytes=config.logging.max_file_size,
            backupCount=config.logging.backup_count
        )
        file_handler.setFormatter(JSONFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('werkzeug').setLevel(logging.WARNING)


audit_logger = AuditLogger()
