"""Main entry point for the API server."""

import sys
import logging

from seaweedfs_broker.api.service_broker import run_server
from seaweedfs_broker.config import load_config
from seaweedfs_broker.exceptions import ConfigurationError
from seaweedfs_broker.logging_config import setup_logging

if __name__ == "__main__":
    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    logger = logging.getLogger(__name__)

    logger.info("Starting SeaweedFS service broker...")
    try:
        run_server(config)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Server failed to start: {e}")
        sys.exit(1)
