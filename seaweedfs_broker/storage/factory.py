"""Factory for creating storage instances."""

import logging

from seaweedfs_broker.config import StateStoreConfig
from seaweedfs_broker.exceptions import ConfigurationError
from seaweedfs_broker.storage.base import StateStore
from seaweedfs_broker.storage.file_store import FileStateStore
from seaweedfs_broker.storage.sqlite_store import SQLiteStateStore

logger = logging.getLogger(__name__)


class StorageFactory:
    """Factory for creating storage instances."""

    @staticmethod
    def build_store(config: StateStoreConfig) -> StateStore:
        """Build an uninitialized store for the configured backend."""
        store_type = config.type.lower()

        if store_type == 'file':
            logger.info("Creating file storage backend")
            return FileStateStore(config.path)

        if store_type == 'sqlite':
            logger.info("Creating SQLite storage backend")
            return SQLiteStateStore(config.sqlite_path)

        raise ConfigurationError(f"Unsupported state store type: {config.type}",
                                 config_key='state_store.type')

    @staticmethod
    async def create_store(config: StateStoreConfig) -> StateStore:
        """Build and initialize the configured store."""
        store = StorageFactory.build_store(config)
        await store.initialize()
        return store
