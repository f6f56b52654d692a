"""JSON file implementation of broker state storage."""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional

from pydantic import ValidationError

from seaweedfs_broker.exceptions import StoreError
from seaweedfs_broker.models.instance import (
    ServiceInstance, ServiceBinding, PendingOperation, utcnow
)
from seaweedfs_broker.storage.base import StateStore

logger = logging.getLogger(__name__)


class FileStateStore(StateStore):
    """Keeps the whole broker state in one JSON document.

    Every write rewrites the document to a temporary file in the same
    directory and renames it over the old one.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._instances: Dict[str, ServiceInstance] = {}
        self._bindings: Dict[str, ServiceBinding] = {}
        self._operations: Dict[str, PendingOperation] = {}

    async def initialize(self) -> None:
        """Create the state directory and load an existing document."""
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                if self.path.exists():
                    self._load()
            except (OSError, ValueError, ValidationError) as e:
                raise StoreError(f"Failed to load state file {self.path}", cause=e)

            logger.info(f"File state store initialized at {self.path}")

    def _load(self) -> None:
        with open(self.path, 'r') as f:
            data = json.load(f) or {}

        self._instances = {
            key: ServiceInstance.model_validate(value)
            for key, value in (data.get('instances') or {}).items()
        }
        self._bindings = {
            key: ServiceBinding.model_validate(value)
            for key, value in (data.get('bindings') or {}).items()
        }
        self._operations = {
            key: PendingOperation.model_validate(value)
            for key, value in (data.get('operations') or {}).items()
        }

    def _document(self) -> Dict[str, Any]:
        return {
            'instances': {k: v.model_dump(mode='json') for k, v in self._instances.items()},
            'bindings': {k: v.model_dump(mode='json') for k, v in self._bindings.items()},
            'operations': {k: v.model_dump(mode='json') for k, v in self._operations.items()},
        }

    def _persist(self) -> None:
        tmp_name = None
        try:
            fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix='.state-', suffix='.tmp')
            with os.fdopen(fd, 'w') as f:
                json.dump(self._document(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreError(f"Failed to write state file {self.path}", cause=e)

    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy(deep=True) if instance else None

    async def save_instance(self, instance: ServiceInstance) -> None:
        with self._lock:
            instance.updated_at = utcnow()
            previous = self._instances.get(instance.instance_id)
            self._instances[instance.instance_id] = instance.model_copy(deep=True)
            try:
                self._persist()
            except StoreError:
                self._restore(self._instances, instance.instance_id, previous)
                raise
            logger.debug(f"Saved instance {instance.instance_id} ({instance.state.value})")

    async def delete_instance(self, instance_id: str) -> None:
        with self._lock:
            previous = self._instances.pop(instance_id, None)
            if previous is None:
                return
            try:
                self._persist()
            except StoreError:
                self._instances[instance_id] = previous
                raise
            logger.debug(f"Deleted instance {instance_id}")

    async def list_instances(self) -> List[ServiceInstance]:
        with self._lock:
            instances = sorted(self._instances.values(), key=lambda i: i.created_at)
            return [i.model_copy(deep=True) for i in instances]

    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        with self._lock:
            binding = self._bindings.get(binding_id)
            return binding.model_copy(deep=True) if binding else None

    async def save_binding(self, binding: ServiceBinding) -> None:
        with self._lock:
            previous = self._bindings.get(binding.binding_id)
            self._bindings[binding.binding_id] = binding.model_copy(deep=True)
            try:
                self._persist()
            except StoreError:
                self._restore(self._bindings, binding.binding_id, previous)
                raise

    async def delete_binding(self, binding_id: str) -> None:
        with self._lock:
            previous = self._bindings.pop(binding_id, None)
            if previous is None:
                return
            try:
                self._persist()
            except StoreError:
                self._bindings[binding_id] = previous
                raise

    async def list_bindings_for_instance(self, instance_id: str) -> List[ServiceBinding]:
        with self._lock:
            bindings = [b for b in self._bindings.values() if b.instance_id == instance_id]
            bindings.sort(key=lambda b: b.created_at)
            return [b.model_copy(deep=True) for b in bindings]

    async def find_binding_by_iam_user(self, user_name: str) -> Optional[ServiceBinding]:
        with self._lock:
            for binding in self._bindings.values():
                if binding.iam_user_name == user_name:
                    return binding.model_copy(deep=True)
            return None

    async def save_operation(self, operation: PendingOperation) -> None:
        with self._lock:
            previous = self._operations.get(operation.instance_id)
            self._operations[operation.instance_id] = operation.model_copy(deep=True)
            try:
                self._persist()
            except StoreError:
                self._restore(self._operations, operation.instance_id, previous)
                raise

    async def get_operation(self, instance_id: str) -> Optional[PendingOperation]:
        with self._lock:
            operation = self._operations.get(instance_id)
            return operation.model_copy(deep=True) if operation else None

    async def delete_operation(self, instance_id: str) -> None:
        with self._lock:
            previous = self._operations.pop(instance_id, None)
            if previous is None:
                return
            try:
                self._persist()
            except StoreError:
                self._operations[instance_id] = previous
                raise

    async def list_operations(self) -> List[PendingOperation]:
        with self._lock:
            operations = sorted(self._operations.values(), key=lambda o: o.created_at)
            return [o.model_copy(deep=True) for o in operations]

    async def close(self) -> None:
        """Nothing to release; every write is already on disk."""
        logger.info("File state store closed")

    @staticmethod
    def _restore(table: Dict[str, Any], key: str, previous: Any) -> None:
        if previous is None:
            table.pop(key, None)
        else:
            table[key] = previous
