"""Abstract base class for broker state storage."""

from abc import ABC, abstractmethod
from typing import List, Optional

from seaweedfs_broker.models.instance import ServiceInstance, ServiceBinding, PendingOperation


class StateStore(ABC):
    """Abstract interface for instance, binding and pending-operation storage.

    ``get_*`` methods return ``None`` for a missing key and deleting a missing
    key is a no-op. Backend failures raise ``StoreError``.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Initialize the storage backend."""
        pass

    @abstractmethod
    async def get_instance(self, instance_id: str) -> Optional[ServiceInstance]:
        """Retrieve service instance by ID."""
        pass

    @abstractmethod
    async def save_instance(self, instance: ServiceInstance) -> None:
        """Insert or replace an instance, stamping ``updated_at``."""
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: str) -> None:
        """Delete service instance record."""
        pass

    @abstractmethod
    async def list_instances(self) -> List[ServiceInstance]:
        """List all service instances."""
        pass

    @abstractmethod
    async def get_binding(self, binding_id: str) -> Optional[ServiceBinding]:
        """Retrieve service binding by ID."""
        pass

    @abstractmethod
    async def save_binding(self, binding: ServiceBinding) -> None:
        """Insert or replace a binding."""
        pass

    @abstractmethod
    async def delete_binding(self, binding_id: str) -> None:
        """Delete service binding record."""
        pass

    @abstractmethod
    async def list_bindings_for_instance(self, instance_id: str) -> List[ServiceBinding]:
        """List bindings that reference an instance."""
        pass

    @abstractmethod
    async def find_binding_by_iam_user(self, user_name: str) -> Optional[ServiceBinding]:
        """Return the binding whose credentials belong to an IAM user, if any."""
        pass

    @abstractmethod
    async def save_operation(self, operation: PendingOperation) -> None:
        """Record asynchronous work for an instance."""
        pass

    @abstractmethod
    async def get_operation(self, instance_id: str) -> Optional[PendingOperation]:
        """Retrieve the pending operation of an instance."""
        pass

    @abstractmethod
    async def delete_operation(self, instance_id: str) -> None:
        """Remove the pending operation of an instance."""
        pass

    @abstractmethod
    async def list_operations(self) -> List[PendingOperation]:
        """List all pending operations."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close storage connections."""
        pass
