"""Factory classes for creating test data and model instances."""

from typing import Dict, Any, Optional
import uuid

from seaweedfs_broker.models.instance import (
    ServiceInstance, ServiceBinding, InstanceState, SharedBucket, DedicatedCluster,
    PendingOperation, OperationType
)
from seaweedfs_broker.models.service_broker import ProvisionRequest, BindRequest


class ServiceInstanceFactory:
    """Factory for creating ServiceInstance instances."""

    @staticmethod
    def create_shared(instance_id: Optional[str] = None, plan_id: str = "shared-plan",
                      service_id: str = "seaweedfs-service",
                      state: InstanceState = InstanceState.SUCCEEDED) -> ServiceInstance:
        """Create a shared-bucket instance."""
        instance_id = instance_id or str(uuid.uuid4())
        space_guid = str(uuid.uuid4())
        return ServiceInstance(
            instance_id=instance_id,
            service_id=service_id,
            plan_id=plan_id,
            organization_guid=str(uuid.uuid4()),
            space_guid=space_guid,
            backing=SharedBucket(bucket_name=f"cf-{space_guid[:8]}-{instance_id[:8]}"),
            state=state
        )

    @staticmethod
    def create_dedicated(instance_id: Optional[str] = None, plan_id: str = "dedicated-plan",
                         service_id: str = "seaweedfs-service",
                         state: InstanceState = InstanceState.SUCCEEDED,
                         iam_endpoint: str = "10.0.0.5:8333",
                         s3_endpoint: str = "10.0.0.5:8333") -> ServiceInstance:
        """Create a dedicated-cluster instance with discovered endpoints."""
        instance_id = instance_id or str(uuid.uuid4())
        return ServiceInstance(
            instance_id=instance_id,
            service_id=service_id,
            plan_id=plan_id,
            organization_guid=str(uuid.uuid4()),
            space_guid=str(uuid.uuid4()),
            backing=DedicatedCluster(
                deployment_name=f"seaweedfs-{instance_id[:8]}",
                s3_endpoint=s3_endpoint,
                iam_endpoint=iam_endpoint,
                admin_access_key="ADMINACCESSKEY000000",
                admin_secret_key="0" * 40
            ),
            state=state
        )


class ServiceBindingFactory:
    """Factory for creating ServiceBinding instances."""

    @staticmethod
    def create_default(instance_id: str, binding_id: Optional[str] = None) -> ServiceBinding:
        binding_id = binding_id or str(uuid.uuid4())
        return ServiceBinding(
            binding_id=binding_id,
            instance_id=instance_id,
            app_guid=str(uuid.uuid4()),
            access_key=f"AK{uuid.uuid4().hex[:18].upper()}",
            secret_key=uuid.uuid4().hex + uuid.uuid4().hex[:8],
            iam_user_name=f"cf-binding-{binding_id}"
        )


class PendingOperationFactory:
    """Factory for creating PendingOperation records."""

    @staticmethod
    def create(instance_id: str, operation: OperationType = OperationType.PROVISION,
               plan_id: str = "dedicated-plan") -> PendingOperation:
        return PendingOperation(
            instance_id=instance_id,
            operation=operation,
            plan_id=plan_id,
            owner="test-host:1"
        )


class RequestFactory:
    """Factory for OSB request payloads."""

    @staticmethod
    def provision(service_id: str = "seaweedfs-service", plan_id: str = "shared-plan",
                  parameters: Optional[Dict[str, Any]] = None) -> ProvisionRequest:
        return ProvisionRequest(
            service_id=service_id,
            plan_id=plan_id,
            organization_guid=str(uuid.uuid4()),
            space_guid=str(uuid.uuid4()),
            parameters=parameters or {}
        )

    @staticmethod
    def bind(service_id: str = "seaweedfs-service", plan_id: str = "shared-plan",
             app_guid: Optional[str] = None) -> BindRequest:
        return BindRequest(
            service_id=service_id,
            plan_id=plan_id,
            app_guid=app_guid or str(uuid.uuid4())
        )
