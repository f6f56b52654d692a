"""Service instance, binding and pending-operation models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Union, Literal

from pydantic import BaseModel, Field

from seaweedfs_broker.exceptions import InvalidStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceState(str, Enum):
    """Instance lifecycle state."""
    PROVISIONING = "provisioning"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEPROVISIONING = "deprovisioning"


# Lifecycle order; a transition may only move forward, or to FAILED.
_STATE_ORDER = {
    InstanceState.PROVISIONING: 0,
    InstanceState.SUCCEEDED: 1,
    InstanceState.FAILED: 2,
    InstanceState.DEPROVISIONING: 3,
}


class SharedBucket(BaseModel):
    """A bucket on the shared cluster."""
    kind: Literal["shared"] = "shared"
    bucket_name: str = ""


class DedicatedCluster(BaseModel):
    """An on-demand cluster deployed through the director."""
    kind: Literal["dedicated"] = "dedicated"
    deployment_name: str
    bucket_name: str = "default"
    s3_endpoint: str = Field(default="", description="Data-plane address handed to bindings")
    iam_endpoint: str = Field(default="", description="Internal IP:port used only for IAM calls")
    console_url: str = ""
    admin_access_key: str = ""
    admin_secret_key: str = ""


Backing = Union[SharedBucket, DedicatedCluster]


class ServiceInstance(BaseModel):
    """Service instance metadata."""
    instance_id: str = Field(..., description="Unique instance identifier")
    service_id: str = Field(..., description="Service identifier")
    plan_id: str = Field(..., description="Service plan identifier")
    organization_guid: str = Field(default="", description="Organization GUID")
    space_guid: str = Field(default="", description="Space GUID")
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Provisioning parameters")
    context: Dict[str, Any] = Field(default_factory=dict, description="Platform context")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    backing: Backing = Field(default_factory=SharedBucket, discriminator='kind')
    state: InstanceState = InstanceState.PROVISIONING
    state_message: str = ""

    @property
    def is_dedicated(self) -> bool:
        return isinstance(self.backing, DedicatedCluster)

    @property
    def bucket_name(self) -> str:
        return self.backing.bucket_name

    def transition(self, state: InstanceState, message: Optional[str] = None) -> None:
        """Move to ``state``, enforcing forward-only lifecycle order."""
        state = InstanceState(state)
        if state != self.state and state != InstanceState.FAILED:
            if _STATE_ORDER[state] < _STATE_ORDER[self.state]:
                raise InvalidStateTransition(self.state.value, state.value)
        self.state = state
        if message is not None:
            self.state_message = message


class ServiceBinding(BaseModel):
    """A scoped grant of access to one instance."""
    binding_id: str
    instance_id: str
    app_guid: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    access_key: str = ""
    secret_key: str = ""
    iam_user_name: str = Field(default="", description="Empty when no IAM user was created")


class OperationType(str, Enum):
    PROVISION = "provision"
    DEPROVISION = "deprovision"


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"


class PendingOperation(BaseModel):
    """Durable marker for asynchronous work launched for an instance."""
    instance_id: str
    operation: OperationType
    plan_id: str = ""
    owner: str = ""
    status: OperationStatus = OperationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
