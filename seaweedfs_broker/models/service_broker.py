"""Open Service Broker API data models."""

from pydantic import BaseModel, Field, field_validator
from typing import Dict, Any, Optional, List


class ServicePlanMetadata(BaseModel):
    """Service plan metadata."""
    displayName: Optional[str] = None
    bullets: Optional[List[str]] = None


class ServicePlan(BaseModel):
    """Service plan definition."""
    id: str = Field(..., description="Unique identifier for the service plan")
    name: str = Field(..., description="Human-readable name for the service plan")
    description: str = Field(..., description="Description of the service plan")
    free: bool = Field(default=True, description="Whether the plan is free")
    bindable: bool = Field(default=True, description="Whether the plan supports binding")
    metadata: Optional[ServicePlanMetadata] = None


class ServiceMetadata(BaseModel):
    """Service metadata."""
    displayName: Optional[str] = None
    imageUrl: Optional[str] = None
    longDescription: Optional[str] = None
    providerDisplayName: Optional[str] = None
    documentationUrl: Optional[str] = None
    supportUrl: Optional[str] = None


class Service(BaseModel):
    """Service definition for catalog."""
    id: str = Field(..., description="Unique identifier for the service")
    name: str = Field(..., description="Human-readable name for the service")
    description: str = Field(..., description="Description of the service")
    bindable: bool = Field(default=True, description="Whether the service supports binding")
    instances_retrievable: bool = True
    bindings_retrievable: bool = True
    plan_updateable: bool = Field(default=False, description="Whether the service supports plan updates")
    plans: List[ServicePlan] = Field(..., description="List of service plans")
    tags: List[str] = Field(default_factory=list)
    metadata: Optional[ServiceMetadata] = None


class Catalog(BaseModel):
    """Service catalog response."""
    services: List[Service] = Field(..., description="List of available services")


class ProvisionRequest(BaseModel):
    """Service instance provisioning request."""
    service_id: str = Field(..., description="ID of the service being provisioned")
    plan_id: str = Field(..., description="ID of the plan being provisioned")
    context: Optional[Dict[str, Any]] = None
    organization_guid: str = Field(default="", description="Organization GUID")
    space_guid: str = Field(default="", description="Space GUID")
    parameters: Optional[Dict[str, Any]] = None

    @field_validator('parameters', 'context')
    @classmethod
    def default_empty(cls, v):
        return v or {}


class ProvisionResponse(BaseModel):
    """Service instance provisioning response."""
    dashboard_url: Optional[str] = None
    operation: Optional[str] = None


class DeprovisionResponse(BaseModel):
    """Service instance deprovisioning response."""
    operation: Optional[str] = None


class InstanceResponse(BaseModel):
    """Service instance fetch response."""
    service_id: str
    plan_id: str
    dashboard_url: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class LastOperationResponse(BaseModel):
    """Last operation status response."""
    state: str = Field(..., description="State of the operation")
    description: Optional[str] = None

    @field_validator('state')
    @classmethod
    def validate_state(cls, v):
        """Validate operation state."""
        valid_states = ['in progress', 'succeeded', 'failed']
        if v not in valid_states:
            raise ValueError(f"state must be one of {valid_states}")
        return v


class BindRequest(BaseModel):
    """Service binding request."""
    service_id: str = ""
    plan_id: str = ""
    app_guid: str = ""
    bind_resource: Optional[Dict[str, Any]] = None
    parameters: Optional[Dict[str, Any]] = None

    @field_validator('parameters', 'bind_resource')
    @classmethod
    def default_empty(cls, v):
        return v or {}

    @property
    def consumer_id(self) -> str:
        """App GUID, falling back to ``bind_resource.app_guid``."""
        return self.app_guid or (self.bind_resource or {}).get('app_guid', '')


class Credentials(BaseModel):
    """Credentials handed to a bound application."""
    endpoint: str
    endpoint_url: str
    bucket: str
    access_key: str
    secret_key: str
    region: str
    use_ssl: bool
    uri: str
    console_url: Optional[str] = None


class BindResponse(BaseModel):
    """Service binding response."""
    credentials: Credentials


class ErrorResponse(BaseModel):
    """Error response."""
    error: str = Field(..., description="Error code")
    description: str = Field(..., description="Error description")
