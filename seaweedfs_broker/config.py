"""Configuration management for the SeaweedFS service broker."""

import os
import logging
from typing import Dict, Any, Optional, List
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from seaweedfs_broker.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/var/vcap/jobs/seaweedfs-broker/config/broker.yml"

PLAN_TYPE_SHARED = "shared"
PLAN_TYPE_DEDICATED = "dedicated"


class BaseConfig(BaseModel):
    """Base configuration model; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)


class AuthConfig(BaseConfig):
    """Basic auth credentials for the broker API."""
    username: str = ""
    password: str = ""


class TLSConfig(BaseConfig):
    """TLS settings for the broker listener."""
    enabled: bool = False
    cert_file: str = ""
    key_file: str = ""


class LoggingConfig(BaseConfig):
    """Log file configuration; the level is the top-level ``log_level``."""
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5


class ServiceMetadataConfig(BaseConfig):
    """Service-level marketplace metadata."""
    displayName: str = ""
    imageUrl: str = ""
    longDescription: str = ""
    providerDisplayName: str = ""
    documentationUrl: str = ""
    supportUrl: str = ""


class PlanMetadataConfig(BaseConfig):
    """Plan metadata including bullets."""
    displayName: str = ""
    bullets: List[str] = Field(default_factory=list)


class DedicatedPlanConfig(BaseConfig):
    """Sizing and placement of a dedicated cluster plan."""
    vm_type: str = "default"
    disk_type: str = "default"
    master_nodes: int = Field(default=1, ge=1)
    volume_nodes: int = Field(default=3, ge=1)
    filer_nodes: int = Field(default=1, ge=1)
    replication: str = "001"
    network: str = "default"
    azs: List[str] = Field(default_factory=list)


class PlanConfig(BaseConfig):
    """A service plan."""
    id: str
    name: str
    description: str = ""
    free: bool = True
    metadata: PlanMetadataConfig = Field(default_factory=PlanMetadataConfig)
    plan_type: str = Field(default=PLAN_TYPE_SHARED, description="shared or dedicated")
    dedicated_config: Optional[DedicatedPlanConfig] = None

    @property
    def is_dedicated(self) -> bool:
        return self.plan_type == PLAN_TYPE_DEDICATED


class ServiceConfig(BaseConfig):
    """A service in the catalog."""
    id: str
    name: str
    description: str = ""
    bindable: bool = True
    tags: List[str] = Field(default_factory=list)
    metadata: ServiceMetadataConfig = Field(default_factory=ServiceMetadataConfig)
    plans: List[PlanConfig] = Field(default_factory=list)


class CatalogConfig(BaseConfig):
    """Service catalog configuration."""
    services: List[ServiceConfig] = Field(default_factory=list)


class SharedClusterConfig(BaseConfig):
    """The shared SeaweedFS cluster used by shared plans."""
    s3_endpoint: str = ""
    iam_endpoint: str = Field(default="", description="Internal endpoint for IAM operations")
    access_key: str = ""
    secret_key: str = ""
    use_ssl: bool = False
    region: str = "us-east-1"


class UAAConfig(BaseConfig):
    """UAA client credentials for director access."""
    url: str = ""
    client_id: str = ""
    client_secret: str = ""


class BoshAuthenticationConfig(BaseConfig):
    uaa: UAAConfig = Field(default_factory=UAAConfig)


class BoshConfig(BaseConfig):
    """BOSH director configuration for on-demand deployments."""
    url: str = ""
    root_ca_cert: str = ""
    authentication: BoshAuthenticationConfig = Field(default_factory=BoshAuthenticationConfig)

    deployment_prefix: str = "seaweedfs"
    release_name: str = "seaweedfs"
    release_version: str = "latest"
    stemcell_os: str = "ubuntu-jammy"
    stemcell_version: str = "latest"
    routing_release_version: str = ""

    request_timeout: float = Field(default=30.0, gt=0)
    poll_interval: float = Field(default=5.0, ge=0)
    deploy_timeout_minutes: float = Field(default=30.0, gt=0)
    delete_timeout_minutes: float = Field(default=15.0, gt=0)
    vms_timeout_minutes: float = Field(default=2.0, gt=0)


class CFConfig(BaseConfig):
    """Cloud Foundry configuration."""
    system_domain: str = ""
    deployment_name: str = ""


class NATSTLSConfig(BaseConfig):
    enabled: bool = False
    client_cert: str = ""
    client_key: str = ""
    ca_cert: str = ""


class NATSConfig(BaseConfig):
    """NATS configuration for on-demand route registration."""
    machines: List[str] = Field(default_factory=list)
    port: int = 0
    user: str = ""
    password: str = ""
    tls: NATSTLSConfig = Field(default_factory=NATSTLSConfig)


class StateStoreConfig(BaseConfig):
    """State store configuration."""
    type: str = Field(default="file", description="file or sqlite")
    path: str = "/var/vcap/store/seaweedfs-broker/state.json"
    sqlite_path: str = "/var/vcap/store/seaweedfs-broker/state.db"


class CredHubConfig(BaseConfig):
    """CredHub configuration for credential storage."""
    url: str = ""
    client_id: str = ""
    client_secret: str = ""
    ca_cert: str = ""
    path_prefix: str = "/seaweedfs-broker"


class Config(BaseConfig):
    """Main configuration class."""
    listen_addr: str = ":8080"
    log_level: str = "info"
    auth: AuthConfig = Field(default_factory=AuthConfig)
    tls: TLSConfig = Field(default_factory=TLSConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    shared_cluster: SharedClusterConfig = Field(default_factory=SharedClusterConfig)
    bosh: BoshConfig = Field(default_factory=BoshConfig)
    cf: CFConfig = Field(default_factory=CFConfig)
    nats: NATSConfig = Field(default_factory=NATSConfig)
    state_store: StateStoreConfig = Field(default_factory=StateStoreConfig)
    credhub: CredHubConfig = Field(default_factory=CredHubConfig)

    @property
    def host(self) -> str:
        host, _, _ = self.listen_addr.rpartition(":")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.listen_addr.rpartition(":")
        return int(port or 8080)

    def find_plan(self, service_id: str, plan_id: str) -> Optional[PlanConfig]:
        """Look up a plan by service and plan ID."""
        for service in self.catalog.services:
            if service.id != service_id:
                continue
            for plan in service.plans:
                if plan.id == plan_id:
                    return plan
        return None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'Config':
        """Build and validate a configuration from a plain mapping."""
        try:
            return cls(**(data or {}))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed: {e}")

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from a YAML file and apply environment overrides."""
        config_path = Path(path)
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load configuration file {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")

        config = cls.from_dict(data)
        config.apply_env()
        logger.info(f"Loaded configuration from file: {path}")
        return config

    def apply_env(self) -> 'Config':
        """Apply environment variable overrides."""
        self.log_level = os.getenv('LOG_LEVEL', self.log_level)
        self.logging.file_path = os.getenv('LOG_FILE_PATH', self.logging.file_path)
        self.listen_addr = os.getenv('BROKER_LISTEN_ADDR', self.listen_addr)
        self.state_store.type = os.getenv('STATE_STORE_TYPE', self.state_store.type)
        self.state_store.path = os.getenv('STATE_STORE_PATH', self.state_store.path)
        return self


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from ``path`` or ``BROKER_CONFIG_PATH``."""
    return Config.from_file(path or os.getenv('BROKER_CONFIG_PATH', DEFAULT_CONFIG_PATH))
