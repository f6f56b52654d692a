"""Open Service Broker core for SeaweedFS.

Drives instance and binding lifecycles. Shared plans are handled inline on
the request path; dedicated plans record a pending operation and hand the
long-running BOSH work to the background worker.
"""

import asyncio
import functools
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from seaweedfs_broker.clients.bosh_client import BoshClient
from seaweedfs_broker.clients.credhub_client import CredHubClient
from seaweedfs_broker.clients.iam_client import IAMClient
from seaweedfs_broker.clients.s3_client import S3Client
from seaweedfs_broker.config import Config, PlanConfig
from seaweedfs_broker.exceptions import (
    AsyncRequiredError, BindError, BindingConflictError, BindingGoneError,
    BindingNotFoundError, BindingsExistError, ConcurrencyError,
    CredHubError, DeploymentError, IAMError, InstanceGoneError,
    InstanceNotFoundError, InstanceNotReadyError, PlanNotFoundError,
    ProvisionError, StorageBackendError
)
from seaweedfs_broker.icon import icon_data_uri
from seaweedfs_broker.logging_config import audit_logger
from seaweedfs_broker.manifest.generator import (
    ManifestGenerator, route_host, route_registration_enabled, S3_PORT
)
from seaweedfs_broker.models.instance import (
    DedicatedCluster, InstanceState, OperationStatus, OperationType,
    PendingOperation, ServiceBinding, ServiceInstance, SharedBucket
)
from seaweedfs_broker.models.service_broker import (
    BindRequest, BindResponse, Catalog, Credentials, DeprovisionResponse,
    InstanceResponse, LastOperationResponse, ProvisionRequest, ProvisionResponse,
    Service, ServiceMetadata, ServicePlan, ServicePlanMetadata
)
from seaweedfs_broker.services.operations import InstanceLocks, OperationWorker, operation_owner
from seaweedfs_broker.storage.base import StateStore

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_AZS = ["z1"]
IAM_ENTITY_EXISTS = "EntityAlreadyExists"
IAM_USER_PREFIX = "cf-binding-"
IAM_USER_NAME_MAX = 64


@dataclass
class BrokerResult:
    """HTTP status and body of a broker operation."""
    status_code: int
    body: BaseModel


class EmptyResponse(BaseModel):
    """Empty JSON object body."""


def generate_access_key() -> str:
    """20 upper-case hex characters."""
    return secrets.token_bytes(10).hex().upper()


def generate_secret_key() -> str:
    """40 hex characters."""
    return secrets.token_hex(20)


def iam_user_name(binding_id: str) -> str:
    """IAM user owning a binding's credentials, unique per binding ID.

    IDs too long for the IAM name limit are replaced by their SHA-256 digest.
    """
    name = f"{IAM_USER_PREFIX}{binding_id}"
    if len(name) <= IAM_USER_NAME_MAX:
        return name
    digest = hashlib.sha256(binding_id.encode()).hexdigest()
    return f"{IAM_USER_PREFIX}{digest[:IAM_USER_NAME_MAX - len(IAM_USER_PREFIX)]}"


def policy_name(binding_id: str) -> str:
    return f"bucket-access-{binding_id[:8]}"


def shared_bucket_name(space_guid: str, instance_id: str) -> str:
    return f"cf-{space_guid[:8]}-{instance_id[:8]}"


def vm_job_name(vm: Dict[str, Any]) -> str:
    """Job name of a VM record from ``job_name``, ``job`` or the ``instance`` prefix."""
    for key in ('job_name', 'job'):
        if vm.get(key):
            return vm[key]
    instance = vm.get('instance') or ""
    if "/" in instance:
        return instance.split("/", 1)[0]
    return ""


def build_catalog(config: Config) -> Catalog:
    """OSB catalog of the configured services and plans."""
    services = []
    for svc in config.catalog.services:
        plans = [
            ServicePlan(
                id=plan.id,
                name=plan.name,
                description=plan.description,
                free=plan.free,
                bindable=True,
                metadata=ServicePlanMetadata(
                    displayName=plan.metadata.displayName or None,
                    bullets=plan.metadata.bullets or None
                )
            )
            for plan in svc.plans
        ]
        meta = svc.metadata
        services.append(Service(
            id=svc.id,
            name=svc.name,
            description=svc.description,
            bindable=svc.bindable,
            instances_retrievable=True,
            bindings_retrievable=True,
            plan_updateable=False,
            plans=plans,
            tags=svc.tags,
            metadata=ServiceMetadata(
                displayName=meta.displayName or None,
                imageUrl=meta.imageUrl or icon_data_uri(),
                longDescription=meta.longDescription or None,
                providerDisplayName=meta.providerDisplayName or None,
                documentationUrl=meta.documentationUrl or None,
                supportUrl=meta.supportUrl or None
            )
        ))
    return Catalog(services=services)


class BrokerService:
    """Protocol state machine behind the OSB HTTP routes."""

    def __init__(self, config: Config, store: StateStore, worker: OperationWorker,
                 bosh_client: Optional[BoshClient] = None,
                 s3_client_factory: Callable[..., S3Client] = S3Client,
                 iam_client_factory: Callable[..., IAMClient] = IAMClient,
                 credhub_client: Optional[CredHubClient] = None,
                 locks: Optional[InstanceLocks] = None):
        self.config = config
        self.store = store
        self.worker = worker
        self.bosh = bosh_client
        self.s3_client_factory = s3_client_factory
        self.iam_client_factory = iam_client_factory
        self.credhub = credhub_client
        self.locks = locks or InstanceLocks()
        self.generator = ManifestGenerator(config)

        self.shared_s3: Optional[S3Client] = None
        self.shared_iam: Optional[IAMClient] = None
        self._init_shared_clients()

    @classmethod
    def from_config(cls, config: Config, store: StateStore,
                    worker: OperationWorker) -> 'BrokerService':
        """Build the broker with the external clients the configuration enables."""
        bosh_client = BoshClient(config.bosh) if config.bosh.url else None
        credhub_client = CredHubClient(config.credhub) if config.credhub.url else None
        return cls(config, store, worker, bosh_client=bosh_client, credhub_client=credhub_client)

    async def close(self) -> None:
        """Release client sessions and the state store."""
        for client in (self.bosh, self.credhub):
            if client is not None:
                client.close()
        await self.store.close()

    def _init_shared_clients(self) -> None:
        shared = self.config.shared_cluster
        if not shared.s3_endpoint:
            return

        self.shared_s3 = self.s3_client_factory(
            shared.s3_endpoint, shared.access_key, shared.secret_key,
            region=shared.region, use_ssl=shared.use_ssl
        )

        # A separate IAM endpoint is an internal address without TLS.
        iam_endpoint = shared.iam_endpoint or shared.s3_endpoint
        iam_use_ssl = shared.use_ssl if iam_endpoint == shared.s3_endpoint else False
        logger.info(f"Initializing shared IAM client with endpoint {iam_endpoint} (SSL: {iam_use_ssl})")
        self.shared_iam = self.iam_client_factory(
            iam_endpoint, shared.access_key, shared.secret_key,
            region=shared.region, use_ssl=iam_use_ssl
        )

    @staticmethod
    async def _call(fn: Callable, *args, **kwargs):
        """Run a blocking client call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    def get_catalog(self) -> Catalog:
        return build_catalog(self.config)

    # Instances

    def dashboard_url(self, instance: ServiceInstance) -> str:
        backing = instance.backing
        if not isinstance(backing, DedicatedCluster):
            return ""
        if backing.console_url:
            return backing.console_url
        if self.config.cf.system_domain:
            return f"https://{route_host(instance.instance_id, self.config.cf.system_domain)}"
        return ""

    async def existing_provision(self, instance_id: str) -> Optional[BrokerResult]:
        """The idempotent 200 answer when ``instance_id`` is already provisioned."""
        existing = await self.store.get_instance(instance_id)
        if existing is None:
            return None
        logger.info(f"Instance {instance_id} already exists, returning current state",
                    extra={'instance_id': instance_id})
        return BrokerResult(200, ProvisionResponse(dashboard_url=self.dashboard_url(existing) or None))

    async def provision(self, instance_id: str, request: ProvisionRequest,
                        accepts_incomplete: bool = False) -> BrokerResult:
        """Provision a shared bucket inline or start a dedicated cluster deployment."""
        async with self.locks.hold(instance_id):
            existing = await self.existing_provision(instance_id)
            if existing is not None:
                return existing

            plan = self.config.find_plan(request.service_id, request.plan_id)
            if plan is None:
                raise PlanNotFoundError(request.service_id, request.plan_id)

            instance = ServiceInstance(
                instance_id=instance_id,
                service_id=request.service_id,
                plan_id=request.plan_id,
                organization_guid=request.organization_guid,
                space_guid=request.space_guid,
                parameters=request.parameters or {},
                context=request.context or {},
            )

            if plan.is_dedicated:
                if not accepts_incomplete:
                    raise AsyncRequiredError("provisioning")
                return await self._start_dedicated(instance, plan)

            return await self._provision_shared(instance)

    async def _provision_shared(self, instance: ServiceInstance) -> BrokerResult:
        if self.shared_s3 is None:
            raise ProvisionError("shared cluster not configured")

        bucket = shared_bucket_name(instance.space_guid, instance.instance_id)
        instance.backing = SharedBucket(bucket_name=bucket)
        audit_logger.log_instance_operation(instance.instance_id, "provision_start",
                                            {'plan_id': instance.plan_id, 'bucket': bucket})

        try:
            await self._call(self.shared_s3.create_bucket, bucket)
        except StorageBackendError as e:
            audit_logger.log_instance_operation(instance.instance_id, "provision_failed",
                                                {'error': str(e)})
            raise ProvisionError(f"failed to create bucket: {e}", cause=e)

        instance.transition(InstanceState.SUCCEEDED)
        await self.store.save_instance(instance)

        logger.info(f"Created bucket {bucket} for instance {instance.instance_id}",
                    extra={'instance_id': instance.instance_id})
        audit_logger.log_instance_operation(instance.instance_id, "provision_success",
                                            {'bucket': bucket})
        return BrokerResult(201, ProvisionResponse(dashboard_url=self.dashboard_url(instance) or None))

    async def _start_dedicated(self, instance: ServiceInstance, plan: PlanConfig) -> BrokerResult:
        instance.backing = DedicatedCluster(
            deployment_name=f"{self.config.bosh.deployment_prefix}-{instance.instance_id[:8]}",
            admin_access_key=generate_access_key(),
            admin_secret_key=generate_secret_key(),
        )
        instance.state_message = "Provisioning started"
        await self.store.save_instance(instance)
        await self.store.save_operation(PendingOperation(
            instance_id=instance.instance_id,
            operation=OperationType.PROVISION,
            plan_id=plan.id,
            owner=operation_owner()
        ))

        audit_logger.log_instance_operation(instance.instance_id, "provision_start", {
            'plan_id': plan.id,
            'deployment': instance.backing.deployment_name
        })
        self._submit(OperationType.PROVISION, instance.instance_id)

        return BrokerResult(202, ProvisionResponse(
            dashboard_url=self.dashboard_url(instance) or None,
            operation=OperationType.PROVISION.value
        ))

    async def deprovision(self, instance_id: str, accepts_incomplete: bool = False) -> BrokerResult:
        """Remove a shared bucket inline or start a dedicated cluster teardown."""
        async with self.locks.hold(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise InstanceGoneError(instance_id)

            bindings = await self.store.list_bindings_for_instance(instance_id)
            if bindings:
                raise BindingsExistError(instance_id, len(bindings))

            if instance.state == InstanceState.PROVISIONING:
                raise ConcurrencyError(instance_id, "Instance is still being provisioned")

            if instance.is_dedicated:
                if not accepts_incomplete:
                    raise AsyncRequiredError("deprovisioning")

                if instance.state != InstanceState.DEPROVISIONING:
                    instance.transition(InstanceState.DEPROVISIONING, "Deprovisioning started")
                    await self.store.save_instance(instance)
                    await self.store.save_operation(PendingOperation(
                        instance_id=instance_id,
                        operation=OperationType.DEPROVISION,
                        plan_id=instance.plan_id,
                        owner=operation_owner()
                    ))
                    audit_logger.log_instance_operation(instance_id, "deprovision_start", {
                        'deployment': instance.backing.deployment_name
                    })
                    self._submit(OperationType.DEPROVISION, instance_id)

                return BrokerResult(202, DeprovisionResponse(operation=OperationType.DEPROVISION.value))

            audit_logger.log_instance_operation(instance_id, "deprovision_start",
                                                {'bucket': instance.bucket_name})
            if self.shared_s3 is not None and instance.bucket_name:
                try:
                    await self._call(self.shared_s3.empty_and_delete_bucket, instance.bucket_name)
                except StorageBackendError as e:
                    logger.warning(f"Failed to delete bucket {instance.bucket_name}: {e}",
                                   extra={'instance_id': instance_id})

            await self.store.delete_instance(instance_id)
            audit_logger.log_instance_operation(instance_id, "deprovision_success")
            return BrokerResult(200, EmptyResponse())

    async def last_operation(self, instance_id: str) -> LastOperationResponse:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceGoneError(instance_id)

        if instance.state == InstanceState.SUCCEEDED:
            state = "succeeded"
        elif instance.state == InstanceState.FAILED:
            state = "failed"
        else:
            state = "in progress"

        return LastOperationResponse(state=state, description=instance.state_message or None)

    async def get_instance(self, instance_id: str) -> InstanceResponse:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        return InstanceResponse(
            service_id=instance.service_id,
            plan_id=instance.plan_id,
            dashboard_url=self.dashboard_url(instance) or None,
            parameters=instance.parameters
        )

    # Background operations

    def _submit(self, operation: OperationType, instance_id: str) -> None:
        self.worker.submit(f"{operation.value}:{instance_id}",
                           lambda: self.run_operation(operation, instance_id))

    async def run_operation(self, operation: OperationType, instance_id: str) -> None:
        """Execute a pending operation and remove its record afterwards."""
        pending = await self.store.get_operation(instance_id)
        if pending is not None:
            pending.status = OperationStatus.RUNNING
            pending.owner = operation_owner()
            await self.store.save_operation(pending)

        try:
            if operation == OperationType.PROVISION:
                await self._provision_dedicated(instance_id)
            else:
                await self._deprovision_dedicated(instance_id)
        finally:
            await self.store.delete_operation(instance_id)

    async def resume_pending_operations(self) -> int:
        """Resubmit operations left behind by a previous broker process."""
        resumed = 0
        for pending in await self.store.list_operations():
            instance = await self.store.get_instance(pending.instance_id)
            expected = (InstanceState.PROVISIONING if pending.operation == OperationType.PROVISION
                        else InstanceState.DEPROVISIONING)

            if instance is None or instance.state != expected:
                logger.info(f"Dropping stale {pending.operation.value} operation for {pending.instance_id}",
                            extra={'instance_id': pending.instance_id})
                await self.store.delete_operation(pending.instance_id)
                continue

            logger.info(f"Resuming {pending.operation.value} for instance {pending.instance_id} "
                        f"(started by {pending.owner})",
                        extra={'instance_id': pending.instance_id, 'operation': pending.operation.value})
            self._submit(pending.operation, pending.instance_id)
            resumed += 1

        return resumed

    async def _save_locked(self, instance: ServiceInstance) -> None:
        async with self.locks.hold(instance.instance_id):
            await self.store.save_instance(instance)

    async def _fail(self, instance: ServiceInstance, operation: str, message: str) -> None:
        logger.error(f"{operation} of instance {instance.instance_id} failed: {message}",
                     extra={'instance_id': instance.instance_id, 'operation': operation})
        instance.transition(InstanceState.FAILED, message)
        await self._save_locked(instance)
        audit_logger.log_instance_operation(instance.instance_id, f"{operation}_failed",
                                            {'error': message})

    async def _provision_dedicated(self, instance_id: str) -> None:
        instance = await self.store.get_instance(instance_id)
        if instance is None or not instance.is_dedicated:
            logger.warning(f"Nothing to provision for instance {instance_id}")
            return
        if instance.state != InstanceState.PROVISIONING:
            logger.info(f"Instance {instance_id} is {instance.state.value}, skipping provisioning")
            return

        try:
            await self._build_cluster(instance)
        except Exception as e:
            await self._fail(instance, "provision", f"Provisioning failed: {e}")

    async def _build_cluster(self, instance: ServiceInstance) -> None:
        backing: DedicatedCluster = instance.backing
        instance_id = instance.instance_id
        log_extra = {'instance_id': instance_id, 'deployment': backing.deployment_name}

        if self.bosh is None:
            await self._fail(instance, "provision", "BOSH director not configured")
            return

        plan = self.config.find_plan(instance.service_id, instance.plan_id)
        if plan is None:
            await self._fail(instance, "provision", f"Plan {instance.plan_id} is no longer in the catalog")
            return

        azs = await self._resolve_azs(plan)
        manifest = self.generator.generate(instance, plan, azs)
        logger.info(f"Generated manifest for deployment {backing.deployment_name}", extra=log_extra)
        logger.debug(manifest.replace(backing.admin_secret_key, "<redacted>"), extra=log_extra)

        try:
            task = await self._call(self.bosh.deploy, manifest)
        except DeploymentError as e:
            await self._fail(instance, "provision", f"Failed to start deployment: {e}")
            return

        instance.state_message = f"Deployment started, task ID: {task.id}"
        await self._save_locked(instance)

        try:
            await self._call(self.bosh.wait_for_task, task.id,
                             self.config.bosh.deploy_timeout_minutes * 60)
        except DeploymentError as e:
            await self._fail(instance, "provision", f"Deployment failed: {e}")
            return

        await self._discover_endpoints(instance)

        if route_registration_enabled(self.config):
            host = route_host(instance_id, self.config.cf.system_domain)
            backing.s3_endpoint = host
            backing.console_url = f"https://{host}"
            logger.info(f"Using router hostname {host} as S3 endpoint", extra=log_extra)

        if backing.iam_endpoint:
            await self._ensure_bucket(instance)
        await self._store_admin_credentials(instance)

        instance.transition(InstanceState.SUCCEEDED, "Deployment complete")
        await self._save_locked(instance)
        logger.info(f"Provisioned dedicated cluster {backing.deployment_name}", extra=log_extra)
        audit_logger.log_instance_operation(instance_id, "provision_success",
                                            {'deployment': backing.deployment_name})

    async def _resolve_azs(self, plan: PlanConfig) -> Optional[List[str]]:
        sizing = plan.dedicated_config
        if sizing is None or sizing.azs or not sizing.network:
            return None

        try:
            azs = await self._call(self.bosh.get_cloud_config_azs_for_network, sizing.network)
            logger.info(f"Discovered AZs for network {sizing.network}: {azs}")
            return azs
        except DeploymentError as e:
            logger.warning(f"Could not discover AZs from cloud config: {e}, using fallback {DEFAULT_FALLBACK_AZS}")
            return list(DEFAULT_FALLBACK_AZS)

    async def _discover_endpoints(self, instance: ServiceInstance) -> None:
        backing: DedicatedCluster = instance.backing
        try:
            vms = await self._call(self.bosh.get_deployment_vms, backing.deployment_name)
        except DeploymentError as e:
            logger.warning(f"Could not get deployment VMs for {backing.deployment_name}: {e}",
                           extra={'instance_id': instance.instance_id})
            return

        for vm in vms:
            if vm_job_name(vm) != "seaweedfs-s3":
                continue
            ips = vm.get('ips') or []
            dns = vm.get('dns') or []
            if ips:
                backing.iam_endpoint = f"{ips[0]}:{S3_PORT}"
            if dns:
                backing.s3_endpoint = f"{dns[0]}:{S3_PORT}"
            elif ips:
                backing.s3_endpoint = f"{ips[0]}:{S3_PORT}"

        if not backing.s3_endpoint:
            logger.warning(f"No seaweedfs-s3 job found in deployment {backing.deployment_name}",
                           extra={'instance_id': instance.instance_id})

    def _dedicated_s3(self, backing: DedicatedCluster) -> S3Client:
        return self.s3_client_factory(
            backing.iam_endpoint, backing.admin_access_key, backing.admin_secret_key,
            region=self.config.shared_cluster.region, use_ssl=False
        )

    async def _ensure_bucket(self, instance: ServiceInstance) -> None:
        """Create the default bucket of a dedicated cluster; failures are logged."""
        backing: DedicatedCluster = instance.backing
        try:
            await self._call(self._dedicated_s3(backing).create_bucket, backing.bucket_name)
        except StorageBackendError as e:
            logger.warning(f"Could not create default bucket {backing.bucket_name}: {e}",
                           extra={'instance_id': instance.instance_id})

    async def _store_admin_credentials(self, instance: ServiceInstance) -> None:
        if self.credhub is None:
            return
        backing: DedicatedCluster = instance.backing
        try:
            await self._call(self.credhub.set_json, self.credhub.credential_path(instance.instance_id), {
                'access_key': backing.admin_access_key,
                'secret_key': backing.admin_secret_key,
                's3_endpoint': backing.s3_endpoint,
                'iam_endpoint': backing.iam_endpoint,
                'deployment_name': backing.deployment_name,
            })
        except CredHubError as e:
            logger.warning(f"Could not store admin credentials in CredHub: {e}",
                           extra={'instance_id': instance.instance_id})

    async def _remove_admin_credentials(self, instance_id: str) -> None:
        if self.credhub is None:
            return
        try:
            await self._call(self.credhub.delete, self.credhub.credential_path(instance_id))
        except CredHubError as e:
            logger.warning(f"Could not remove admin credentials from CredHub: {e}",
                           extra={'instance_id': instance_id})

    async def _deprovision_dedicated(self, instance_id: str) -> None:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            return
        if instance.state != InstanceState.DEPROVISIONING:
            logger.info(f"Instance {instance_id} is {instance.state.value}, skipping teardown")
            return

        try:
            await self._teardown(instance)
        except Exception as e:
            await self._fail(instance, "deprovision", f"Deprovisioning failed: {e}")

    async def _teardown(self, instance: ServiceInstance) -> None:
        backing: DedicatedCluster = instance.backing
        instance_id = instance.instance_id

        if self.bosh is None:
            await self._finish_teardown(instance_id)
            return

        try:
            deployment = await self._call(self.bosh.get_deployment, backing.deployment_name)
        except DeploymentError as e:
            logger.warning(f"Could not check deployment {backing.deployment_name}: {e}",
                           extra={'instance_id': instance_id})
            deployment = {}

        if deployment is None:
            logger.info(f"Deployment {backing.deployment_name} does not exist, cleaning up broker state",
                        extra={'instance_id': instance_id})
            await self._finish_teardown(instance_id)
            return

        try:
            task = await self._call(self.bosh.delete_deployment, backing.deployment_name)
        except DeploymentError as e:
            await self._fail(instance, "deprovision", f"Failed to delete deployment: {e}")
            return

        try:
            await self._call(self.bosh.wait_for_task, task.id,
                             self.config.bosh.delete_timeout_minutes * 60)
        except DeploymentError as e:
            await self._fail(instance, "deprovision", f"Delete deployment failed: {e}")
            return

        await self._finish_teardown(instance_id)
        logger.info(f"Deprovisioned dedicated cluster {backing.deployment_name}",
                    extra={'instance_id': instance_id})

    async def _finish_teardown(self, instance_id: str) -> None:
        async with self.locks.hold(instance_id):
            await self.store.delete_instance(instance_id)
        await self._remove_admin_credentials(instance_id)
        audit_logger.log_instance_operation(instance_id, "deprovision_success")

    # Bindings

    async def bind(self, instance_id: str, binding_id: str, request: BindRequest) -> BrokerResult:
        """Issue per-binding credentials, or return the existing ones."""
        async with self.locks.hold(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)

            if instance.state != InstanceState.SUCCEEDED:
                raise InstanceNotReadyError(instance_id)

            existing = await self.store.get_binding(binding_id)
            if existing is not None:
                if existing.instance_id != instance_id:
                    raise BindingConflictError(binding_id)
                return BrokerResult(200, BindResponse(credentials=self.credentials(instance, existing)))

            binding = ServiceBinding(
                binding_id=binding_id,
                instance_id=instance_id,
                app_guid=request.consumer_id,
                parameters=request.parameters or {}
            )
            audit_logger.log_binding_operation(instance_id, binding_id, "bind_start",
                                               {'app_guid': binding.app_guid})

            backing = instance.backing
            if isinstance(backing, DedicatedCluster) and backing.iam_endpoint and backing.bucket_name:
                await self._ensure_bucket(instance)

            try:
                await self._issue_credentials(instance, binding)
            except BindError as e:
                audit_logger.log_binding_operation(instance_id, binding_id, "bind_failed",
                                                   {'error': str(e)})
                raise

            await self.store.save_binding(binding)
            audit_logger.log_binding_operation(instance_id, binding_id, "bind_success", {
                'iam_user': binding.iam_user_name,
                'access_key': binding.access_key
            })
            return BrokerResult(201, BindResponse(credentials=self.credentials(instance, binding)))

    def _iam_client_for(self, instance: ServiceInstance) -> Optional[IAMClient]:
        backing = instance.backing
        if isinstance(backing, DedicatedCluster):
            if not backing.iam_endpoint:
                return None
            return self.iam_client_factory(
                backing.iam_endpoint, backing.admin_access_key, backing.admin_secret_key,
                region=self.config.shared_cluster.region, use_ssl=False
            )
        return self.shared_iam

    async def _issue_credentials(self, instance: ServiceInstance, binding: ServiceBinding) -> None:
        client = self._iam_client_for(instance)
        backing = instance.backing

        if client is None:
            if isinstance(backing, DedicatedCluster):
                logger.info(f"No IAM endpoint for {backing.deployment_name}, binding {binding.binding_id} "
                            "uses admin credentials", extra={'binding_id': binding.binding_id})
                binding.access_key = backing.admin_access_key
                binding.secret_key = backing.admin_secret_key
                return
            raise BindError("IAM client not initialized - cannot create per-binding credentials")

        user = iam_user_name(binding.binding_id)
        try:
            await self._call(client.create_user, user)
        except IAMError as e:
            if e.details.get('code') != IAM_ENTITY_EXISTS:
                raise BindError(f"failed to create IAM user: {e}", cause=e)
            owner = await self.store.find_binding_by_iam_user(user)
            if owner is not None and owner.binding_id != binding.binding_id:
                raise BindError(f"IAM user {user} already belongs to binding {owner.binding_id}", cause=e)
            logger.info(f"IAM user {user} already exists, reusing it", extra={'binding_id': binding.binding_id})

        try:
            key = await self._call(client.create_access_key, user)
        except IAMError as e:
            try:
                await self._call(client.delete_user, user)
            except IAMError as cleanup_error:
                logger.warning(f"Could not remove IAM user {user} after failed key creation: {cleanup_error}")
            raise BindError(f"failed to create S3 credentials via IAM API: {e}", cause=e)

        binding.iam_user_name = user
        binding.access_key = key.access_key_id
        binding.secret_key = key.secret_access_key
        logger.info(f"Created IAM credentials for user {user}, access_key={key.access_key_id}",
                    extra={'binding_id': binding.binding_id, 'instance_id': instance.instance_id})

        try:
            await self._call(client.put_user_policy, user, policy_name(binding.binding_id),
                             instance.bucket_name)
        except IAMError as e:
            logger.warning(f"Could not attach bucket policy for user {user}: {e}",
                           extra={'binding_id': binding.binding_id})

    async def unbind(self, instance_id: str, binding_id: str) -> BrokerResult:
        """Revoke a binding's credentials and remove it."""
        async with self.locks.hold(instance_id):
            instance = await self.store.get_instance(instance_id)
            if instance is None:
                raise InstanceGoneError(instance_id)

            binding = await self.store.get_binding(binding_id)
            if binding is None or binding.instance_id != instance_id:
                raise BindingGoneError(binding_id)

            audit_logger.log_binding_operation(instance_id, binding_id, "unbind_start")
            await self._revoke_credentials(instance, binding)
            await self.store.delete_binding(binding_id)
            audit_logger.log_binding_operation(instance_id, binding_id, "unbind_success")
            return BrokerResult(200, EmptyResponse())

    async def _revoke_credentials(self, instance: ServiceInstance, binding: ServiceBinding) -> None:
        """Remove policy, access key and user, in that order; each step is best-effort."""
        if not binding.iam_user_name:
            logger.info(f"Binding {binding.binding_id} has no IAM credentials to delete")
            return

        client = self._iam_client_for(instance)
        if client is None:
            logger.warning(f"No IAM client available to clean up binding {binding.binding_id}")
            return

        user = binding.iam_user_name
        steps = [
            ("delete user policy", client.delete_user_policy, (user, policy_name(binding.binding_id))),
        ]
        if binding.access_key:
            steps.append(("delete access key", client.delete_access_key, (user, binding.access_key)))
        steps.append(("delete user", client.delete_user, (user,)))

        for label, fn, args in steps:
            try:
                await self._call(fn, *args)
            except IAMError as e:
                logger.warning(f"Could not {label} for {user}: {e}",
                               extra={'binding_id': binding.binding_id})

        logger.info(f"Deleted IAM credentials and user {user}", extra={'binding_id': binding.binding_id})

    async def get_binding(self, instance_id: str, binding_id: str) -> BindResponse:
        instance = await self.store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)

        binding = await self.store.get_binding(binding_id)
        if binding is None or binding.instance_id != instance_id:
            raise BindingNotFoundError(binding_id)

        return BindResponse(credentials=self.credentials(instance, binding))

    def credentials(self, instance: ServiceInstance, binding: ServiceBinding) -> Credentials:
        backing = instance.backing
        if isinstance(backing, DedicatedCluster):
            endpoint = backing.s3_endpoint
            # A direct gateway port has no TLS; router hostnames do.
            use_ssl = f":{S3_PORT}" not in endpoint
            if not endpoint:
                logger.warning(f"Building credentials for {backing.deployment_name} without an S3 endpoint")
        else:
            endpoint = self.config.shared_cluster.s3_endpoint
            use_ssl = self.config.shared_cluster.use_ssl

        scheme = "https" if use_ssl else "http"
        bucket = backing.bucket_name
        console_url = backing.console_url if isinstance(backing, DedicatedCluster) else ""

        return Credentials(
            endpoint=endpoint,
            endpoint_url=f"{scheme}://{endpoint}",
            bucket=bucket,
            access_key=binding.access_key,
            secret_key=binding.secret_key,
            region=self.config.shared_cluster.region,
            use_ssl=use_ssl,
            uri=f"s3://{binding.access_key}:{binding.secret_key}@{endpoint}/{bucket}",
            console_url=console_url or None
        )
