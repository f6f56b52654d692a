"""BOSH deployment manifest generation for dedicated clusters.

The manifest is assembled as plain dicts and lists and serialized once with
PyYAML. Key order is fixed by construction and nothing time- or
randomness-dependent goes in, so identical inputs give identical text.
"""

from typing import Any, Dict, List, Optional

import yaml

from seaweedfs_broker.config import Config, DedicatedPlanConfig, PlanConfig
from seaweedfs_broker.models.instance import ServiceInstance, DedicatedCluster

NATS_HOST = "nats.service.cf.internal"
DEFAULT_NATS_PORT = 4224
S3_PORT = 8333
MASTER_PORT = 9333
DEFAULT_AZS = ["z1"]
ROUTE_NAME = "seaweedfs-s3-ondemand"


class ManifestDumper(yaml.SafeDumper):
    """Safe dumper that writes multi-line strings as literal blocks."""


def _str_representer(dumper: yaml.SafeDumper, value: str):
    if "\n" in value:
        return dumper.represent_scalar('tag:yaml.org,2002:str', value, style='|')
    return dumper.represent_scalar('tag:yaml.org,2002:str', value)


ManifestDumper.add_representer(str, _str_representer)


def _pem(value: str) -> str:
    value = (value or "").strip()
    return value + "\n" if value else ""


def route_host(instance_id: str, system_domain: str) -> str:
    """Router hostname of a dedicated cluster's S3 gateway."""
    return f"seaweedfs-{instance_id[:8]}.{system_domain}"


def route_registration_enabled(config: Config) -> bool:
    """Whether dedicated clusters announce their S3 route to the CF router."""
    has_cf_deployment = bool(config.cf.deployment_name and config.cf.system_domain)
    nats = config.nats
    has_nats = bool(nats.tls.enabled and nats.tls.client_cert and nats.machines)
    return has_cf_deployment and has_nats


class ManifestGenerator:
    """Builds the deployment manifest of a dedicated cluster."""

    def __init__(self, config: Config):
        self.config = config

    def generate(self, instance: ServiceInstance, plan: PlanConfig,
                 azs: Optional[List[str]] = None) -> str:
        """Render the manifest for ``instance`` on ``plan``.

        ``azs`` overrides the plan's availability zones (used after cloud
        config discovery).
        """
        return yaml.dump(
            self.build(instance, plan, azs),
            Dumper=ManifestDumper,
            sort_keys=False,
            default_flow_style=False,
            explicit_start=True,
            width=4096,
        )

    def build(self, instance: ServiceInstance, plan: PlanConfig,
              azs: Optional[List[str]] = None) -> Dict[str, Any]:
        backing = instance.backing
        if not isinstance(backing, DedicatedCluster):
            raise ValueError(f"instance {instance.instance_id} is not a dedicated cluster")

        sizing = plan.dedicated_config or DedicatedPlanConfig()
        zones = list(azs or sizing.azs or DEFAULT_AZS)
        replication = sizing.replication or "001"
        bosh = self.config.bosh
        route = route_registration_enabled(self.config)

        releases = [{'name': bosh.release_name, 'version': bosh.release_version}]
        if route:
            releases.append({'name': 'routing', 'version': bosh.routing_release_version or 'latest'})
            releases.append({'name': 'bpm', 'version': 'latest'})

        def group(name: str, instances: int, jobs: List[Dict[str, Any]],
                  with_disk: bool = True) -> Dict[str, Any]:
            spec = {
                'name': name,
                'instances': instances,
                'vm_type': sizing.vm_type,
                'stemcell': 'default',
                'azs': list(zones),
                'networks': [{'name': sizing.network}],
            }
            if with_disk:
                spec['persistent_disk_type'] = sizing.disk_type
            spec['jobs'] = jobs
            return spec

        master_job = {
            'name': 'seaweedfs-master',
            'release': bosh.release_name,
            'properties': {
                'seaweedfs': {
                    'master': {'port': MASTER_PORT, 'default_replication': replication},
                },
            },
        }

        s3_group = group('seaweedfs-s3', 1, [self._s3_job(backing)], with_disk=False)
        if route:
            s3_group['jobs'].extend(self._route_jobs())
            s3_group['properties'] = self._route_properties(instance.instance_id)

        return {
            'name': backing.deployment_name,
            'releases': releases,
            'stemcells': [{'alias': 'default', 'os': bosh.stemcell_os, 'version': bosh.stemcell_version}],
            'update': {
                'canaries': 1,
                'max_in_flight': 1,
                'canary_watch_time': '30000-300000',
                'update_watch_time': '30000-300000',
            },
            'instance_groups': [
                group('seaweedfs-master', sizing.master_nodes, [master_job]),
                group('seaweedfs-volume', sizing.volume_nodes,
                      [{'name': 'seaweedfs-volume', 'release': bosh.release_name}]),
                group('seaweedfs-filer', sizing.filer_nodes,
                      [{'name': 'seaweedfs-filer', 'release': bosh.release_name}]),
                s3_group,
            ],
        }

    def _s3_job(self, backing: DedicatedCluster) -> Dict[str, Any]:
        return {
            'name': 'seaweedfs-s3',
            'release': self.config.bosh.release_name,
            'properties': {
                'seaweedfs': {
                    's3': {
                        'iam': {'enabled': True},
                        'config': {
                            'enabled': True,
                            'identities': [{
                                'name': 'admin',
                                'credentials': [{
                                    'accessKey': backing.admin_access_key,
                                    'secretKey': backing.admin_secret_key,
                                }],
                                'actions': ['Admin', 'Read', 'Write'],
                            }],
                        },
                    },
                },
            },
        }

    @staticmethod
    def _route_jobs() -> List[Dict[str, Any]]:
        # Route registration uses NATS properties, not links into the CF deployment.
        return [
            {'name': 'route_registrar', 'release': 'routing',
             'consumes': {'nats': 'nil', 'nats-tls': 'nil'}},
            {'name': 'bpm', 'release': 'bpm'},
        ]

    def _route_properties(self, instance_id: str) -> Dict[str, Any]:
        nats_config = self.config.nats
        nats: Dict[str, Any] = {
            'machines': [NATS_HOST],
            'port': nats_config.port or DEFAULT_NATS_PORT,
        }
        if nats_config.user:
            nats['user'] = nats_config.user
            nats['password'] = nats_config.password
        nats['tls'] = {
            'enabled': True,
            'client_cert': _pem(nats_config.tls.client_cert),
            'client_key': _pem(nats_config.tls.client_key),
            'ca_cert': _pem(nats_config.tls.ca_cert),
        }

        return {
            'nats': nats,
            'route_registrar': {
                'routes': [{
                    'name': ROUTE_NAME,
                    'port': S3_PORT,
                    'registration_interval': '20s',
                    'uris': [route_host(instance_id, self.config.cf.system_domain)],
                }],
            },
        }
