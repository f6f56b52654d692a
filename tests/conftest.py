"""Pytest configuration and fixtures."""

import copy
from unittest.mock import Mock

import pytest

from seaweedfs_broker.clients.bosh_client import BoshClient, Task
from seaweedfs_broker.clients.iam_client import AccessKey
from seaweedfs_broker.config import Config
from seaweedfs_broker.exceptions import IAMError
from seaweedfs_broker.services.broker import BrokerService
from seaweedfs_broker.storage.file_store import FileStateStore

SERVICE_ID = "seaweedfs-service"
SHARED_PLAN_ID = "shared-plan"
DEDICATED_PLAN_ID = "dedicated-plan"

BASE_CONFIG = {
    'listen_addr': ':8080',
    'log_level': 'debug',
    'auth': {'username': 'broker', 'password': 'broker-password'},
    'catalog': {
        'services': [{
            'id': SERVICE_ID,
            'name': 'seaweedfs',
            'description': 'SeaweedFS S3-compatible object storage',
            'bindable': True,
            'tags': ['s3', 'object-storage'],
            'metadata': {'displayName': 'SeaweedFS', 'providerDisplayName': 'SeaweedFS'},
            'plans': [
                {
                    'id': SHARED_PLAN_ID,
                    'name': 'shared',
                    'description': 'A bucket on the shared cluster',
                    'plan_type': 'shared',
                    'metadata': {'displayName': 'Shared', 'bullets': ['Shared cluster', 'One bucket']},
                },
                {
                    'id': DEDICATED_PLAN_ID,
                    'name': 'dedicated',
                    'description': 'A dedicated SeaweedFS cluster',
                    'plan_type': 'dedicated',
                    'dedicated_config': {
                        'vm_type': 'small',
                        'disk_type': '10GB',
                        'network': 'default',
                        'azs': ['z1'],
                        'volume_nodes': 1,
                    },
                },
            ],
        }],
    },
    'shared_cluster': {
        's3_endpoint': 's3.example.com',
        'iam_endpoint': '10.0.0.2:8333',
        'access_key': 'SHAREDACCESSKEY',
        'secret_key': 'shared-secret',
        'use_ssl': True,
        'region': 'us-east-1',
    },
    'bosh': {
        'url': 'https://10.0.0.6:25555',
        'poll_interval': 0,
        'deployment_prefix': 'seaweedfs',
        'authentication': {'uaa': {'client_id': 'broker', 'client_secret': 'uaa-secret'}},
    },
    'cf': {'system_domain': 'sys.example.com'},
}


@pytest.fixture
def config_data(tmp_path):
    """Raw configuration mapping with the state file under ``tmp_path``."""
    data = copy.deepcopy(BASE_CONFIG)
    data['state_store'] = {'type': 'file', 'path': str(tmp_path / 'state.json')}
    return data


@pytest.fixture
def broker_config(config_data):
    return Config.from_dict(config_data)


class RecordingWorker:
    """Collects submitted jobs so tests decide when they run."""

    def __init__(self):
        self.jobs = []

    def submit(self, name, job):
        self.jobs.append((name, job))

    async def run_all(self):
        while self.jobs:
            _, job = self.jobs.pop(0)
            await job()

    def shutdown(self, wait=True):
        pass


class FakeIAM:
    """In-memory IAM endpoint; also acts as the client factory."""

    def __init__(self):
        self.users = {}
        self.calls = []
        self.connections = []
        self.failures = {}
        self._counter = 0

    def factory(self, endpoint, access_key, secret_key, region="us-east-1", use_ssl=False):
        self.connections.append({
            'endpoint': endpoint, 'access_key': access_key, 'region': region, 'use_ssl': use_ssl
        })
        return self

    def _record(self, action, *args):
        self.calls.append((action,) + args)
        if action in self.failures:
            raise self.failures[action]

    def actions(self):
        return [call[0] for call in self.calls]

    def key_is_valid(self, access_key_id):
        return any(access_key_id in keys for keys in self.users.values())

    def create_user(self, user_name):
        self._record('create_user', user_name)
        if user_name in self.users:
            raise IAMError(f"IAM error: EntityAlreadyExists - User with name {user_name} already exists.",
                           code="EntityAlreadyExists", status=409)
        self.users[user_name] = set()

    def delete_user(self, user_name):
        self._record('delete_user', user_name)
        self.users.pop(user_name, None)

    def create_access_key(self, user_name):
        self._record('create_access_key', user_name)
        self._counter += 1
        self.users.setdefault(user_name, set()).add(f"AKIA{self._counter:016d}")
        return AccessKey(
            user_name=user_name,
            access_key_id=f"AKIA{self._counter:016d}",
            secret_access_key=f"secret-{self._counter:036d}",
            status="Active",
        )

    def delete_access_key(self, user_name, access_key_id):
        self._record('delete_access_key', user_name, access_key_id)
        self.users.get(user_name, set()).discard(access_key_id)

    def put_user_policy(self, user_name, policy_name, bucket):
        self._record('put_user_policy', user_name, policy_name, bucket)

    def delete_user_policy(self, user_name, policy_name):
        self._record('delete_user_policy', user_name, policy_name)


class FakeS3:
    """In-memory bucket namespace; also acts as the client factory."""

    def __init__(self):
        self.buckets = set()
        self.connections = []
        self.failures = {}

    def factory(self, endpoint, access_key, secret_key, region="us-east-1", use_ssl=False):
        self.connections.append({'endpoint': endpoint, 'access_key': access_key, 'use_ssl': use_ssl})
        return self

    def create_bucket(self, bucket):
        if 'create_bucket' in self.failures:
            raise self.failures['create_bucket']
        self.buckets.add(bucket)

    def bucket_exists(self, bucket):
        return bucket in self.buckets

    def empty_and_delete_bucket(self, bucket):
        if 'empty_and_delete_bucket' in self.failures:
            raise self.failures['empty_and_delete_bucket']
        self.buckets.discard(bucket)


@pytest.fixture
def worker():
    return RecordingWorker()


@pytest.fixture
def fake_iam():
    return FakeIAM()


@pytest.fixture
def fake_s3():
    return FakeS3()


@pytest.fixture
def mock_bosh():
    """Director client double with a successful deploy."""
    bosh = Mock(spec=BoshClient)
    bosh.deploy.return_value = Task(id=42, state='queued')
    bosh.wait_for_task.return_value = Task(id=42, state='done')
    bosh.get_deployment_vms.return_value = [{
        'job': 'seaweedfs-s3',
        'index': 0,
        'ips': ['10.0.1.5'],
        'dns': ['s3-0.seaweedfs-s3.default.seaweedfs.bosh'],
    }]
    bosh.get_deployment.return_value = {'name': 'seaweedfs'}
    bosh.delete_deployment.return_value = Task(id=43, state='queued')
    bosh.get_cloud_config_azs_for_network.return_value = ['z1', 'z2']
    return bosh


@pytest.fixture
async def store(broker_config):
    store = FileStateStore(broker_config.state_store.path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def broker(broker_config, store, worker, fake_iam, fake_s3, mock_bosh):
    return BrokerService(
        broker_config, store, worker,
        bosh_client=mock_bosh,
        s3_client_factory=fake_s3.factory,
        iam_client_factory=fake_iam.factory,
    )
