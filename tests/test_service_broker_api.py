"""Tests for the Open Service Broker HTTP API."""

import asyncio
import base64

import pytest

from seaweedfs_broker.api.service_broker import create_app
from seaweedfs_broker.icon import ICON_PNG
from seaweedfs_broker.services.broker import BrokerService
from seaweedfs_broker.storage.file_store import FileStateStore

INSTANCE_ID = "7b1c2d3e-4f50-6172-8394-a5b6c7d8e9f0"
BINDING_ID = "c0ffee00-1234-5678-9abc-def012345678"
SPACE_GUID = "5pace000-aaaa-bbbb-cccc-dddddddddddd"


def basic_auth(username="broker", password="broker-password"):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


HEADERS = {
    'Authorization': basic_auth(),
    'X-Broker-API-Version': '2.16',
}


@pytest.fixture
def api_store(broker_config):
    store = FileStateStore(broker_config.state_store.path)
    asyncio.run(store.initialize())
    return store


@pytest.fixture
def api_broker(broker_config, api_store, worker, fake_iam, fake_s3, mock_bosh):
    return BrokerService(
        broker_config, api_store, worker,
        bosh_client=mock_bosh,
        s3_client_factory=fake_s3.factory,
        iam_client_factory=fake_iam.factory,
    )


@pytest.fixture
def app(api_broker):
    return create_app(api_broker)


@pytest.fixture
def client(app):
    return app.test_client()


def provision_body(plan_id="shared-plan"):
    return {
        'service_id': 'seaweedfs-service',
        'plan_id': plan_id,
        'organization_guid': 'org-guid',
        'space_guid': SPACE_GUID,
        'context': {'platform': 'cloudfoundry'},
    }


def provision_shared(client):
    return client.put(f"/v2/service_instances/{INSTANCE_ID}", json=provision_body(), headers=HEADERS)


class TestAuthentication:
    """Basic auth and API version checks."""

    def test_missing_credentials(self, client):
        response = client.get("/v2/catalog", headers={'X-Broker-API-Version': '2.16'})

        assert response.status_code == 401
        assert response.headers['WWW-Authenticate'] == 'Basic realm="SeaweedFS Service Broker"'
        assert response.get_json()['error'] == 'Unauthorized'

    def test_wrong_password(self, client):
        response = client.get("/v2/catalog", headers={
            'Authorization': basic_auth(password="wrong"), 'X-Broker-API-Version': '2.16'
        })
        assert response.status_code == 401

    def test_auth_checked_before_version(self, client):
        response = client.get("/v2/catalog")
        assert response.status_code == 401

    def test_missing_api_version(self, client):
        response = client.get("/v2/catalog", headers={'Authorization': basic_auth()})

        assert response.status_code == 412
        assert response.get_json()['error'] == 'MissingAPIVersion'

    def test_health_is_public(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {'status': 'ok'}

    def test_icon_is_public(self, client):
        response = client.get("/icon.png")

        assert response.status_code == 200
        assert response.mimetype == 'image/png'
        assert response.data == ICON_PNG

    def test_security_headers(self, client):
        response = client.get("/v2/catalog", headers=HEADERS)
        assert response.headers['X-Content-Type-Options'] == 'nosniff'
        assert response.headers['X-Frame-Options'] == 'DENY'


class TestCatalogEndpoint:

    def test_catalog(self, client):
        response = client.get("/v2/catalog", headers=HEADERS)

        assert response.status_code == 200
        service = response.get_json()['services'][0]
        assert service['id'] == 'seaweedfs-service'
        assert service['instances_retrievable'] is True
        assert [plan['id'] for plan in service['plans']] == ['shared-plan', 'dedicated-plan']
        assert service['metadata']['imageUrl'].startswith("data:image/png;base64,")


class TestInstanceEndpoints:

    def test_provision_shared(self, client, fake_s3):
        response = provision_shared(client)

        assert response.status_code == 201
        assert response.get_json() == {}
        assert fake_s3.buckets == {"cf-5pace000-7b1c2d3e"}

    def test_provision_is_idempotent(self, client):
        provision_shared(client)
        response = provision_shared(client)

        assert response.status_code == 200

    def test_reprovision_with_empty_body_is_idempotent(self, client):
        provision_shared(client)

        response = client.put(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json() == {}

    def test_reprovision_with_partial_body_is_idempotent(self, client):
        provision_shared(client)

        response = client.put(f"/v2/service_instances/{INSTANCE_ID}",
                              json={'plan_id': 'shared-plan'}, headers=HEADERS)

        assert response.status_code == 200

    def test_provision_unknown_plan(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}",
                              json=provision_body("missing-plan"), headers=HEADERS)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'InvalidPlan'

    def test_provision_malformed_json(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}", data="{not json",
                              content_type='application/json', headers=HEADERS)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'BadRequest'

    def test_provision_missing_fields(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}",
                              json={'plan_id': 'shared-plan'}, headers=HEADERS)

        assert response.status_code == 400
        assert response.get_json()['description'].startswith("Invalid request format")

    def test_provision_body_must_be_object(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}", json=[1, 2], headers=HEADERS)
        assert response.status_code == 400

    def test_dedicated_requires_accepts_incomplete(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}",
                              json=provision_body("dedicated-plan"), headers=HEADERS)

        assert response.status_code == 422
        assert response.get_json()['error'] == 'AsyncRequired'

    def test_dedicated_provision_is_asynchronous(self, client, worker):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}?accepts_incomplete=true",
                              json=provision_body("dedicated-plan"), headers=HEADERS)

        assert response.status_code == 202
        assert response.get_json()['operation'] == 'provision'
        assert [name for name, _ in worker.jobs] == [f"provision:{INSTANCE_ID}"]

        last = client.get(f"/v2/service_instances/{INSTANCE_ID}/last_operation", headers=HEADERS)
        assert last.status_code == 200
        assert last.get_json() == {'state': 'in progress', 'description': 'Provisioning started'}

    def test_get_instance(self, client):
        provision_shared(client)

        response = client.get(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json() == {
            'service_id': 'seaweedfs-service', 'plan_id': 'shared-plan', 'parameters': {}
        }

    def test_get_missing_instance(self, client):
        response = client.get(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)
        assert response.status_code == 404

    def test_last_operation_missing_instance(self, client):
        response = client.get(f"/v2/service_instances/{INSTANCE_ID}/last_operation", headers=HEADERS)
        assert response.status_code == 410

    def test_deprovision_shared(self, client, fake_s3):
        provision_shared(client)

        response = client.delete(
            f"/v2/service_instances/{INSTANCE_ID}?service_id=seaweedfs-service&plan_id=shared-plan",
            headers=HEADERS
        )

        assert response.status_code == 200
        assert response.get_json() == {}
        assert fake_s3.buckets == set()

    def test_deprovision_missing_instance(self, client):
        response = client.delete(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)
        assert response.status_code == 410


class TestBindingEndpoints:

    def test_bind_and_unbind(self, client, fake_iam):
        provision_shared(client)
        url = f"/v2/service_instances/{INSTANCE_ID}/service_bindings/{BINDING_ID}"

        response = client.put(url, json={'service_id': 'seaweedfs-service', 'plan_id': 'shared-plan',
                                          'bind_resource': {'app_guid': 'app-guid'}}, headers=HEADERS)

        assert response.status_code == 201
        credentials = response.get_json()['credentials']
        assert credentials['bucket'] == "cf-5pace000-7b1c2d3e"
        assert credentials['endpoint_url'] == "https://s3.example.com"
        assert credentials['access_key'] == "AKIA0000000000000001"
        assert 'console_url' not in credentials

        fetched = client.get(url, headers=HEADERS)
        assert fetched.status_code == 200
        assert fetched.get_json()['credentials'] == credentials

        again = client.put(url, json={}, headers=HEADERS)
        assert again.status_code == 200

        deleted = client.delete(url, headers=HEADERS)
        assert deleted.status_code == 200
        assert deleted.get_json() == {}
        assert fake_iam.actions()[-3:] == ['delete_user_policy', 'delete_access_key', 'delete_user']

    def test_deprovision_with_bindings(self, client):
        provision_shared(client)
        client.put(f"/v2/service_instances/{INSTANCE_ID}/service_bindings/{BINDING_ID}",
                   json={}, headers=HEADERS)

        response = client.delete(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)

        assert response.status_code == 400
        assert response.get_json()['error'] == 'BindingsExist'

    def test_bind_missing_instance(self, client):
        response = client.put(f"/v2/service_instances/{INSTANCE_ID}/service_bindings/{BINDING_ID}",
                              json={}, headers=HEADERS)
        assert response.status_code == 404

    def test_unbind_missing_binding(self, client):
        provision_shared(client)
        response = client.delete(f"/v2/service_instances/{INSTANCE_ID}/service_bindings/{BINDING_ID}",
                                 headers=HEADERS)
        assert response.status_code == 410


class TestErrorHandlers:

    def test_unknown_endpoint(self, client):
        response = client.get("/v2/unknown", headers=HEADERS)

        assert response.status_code == 404
        assert response.get_json() == {'error': 'NotFound', 'description': 'Endpoint not found'}

    def test_method_not_allowed(self, client):
        response = client.post("/v2/catalog", headers=HEADERS)

        assert response.status_code == 405
        assert response.get_json()['error'] == 'MethodNotAllowed'

    def test_unhandled_exception(self, client, api_store, monkeypatch):
        async def broken(instance_id):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(api_store, 'get_instance', broken)

        response = client.get(f"/v2/service_instances/{INSTANCE_ID}", headers=HEADERS)

        assert response.status_code == 500
        assert response.get_json() == {'error': 'InternalError', 'description': 'Internal server error'}
