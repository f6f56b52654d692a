"""Tests for the CredHub client."""

from pathlib import Path
from unittest.mock import Mock

import pytest
import requests

from seaweedfs_broker.clients.credhub_client import CredHubClient
from seaweedfs_broker.config import CredHubConfig
from seaweedfs_broker.exceptions import CredHubError


def response(status_code=200, json_body=None, text=""):
    resp = Mock()
    resp.status_code = status_code
    resp.text = text
    resp.json.return_value = json_body or {}
    return resp


@pytest.fixture
def session():
    session = Mock(spec=requests.Session)
    session.post.return_value = response(json_body={'access_token': 'tok', 'expires_in': 3600})
    session.put.return_value = response()
    session.delete.return_value = response(204)
    return session


@pytest.fixture
def credhub(session):
    config = CredHubConfig(url="https://credhub.service.cf.internal:8844/",
                           client_id="broker", client_secret="secret")
    return CredHubClient(config, session=session, clock=lambda: 0.0)


class TestCredHubClient:

    def test_credential_path(self, credhub):
        assert credhub.credential_path("instance-1") == "/seaweedfs-broker/instance-1/admin"

    def test_set_json(self, credhub, session):
        credhub.set_json("/seaweedfs-broker/i/admin", {'access_key': 'AK'})

        args, kwargs = session.put.call_args
        assert args[0] == "https://credhub.service.cf.internal:8844/api/v1/data"
        assert kwargs['json'] == {
            'name': "/seaweedfs-broker/i/admin", 'type': 'json', 'value': {'access_key': 'AK'}
        }
        assert kwargs['headers']['Authorization'] == "Bearer tok"

    def test_token_is_reused(self, credhub, session):
        credhub.set_json("a", {})
        credhub.delete("a")
        assert session.post.call_count == 1

    def test_delete_missing_is_success(self, credhub, session):
        session.delete.return_value = response(404)
        credhub.delete("a")
        assert session.delete.call_args.kwargs['params'] == {'name': 'a'}

    def test_set_failure(self, credhub, session):
        session.put.return_value = response(500, text="boom")
        with pytest.raises(CredHubError) as exc_info:
            credhub.set_json("a", {})
        assert "500" in str(exc_info.value)

    def test_token_failure(self, credhub, session):
        session.post.return_value = response(401, text="unauthorized")
        with pytest.raises(CredHubError):
            credhub.set_json("a", {})
        session.put.assert_not_called()

    def test_empty_token(self, credhub, session):
        session.post.return_value = response(json_body={'expires_in': 10})
        with pytest.raises(CredHubError):
            credhub.delete("a")

    def test_transport_error(self, credhub, session):
        session.delete.side_effect = requests.ConnectionError("refused")
        with pytest.raises(CredHubError):
            credhub.delete("a")

    def test_close_removes_ca_file(self, session):
        config = CredHubConfig(url="https://credhub.service.cf.internal:8844",
                               ca_cert="-----BEGIN CERTIFICATE-----\nMIIB\n")
        client = CredHubClient(config, session=session)

        ca_file = Path(session.verify)
        assert ca_file.read_text() == config.ca_cert

        client.close()

        assert not ca_file.exists()
        session.close.assert_called_once()
