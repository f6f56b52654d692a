"""BOSH director API client."""

import json
import logging
import re
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
import urllib3
import yaml

from seaweedfs_broker.config import BoshConfig
from seaweedfs_broker.exceptions import DeploymentError

logger = logging.getLogger(__name__)

TASK_DONE = "done"
TASK_FAILURE_STATES = ("error", "cancelled", "timeout")
TOKEN_EXPIRY_MARGIN = 60

_TASK_ID_RE = re.compile(r"/tasks/(\d+)")


@dataclass
class Task:
    """A director task."""
    id: int
    state: str = ""
    description: str = ""
    result: str = ""
    timestamp: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Task':
        return cls(
            id=int(data.get('id', 0)),
            state=data.get('state') or "",
            description=data.get('description') or "",
            result=data.get('result') or "",
            timestamp=int(data.get('timestamp') or 0),
        )


def extract_task_id(location: Optional[str]) -> int:
    """Parse the task ID from a ``Location`` header.

    The header may be an absolute URL (``https://director:25555/tasks/123``)
    or a path (``/tasks/123``).
    """
    match = _TASK_ID_RE.search(location or "")
    if not match:
        raise DeploymentError(f"failed to extract task ID from Location header {location!r}")
    return int(match.group(1))


class BoshClient:
    """Thin authenticated client for the director HTTP API.

    All calls are synchronous; callers on an event loop run them in an executor.
    """

    def __init__(self, config: BoshConfig, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.director_url = config.url.rstrip('/')
        self.client_id = config.authentication.uaa.client_id
        self.client_secret = config.authentication.uaa.client_secret
        self.timeout = config.request_timeout
        self.poll_interval = config.poll_interval
        self._sleep = sleep
        self._clock = clock

        self.session = session or requests.Session()
        self._ca_file: Optional[str] = None
        self.session.verify = self._verify_setting(config.root_ca_cert)

        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = threading.Lock()

    def _verify_setting(self, root_ca_cert: str):
        if not root_ca_cert:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            return False
        # requests wants a CA bundle path, not PEM text.
        ca_file = tempfile.NamedTemporaryFile('w', prefix='bosh-ca-', suffix='.pem', delete=False)
        with ca_file:
            ca_file.write(root_ca_cert)
        self._ca_file = ca_file.name
        return ca_file.name

    def close(self) -> None:
        """Close the HTTP session and remove the CA bundle written for it."""
        self.session.close()
        if self._ca_file:
            Path(self._ca_file).unlink(missing_ok=True)
            self._ca_file = None

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', self.timeout)
        kwargs.setdefault('allow_redirects', False)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise DeploymentError(f"{method} {url} failed: {e}", cause=e)

    @staticmethod
    def _check(response: requests.Response, what: str, *expected: int) -> None:
        if response.status_code not in (expected or (200,)):
            raise DeploymentError(
                f"{what} failed: {response.status_code} - {response.text}",
                status=response.status_code
            )

    def _token_value(self) -> str:
        """Return a cached token, fetching a new one when it is near expiry."""
        with self._token_lock:
            if self._token and self._clock() < self._token_expiry:
                return self._token

            info = self._send('GET', f"{self.director_url}/info")
            self._check(info, "get director info")
            try:
                uaa_url = info.json()['user_authentication']['options']['url']
            except (ValueError, KeyError, TypeError) as e:
                raise DeploymentError("failed to decode director info", cause=e)

            response = self._send(
                'POST', f"{uaa_url.rstrip('/')}/oauth/token",
                data={
                    'grant_type': 'client_credentials',
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                },
                headers={'Accept': 'application/json'}
            )
            self._check(response, "get token")
            try:
                token_data = response.json()
                token = token_data['access_token']
                expires_in = int(token_data.get('expires_in', 0))
            except (ValueError, KeyError, TypeError) as e:
                raise DeploymentError("failed to decode token response", cause=e)

            self._token = token
            self._token_expiry = self._clock() + expires_in - TOKEN_EXPIRY_MARGIN
            logger.debug("Obtained director token")
            return self._token

    def _request(self, method: str, path: str, data: Optional[str] = None,
                 content_type: str = "application/json") -> requests.Response:
        headers = {
            'Authorization': f"Bearer {self._token_value()}",
            'Content-Type': content_type,
        }
        return self._send(method, f"{self.director_url}{path}", data=data, headers=headers)

    def _task_from_redirect(self, response: requests.Response, what: str) -> Task:
        self._check(response, what, 302, 202)
        return self.get_task(extract_task_id(response.headers.get('Location')))

    def deploy(self, manifest: str) -> Task:
        """Submit a deployment manifest and return the started task."""
        response = self._request('POST', '/deployments', data=manifest, content_type='text/yaml')
        task = self._task_from_redirect(response, "deploy")
        logger.info(f"Deploy started, task {task.id}", extra={'task_id': task.id})
        return task

    def delete_deployment(self, name: str) -> Task:
        """Force-delete a deployment and return the started task."""
        response = self._request('DELETE', f"/deployments/{name}?force=true")
        task = self._task_from_redirect(response, "delete deployment")
        logger.info(f"Delete of {name} started, task {task.id}",
                    extra={'deployment': name, 'task_id': task.id})
        return task

    def get_deployment(self, name: str) -> Optional[Dict[str, Any]]:
        """Return the deployment, or None when it does not exist."""
        response = self._request('GET', f"/deployments/{name}")
        if response.status_code == 404:
            return None
        self._check(response, "get deployment")
        try:
            return response.json()
        except ValueError as e:
            raise DeploymentError("failed to decode deployment", cause=e)

    def get_task(self, task_id: int) -> Task:
        response = self._request('GET', f"/tasks/{task_id}")
        self._check(response, "get task")
        try:
            return Task.from_dict(response.json())
        except (ValueError, TypeError) as e:
            raise DeploymentError("failed to decode task", cause=e)

    def wait_for_task(self, task_id: int, timeout: float) -> Task:
        """Poll a task until it finishes.

        Raises:
            DeploymentError: the task failed, was cancelled or timed out, or the
                wall-clock ``timeout`` (seconds) elapsed.
        """
        deadline = self._clock() + timeout
        last_result = ""

        while self._clock() < deadline:
            task = self.get_task(task_id)
            last_result = task.result

            if task.state == TASK_DONE:
                return task
            if task.state in TASK_FAILURE_STATES:
                raise DeploymentError(f"task {task_id} failed: {task.state} - {task.result}")

            self._sleep(self.poll_interval)

        raise DeploymentError(f"task {task_id} timed out after {timeout:.0f}s: {last_result}")

    def get_deployment_vms(self, name: str) -> List[Dict[str, Any]]:
        """List the VMs of a deployment with their network identities."""
        response = self._request('GET', f"/deployments/{name}/vms?format=full")

        if response.status_code == 302:
            # The director enumerates VMs in a task.
            task_id = extract_task_id(response.headers.get('Location'))
            task = self.wait_for_task(task_id, self.config.vms_timeout_minutes * 60)

            output = self._request('GET', f"/tasks/{task.id}/output?type=result")
            self._check(output, "get task output")

            vms = []
            for line in output.text.splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    vms.append(json.loads(line))
                except ValueError:
                    logger.debug(f"Skipping unparsable VM line in task {task.id} output")
            return vms

        self._check(response, "get VMs")
        try:
            return response.json()
        except ValueError as e:
            raise DeploymentError("failed to decode VMs", cause=e)

    def _cloud_config_content(self) -> str:
        try:
            response = self._request('GET', '/configs?type=cloud&latest=true')
            if response.status_code == 200:
                configs = response.json()
                if configs and isinstance(configs[0]['content'], str):
                    return configs[0]['content']
        except (DeploymentError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Cloud config lookup via /configs failed: {e}")

        response = self._request('GET', '/cloud_configs?limit=1')
        self._check(response, "get cloud config")
        try:
            legacy = response.json()
        except ValueError as e:
            raise DeploymentError("failed to decode legacy cloud configs", cause=e)

        if not isinstance(legacy, list):
            raise DeploymentError("legacy cloud configs response is not a list")
        content = legacy[0].get('properties') if legacy and isinstance(legacy[0], dict) else None
        if not content or not isinstance(content, str):
            raise DeploymentError(f"no cloud config found (legacy endpoint returned {len(legacy)} configs)")
        return content

    def get_cloud_config_azs_for_network(self, network: str) -> List[str]:
        """Collect the AZs the cloud config binds to ``network``, in order."""
        content = self._cloud_config_content()
        try:
            cloud_config = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise DeploymentError("failed to parse cloud config YAML", cause=e)
        if not isinstance(cloud_config, dict):
            raise DeploymentError(f"cloud config is a {type(cloud_config).__name__}, not a mapping")

        networks = cloud_config.get('networks') or []
        if not isinstance(networks, list):
            raise DeploymentError("cloud config networks is not a list")

        azs: List[str] = []
        for net in networks:
            if not isinstance(net, dict) or net.get('name') != network:
                continue
            subnets = net.get('subnets') or []
            if not isinstance(subnets, list):
                raise DeploymentError(f"subnets of network {network!r} is not a list")
            for subnet in subnets:
                if not isinstance(subnet, dict):
                    continue
                listed = subnet.get('azs') or []
                candidates = [subnet.get('az')] + (listed if isinstance(listed, list) else [listed])
                for az in candidates:
                    if isinstance(az, str) and az and az not in azs:
                        azs.append(az)
            break

        if not azs:
            raise DeploymentError(f"no AZs found for network {network!r} in cloud config")
        return azs
