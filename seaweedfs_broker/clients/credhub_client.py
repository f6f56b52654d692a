"""CredHub client for storing dedicated-cluster admin credentials."""

import logging
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests

from seaweedfs_broker.config import CredHubConfig
from seaweedfs_broker.exceptions import CredHubError

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_MARGIN = 30


class CredHubClient:
    """Writes and removes JSON credentials under a path prefix."""

    def __init__(self, config: CredHubConfig, session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic, timeout: float = 30.0):
        self.config = config
        self.api_url = config.url.rstrip('/')
        self.timeout = timeout
        self._clock = clock
        self.session = session or requests.Session()
        self._ca_file: Optional[str] = None
        if config.ca_cert:
            ca_file = tempfile.NamedTemporaryFile('w', prefix='credhub-ca-', suffix='.pem', delete=False)
            with ca_file:
                ca_file.write(config.ca_cert)
            self._ca_file = self.session.verify = ca_file.name

        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._lock = threading.Lock()

    def close(self) -> None:
        """Close the HTTP session and remove the CA bundle written for it."""
        self.session.close()
        if self._ca_file:
            Path(self._ca_file).unlink(missing_ok=True)
            self._ca_file = None

    def credential_path(self, instance_id: str) -> str:
        return f"{self.config.path_prefix.rstrip('/')}/{instance_id}/admin"

    def _token_value(self) -> str:
        with self._lock:
            if self._token and self._clock() < self._token_expiry - TOKEN_EXPIRY_MARGIN:
                return self._token

            try:
                response = self.session.post(
                    f"{self.api_url}/oauth/token",
                    data={
                        'grant_type': 'client_credentials',
                        'client_id': self.config.client_id,
                        'client_secret': self.config.client_secret,
                    },
                    timeout=self.timeout
                )
            except requests.RequestException as e:
                raise CredHubError(f"credhub: token request failed: {e}", cause=e)

            if response.status_code != 200:
                raise CredHubError(
                    f"credhub: token endpoint returned {response.status_code}: {response.text}"
                )

            try:
                data = response.json()
            except ValueError as e:
                raise CredHubError("credhub: failed to parse token response", cause=e)
            if not data.get('access_token'):
                raise CredHubError("credhub: empty access token in response")

            self._token = data['access_token']
            self._token_expiry = self._clock() + int(data.get('expires_in', 0))
            return self._token

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f"Bearer {self._token_value()}",
            'Content-Type': 'application/json',
        }

    def set_json(self, name: str, value: Dict[str, Any]) -> None:
        """Create or update a JSON credential."""
        try:
            response = self.session.put(
                f"{self.api_url}/api/v1/data",
                json={'name': name, 'type': 'json', 'value': value},
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise CredHubError(f"credhub: set request failed: {e}", cause=e)

        if not 200 <= response.status_code < 300:
            raise CredHubError(
                f"credhub: set credential returned {response.status_code}: {response.text}"
            )
        logger.info(f"Stored credential {name} in CredHub")

    def delete(self, name: str) -> None:
        """Delete a credential; a missing credential is not an error."""
        try:
            response = self.session.delete(
                f"{self.api_url}/api/v1/data",
                params={'name': name},
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.RequestException as e:
            raise CredHubError(f"credhub: delete request failed: {e}", cause=e)

        if response.status_code not in (200, 204, 404):
            raise CredHubError(
                f"credhub: delete credential returned {response.status_code}: {response.text}"
            )
        logger.info(f"Removed credential {name} from CredHub")
