"""Client for the SeaweedFS embedded IAM API.

Requests are form-encoded POSTs to ``/`` carrying an ``Action`` parameter,
signed with AWS Signature Version 4 by botocore. SeaweedFS serves IAM and S3
on the same port, so requests are signed for the ``s3`` service.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

import requests
import urllib3
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from seaweedfs_broker.exceptions import IAMError

logger = logging.getLogger(__name__)

IAM_API_VERSION = "2010-05-08"
SIGNING_SERVICE = "s3"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class AccessKey:
    """An IAM access key pair."""
    user_name: str
    access_key_id: str
    secret_access_key: str
    status: str = ""


def sign_request(url: str, host: str, body: str, access_key: str, secret_key: str,
                 region: str) -> Dict[str, str]:
    """Headers for a SigV4-signed form POST, ``Authorization`` included."""
    request = AWSRequest(method="POST", url=url, data=body,
                         headers={'Content-Type': FORM_CONTENT_TYPE, 'Host': host})
    SigV4Auth(Credentials(access_key, secret_key), SIGNING_SERVICE, region).add_auth(request)
    return dict(request.headers.items())


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def _find_text(root: ET.Element, name: str) -> str:
    """Text of the first descendant named ``name``, ignoring namespaces."""
    for element in root.iter():
        if _local_name(element.tag) == name:
            return (element.text or "").strip()
    return ""


def bucket_policy(bucket: str) -> str:
    """Policy document granting full access to one bucket and its objects."""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["s3:*"],
                "Resource": [
                    f"arn:aws:s3:::{bucket}",
                    f"arn:aws:s3:::{bucket}/*",
                ],
            }
        ],
    })


class IAMClient:
    """Manages users, access keys and policies on one cluster's IAM endpoint."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str,
                 region: str = "us-east-1", use_ssl: bool = False,
                 timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region
        self.use_ssl = use_ssl
        self.timeout = timeout
        self.session = session or requests.Session()
        # Cluster endpoints carry self-signed certificates.
        self.session.verify = False
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def url(self) -> str:
        scheme = "https" if self.use_ssl else "http"
        return f"{scheme}://{self.endpoint}/"

    def _request(self, action: str, **params: str) -> str:
        params = dict(params, Action=action, Version=IAM_API_VERSION)
        body = urlencode(sorted(params.items()))

        headers = sign_request(self.url, self.endpoint, body,
                               self.access_key, self.secret_key, self.region)

        try:
            response = self.session.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise IAMError(f"IAM request failed: {e}", cause=e)

        if response.status_code != 200:
            raise self._error_from(response)

        logger.debug(f"IAM {action} succeeded against {self.endpoint}")
        return response.text

    @staticmethod
    def _error_from(response: requests.Response) -> IAMError:
        text = response.text
        try:
            root = ET.fromstring(text)
        except ET.ParseError:
            root = None

        if root is not None and _local_name(root.tag) == "ErrorResponse":
            message = _find_text(root, "Message")
            if message:
                code = _find_text(root, "Code")
                return IAMError(f"IAM error: {code} - {message}", code=code,
                                status=response.status_code)

        return IAMError(f"IAM request failed with status {response.status_code}: {text}",
                        status=response.status_code)

    def create_user(self, user_name: str) -> None:
        self._request("CreateUser", UserName=user_name)

    def delete_user(self, user_name: str) -> None:
        self._request("DeleteUser", UserName=user_name)

    def create_access_key(self, user_name: str) -> AccessKey:
        """Create an access key; SeaweedFS creates the user if it is missing."""
        text = self._request("CreateAccessKey", UserName=user_name)
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise IAMError(f"failed to parse response: {e} (body: {text})", cause=e)

        access_key = AccessKey(
            user_name=_find_text(root, "UserName") or user_name,
            access_key_id=_find_text(root, "AccessKeyId"),
            secret_access_key=_find_text(root, "SecretAccessKey"),
            status=_find_text(root, "Status"),
        )
        if not access_key.access_key_id or not access_key.secret_access_key:
            raise IAMError(f"CreateAccessKey response carried no key (body: {text})")
        return access_key

    def delete_access_key(self, user_name: str, access_key_id: str) -> None:
        self._request("DeleteAccessKey", UserName=user_name, AccessKeyId=access_key_id)

    def put_user_policy(self, user_name: str, policy_name: str, bucket: str) -> None:
        self._request("PutUserPolicy", UserName=user_name, PolicyName=policy_name,
                      PolicyDocument=bucket_policy(bucket))

    def delete_user_policy(self, user_name: str, policy_name: str) -> None:
        self._request("DeleteUserPolicy", UserName=user_name, PolicyName=policy_name)
