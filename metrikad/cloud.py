"""Cloud provider detection and instance identification via metadata services."""

from __future__ import annotations

import abc
import json
import logging
import urllib.error
import urllib.request
from email.message import Message
from typing import Any, Mapping, Optional

log = logging.getLogger(__name__)

# Metadata services are link-local; never route them through a proxy.
_OPENER = urllib.request.build_opener(urllib.request.ProxyHandler({}))

AZURE_METADATA_URL = (
    "http://169.254.169.254/metadata/instance/compute/vmId"
    "?api-version=2017-08-01&format=text"
)
DIGITALOCEAN_METADATA_URL = "http://169.254.169.254/metadata/v1.json"
EC2_METADATA_ENDPOINT = "http://169.254.169.254"
EQUINIX_METADATA_URL = "https://metadata.platformequinix.com/metadata"
GCE_METADATA_URL = "http://169.254.169.254"
VULTR_METADATA_URL = "http://169.254.169.254/v1.json"

_EC2_TOKEN_TTL_SECONDS = "21600"


def _request(
    url: str,
    *,
    timeout: float,
    method: str = "GET",
    headers: Optional[Mapping[str, str]] = None,
) -> tuple[int, bytes, Message]:
    """Perform a request and return status, body and headers, for any status."""
    req = urllib.request.Request(url, method=method, headers=dict(headers or {}))
    try:
        with _OPENER.open(req, timeout=timeout) as resp:
            return resp.status, resp.read(), resp.headers
    except urllib.error.HTTPError as err:
        with err:
            return err.code, err.read(), err.headers


def _get_json(url: str, timeout: float) -> dict[str, Any]:
    status, body, _ = _request(url, timeout=timeout)
    if status != 200:
        raise OSError(f"non-200 response from metadata store: {status}")
    data = json.loads(body)
    if not isinstance(data, dict):
        raise ValueError("unexpected metadata document")
    return data


class MetadataSearch(abc.ABC):
    """Retrieves metadata from a cloud provider."""

    name: str = ""

    @abc.abstractmethod
    def is_running_on(self) -> bool:
        """True if the agent runs on this provider."""

    @abc.abstractmethod
    def hostname(self) -> str:
        """The hostname as reported by the provider's metadata store."""


class AzureSearch(MetadataSearch):
    """Azure instance metadata service."""

    name = "azure"

    def __init__(self, url: str = AZURE_METADATA_URL, timeout: float = 15.0) -> None:
        self.url = url
        self.timeout = timeout

    def _fetch(self) -> tuple[int, bytes, Message]:
        return _request(self.url, timeout=self.timeout, headers={"Metadata": "true"})

    def is_running_on(self) -> bool:
        try:
            self._fetch()
        except OSError:
            return False
        # Any response from the metadata address counts as running on Azure.
        return True

    def hostname(self) -> str:
        status, body, _ = self._fetch()
        if status != 200:
            raise OSError("non-200 response from metadata store")
        return body.decode("utf-8")


class DigitalOceanSearch(MetadataSearch):
    """DigitalOcean droplet metadata service."""

    name = "do"

    def __init__(self, url: str = DIGITALOCEAN_METADATA_URL, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def is_running_on(self) -> bool:
        try:
            metadata = _get_json(self.url, self.timeout)
        except (OSError, ValueError):
            return False
        return bool(metadata.get("droplet_id", 0))

    def hostname(self) -> str:
        metadata = _get_json(self.url, self.timeout)
        hostname = metadata.get("hostname") or ""
        if not hostname:
            raise ValueError("empty hostname")
        return str(hostname)


class EC2Search(MetadataSearch):
    """AWS EC2 instance metadata service (token based, with fallback)."""

    name = "ec2"

    def __init__(self, endpoint: str = EC2_METADATA_ENDPOINT, timeout: float = 5.0) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout

    def _token(self) -> Optional[str]:
        status, body, _ = _request(
            f"{self.endpoint}/latest/api/token",
            timeout=self.timeout,
            method="PUT",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": _EC2_TOKEN_TTL_SECONDS},
        )
        if status == 200:
            return body.decode("utf-8")
        return None

    def get_metadata(self, path: str) -> str:
        """Return the metadata value stored under path."""
        headers = {}
        token = self._token()
        if token is not None:
            headers["X-aws-ec2-metadata-token"] = token
        status, body, _ = _request(
            f"{self.endpoint}/latest/meta-data/{path}",
            timeout=self.timeout,
            headers=headers,
        )
        if not 200 <= status < 300:
            raise OSError(f"metadata request for {path} failed with status {status}")
        return body.decode("utf-8")

    def is_running_on(self) -> bool:
        try:
            self.get_metadata("instance-id")
        except OSError:
            return False
        return True

    def hostname(self) -> str:
        # Some providers serve EC2 compatible metadata without an instance id.
        value = ""
        last_error: Optional[OSError] = None
        for key in ("instance-id", "hostname"):
            try:
                value = self.get_metadata(key)
            except OSError as err:
                log.warning("ec2 hostname resolver error for %s: %s", key, err)
                last_error = err
                continue
            last_error = None
            if value:
                break
        if last_error is not None:
            raise last_error
        return value


class EquinixSearch(MetadataSearch):
    """Equinix Metal metadata service (layer 3 or hybrid bonded networking only)."""

    name = "equinix"

    def __init__(self, url: str = EQUINIX_METADATA_URL, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout
        self.device_data: Optional[dict[str, Any]] = None

    def is_running_on(self) -> bool:
        try:
            self.device_data = _get_json(self.url, self.timeout)
        except (OSError, ValueError):
            self.device_data = None
            return False
        return True

    def hostname(self) -> str:
        if self.device_data is None:
            self.device_data = _get_json(self.url, self.timeout)
        return str(self.device_data.get("id", ""))


class GCESearch(MetadataSearch):
    """Google Compute Engine metadata server."""

    name = "gce"

    def __init__(self, url: str = GCE_METADATA_URL, timeout: float = 5.0) -> None:
        self.url = url.rstrip("/")
        self.timeout = timeout

    def is_running_on(self) -> bool:
        try:
            _, _, headers = _request(
                f"{self.url}/", timeout=self.timeout, headers={"Metadata-Flavor": "Google"}
            )
        except OSError:
            return False
        return headers.get("Metadata-Flavor") == "Google"

    def hostname(self) -> str:
        status, body, _ = _request(
            f"{self.url}/computeMetadata/v1/instance/hostname",
            timeout=self.timeout,
            headers={"Metadata-Flavor": "Google"},
        )
        if status != 200:
            raise OSError(f"metadata server returned status {status}")
        return body.decode("utf-8").strip()


class VultrSearch(MetadataSearch):
    """Vultr instance metadata service."""

    name = "vultr"

    def __init__(self, url: str = VULTR_METADATA_URL, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def is_running_on(self) -> bool:
        try:
            _get_json(self.url, self.timeout)
        except (OSError, ValueError):
            return False
        return True

    def hostname(self) -> str:
        metadata = _get_json(self.url, self.timeout)
        return str(metadata.get("instanceid", ""))