"""Discovery and validation of the agent's flow node configuration."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from os import PathLike
from typing import Any, Callable, Iterable, Mapping, Optional, Union

import yaml

from .flow_events import LogEvent, events_from_context

log = logging.getLogger(__name__)

DEFAULT_FLOW_PATH = "/etc/metrikad/configs/flow.yml"
DEFAULT_TEMPLATE_PATH = "/etc/metrikad/configs/flow.template"

PROTOCOL_NAME = "flow"
DEFAULT_CLIENT = "flow-go"

NODE_ROLE_ACCESS = "access"
NODE_ROLE_COLLECTION = "collection"
NODE_ROLE_CONSENSUS = "consensus"
NODE_ROLE_EXECUTION = "execution"
NODE_ROLE_VERIFICATION = "verification"

# An empty role is valid while the node has not been discovered yet.
RECOGNIZED_NODE_ROLES = frozenset(
    {
        "",
        NODE_ROLE_ACCESS,
        NODE_ROLE_COLLECTION,
        NODE_ROLE_CONSENSUS,
        NODE_ROLE_EXECUTION,
        NODE_ROLE_VERIFICATION,
    }
)

# Access nodes (and possibly others) log the network under chain_id.
NETWORK_LOG_KEY_CANDIDATES = ("chain", "chain_id")

LOG_WATCH_TIMEOUT = 5.0


@dataclass
class PEFEndpoint:
    """An endpoint serving metrics, with the metric names to keep."""

    url: str = ""
    filters: list[str] = field(default_factory=list)

    @classmethod
    def _from_mapping(cls, data: Mapping[str, Any]) -> "PEFEndpoint":
        filters = data.get("filters") or []
        if not isinstance(filters, list):
            raise ValueError("pefEndpoints filters must be a list")
        return cls(url=str(data.get("url") or ""), filters=[str(f) for f in filters])


@dataclass
class FlowConfig:
    """The flow protocol configuration file contents."""

    client: str = ""
    container_regex: list[str] = field(default_factory=list)
    node_id: str = ""
    pef_endpoints: list[PEFEndpoint] = field(default_factory=list)
    env_file_path: str = ""
    config_path: str = DEFAULT_FLOW_PATH

    @classmethod
    def load(
        cls, path: Union[str, "PathLike[str]"] = DEFAULT_FLOW_PATH
    ) -> "FlowConfig":
        """Read the configuration from a YAML file.

        Raises FileNotFoundError if the file does not exist.
        """
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError(f"invalid flow configuration in {path}")

        regex = data.get("containerRegex") or []
        endpoints = data.get("pefEndpoints") or []
        if not isinstance(regex, list) or not isinstance(endpoints, list):
            raise ValueError(f"invalid flow configuration in {path}")
        if not all(isinstance(ep, Mapping) for ep in endpoints):
            raise ValueError(f"invalid pefEndpoints entry in {path}")

        return cls(
            client=str(data.get("client") or ""),
            container_regex=[str(r) for r in regex],
            node_id=str(data.get("nodeID") or ""),
            pef_endpoints=[PEFEndpoint._from_mapping(ep) for ep in endpoints],
            env_file_path=str(data.get("envFile") or ""),
            config_path=str(path),
        )


@dataclass
class Container:
    """The parts of a running container that node discovery uses."""

    names: list[str] = field(default_factory=list)
    command: str = ""
    image: str = ""


def _any_network(value: str) -> bool:
    return bool(value)


class Flow:
    """Discovery and validation of flow node metadata.

    ``known_network`` decides whether a chain value found in the node's logs
    names a network; by default any non-empty value is accepted.
    """

    protocol = PROTOCOL_NAME

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        known_network: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.config = config if config is not None else FlowConfig.load(DEFAULT_FLOW_PATH)
        self.known_network = known_network or _any_network
        self.container: Optional[Container] = None
        self.node_role = ""
        self.network = ""
        self.node_version = ""
        self.render_needed = False
        self._lock = threading.RLock()

    def _is_pef_configured(self) -> bool:
        if not self.config.pef_endpoints:
            raise ValueError(
                "pefEndpoints field should always have an entry; "
                "running agent with reset flag should populate it"
            )
        return bool(self.config.pef_endpoints[0].url)

    def is_configured(self) -> bool:
        """True once the client, node id and a metrics endpoint are all known."""
        with self._lock:
            if self.config.client and self.config.node_id and self._is_pef_configured():
                log.debug("protocol is already configured, nothing to do here")
                return True
            return False

    def validate_client(self) -> None:
        """Raise ValueError unless the configured client is the flow client."""
        if self.config.client != DEFAULT_CLIENT:
            raise ValueError("invalid client specified")

    def configure_client(self) -> None:
        """Fill in the default client if none is configured."""
        if not self.config.client:
            self.config.client = DEFAULT_CLIENT

    def configure_node_id_from_docker(self) -> str:
        """Find the node id in the container's command line arguments."""
        with self._lock:
            if self.config.node_id:
                log.debug("node id exists, skipping discovery: %s", self.config.node_id)
                return self.config.node_id
            if self.container is not None:
                args = self.container.command.split(" ")
                for index, arg in enumerate(args):
                    if not arg.startswith("--nodeid"):
                        continue
                    if "=" in arg:
                        node_id = arg.split("=", 1)[1]
                    elif index + 1 < len(args):
                        node_id = args[index + 1]
                    else:
                        raise ValueError(
                            f"potentially invalid docker run command: {self.container.command}"
                        )
                    if node_id:
                        log.info("node id found: %s", node_id)
                        self.config.node_id = node_id
                        self.render_needed = True
                        return node_id
            raise LookupError("node ID not found")

    def update_node_version_from_docker(self) -> str:
        """Take the node version from the container image tag."""
        with self._lock:
            if self.container is None:
                raise ValueError("node version: container not configured")
            parts = self.container.image.split(":")
            if len(parts) < 2:
                raise ValueError(f"could not find node version: {self.container.image}")
            self.node_version = parts[1]
            return self.node_version

    def update_metadata_from_json(self, data: Union[str, bytes]) -> None:
        """Update node role and network from one JSON log line."""
        m = json.loads(data)
        if not isinstance(m, dict):
            raise ValueError("log line is not a JSON object")

        if "node_role" in m and not self.node_role:
            role = m["node_role"]
            if not isinstance(role, str):
                raise ValueError(f"type assertion failed for node role: {role!r}")
            role = role.lower()
            if role not in RECOGNIZED_NODE_ROLES:
                raise ValueError(f"unsupported node role detected: {role}")
            self.node_role = role

        self._update_network_from_json_log(m)

    def _update_network_from_json_log(self, m: Mapping[str, Any]) -> None:
        for key in NETWORK_LOG_KEY_CANDIDATES:
            if self.network:
                return
            if key not in m:
                continue
            value = m[key]
            if not isinstance(value, str):
                log.warning("type assertion failed for chain log field: %r", value)
                continue
            if self.known_network(value):
                self.network = value
                break

    def update_from_logs(
        self, lines: Iterable[Union[str, bytes]], header_len: int = 0
    ) -> None:
        """Watch log lines until node role and network are both known.

        Each line may be preceded by a stream header of ``header_len`` bytes.
        Watching stops after a few seconds; LookupError is raised if the
        metadata is still incomplete.
        """
        with self._lock:
            started = time.monotonic()
            for raw in lines:
                if time.monotonic() - started >= LOG_WATCH_TIMEOUT:
                    break
                line = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
                line = line.rstrip(b"\r\n")
                if header_len > 0 and len(line) < header_len:
                    raise ValueError("empty log line")
                line = line[header_len:]
                if not line.startswith(b"{"):
                    continue
                self.update_metadata_from_json(line)
                if self.network and self.node_role:
                    break

            if not self.network or not self.node_role:
                log.warning(
                    "missing metadata: network=%r node_role=%r",
                    self.network,
                    self.node_role,
                )
                raise LookupError("could not discover node role or network")

            log.info(
                "metadata discovered: network=%s node_role=%s took=%.3fs",
                self.network,
                self.node_role,
                time.monotonic() - started,
            )

    def log_watch_enabled(self) -> bool:
        """Node logs are only watched for consensus nodes."""
        return self.node_role == NODE_ROLE_CONSENSUS

    def log_events(self) -> dict[str, LogEvent]:
        """Events tracked from the node log, keyed by log message."""
        return events_from_context()