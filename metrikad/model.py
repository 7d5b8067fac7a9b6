"""Agent events and helpers for building them from log contexts."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional

# Keys used for indexing in Event.values.
AGENT_UPTIME_KEY = "uptime"
AGENT_PROTOCOL_KEY = "protocol"
AGENT_VERSION_KEY = "agent_version"
ENDPOINT_KEY = "endpoint"
ERROR_KEY = "error"
NODE_ID_KEY = "node_id"
NODE_TYPE_KEY = "node_type"
NODE_VERSION_KEY = "node_version"
OFFSET_MILLIS_KEY = "offset_millis"
NTP_SERVER_KEY = "ntp_server"
NETWORK_KEY = "network"

# Core events.
AGENT_UP_NAME = "agent.up"
AGENT_DOWN_NAME = "agent.down"
AGENT_NET_ERROR_NAME = "agent.net.error"
AGENT_HEALTH_NAME = "agent.health"

# Chain specific events.
AGENT_NODE_DOWN_NAME = "agent.node.down"
AGENT_NODE_UP_NAME = "agent.node.up"
AGENT_NODE_RESTART_NAME = "agent.node.restart"
AGENT_NODE_LOG_MISSING_NAME = "agent.node.log.missing"
AGENT_NODE_CONFIG_MISSING_NAME = "agent.node.config.missing"
AGENT_NODE_LOG_FOUND_NAME = "agent.node.log.found"
AGENT_CONFIG_MISSING_NAME = "agent.config.missing"
AGENT_CLOCK_SYNC_NAME = "agent.clock.sync"
AGENT_CLOCK_NO_SYNC_NAME = "agent.clock.nosync"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Event:
    """A named occurrence with a millisecond timestamp and optional context."""

    name: str
    timestamp: int
    values: Optional[dict[str, Any]] = None


class FromContext(abc.ABC):
    """Builds an event from a log context, or returns None if it does not apply."""

    @abc.abstractmethod
    def new(self, ctx: Mapping[str, Any], t: datetime) -> Optional[Event]:
        """Create an event keeping only a preset list of keys from ctx."""


def _unix_millis(t: datetime) -> int:
    if t.tzinfo is None:
        return int(t.timestamp() * 1000)
    return (t - _EPOCH) // timedelta(milliseconds=1)


def _struct_value(value: Any) -> Any:
    """Validate and copy a value that must be representable as a struct value."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return _struct(value)
    if isinstance(value, (list, tuple)):
        return [_struct_value(v) for v in value]
    raise TypeError(f"invalid type for struct value: {type(value).__name__}")


def _struct(mapping: Mapping[Any, Any]) -> dict[str, Any]:
    result = {}
    for key, value in mapping.items():
        if not isinstance(key, str):
            raise TypeError(f"invalid struct key type: {type(key).__name__}")
        result[key] = _struct_value(value)
    return result


def new_with_filtered_ctx(
    ctx: Optional[Mapping[str, Any]], name: str, t: datetime, *args: str
) -> Event:
    """Return an event whose context is the projection of ctx on the given keys."""
    timestamp = _unix_millis(t)
    if ctx is None:
        return Event(name=name, timestamp=timestamp)

    filtered = {key: ctx[key] for key in args if key in ctx}
    return Event(name=name, timestamp=timestamp, values=_struct(filtered))


def new_with_ctx(ctx: Mapping[str, Any], name: str, t: datetime) -> Event:
    """Return an event whose context equals the given context."""
    return new_with_filtered_ctx(ctx, name, t, *ctx.keys())


def new_event(name: str, t: datetime) -> Event:
    """Create a context-free event by name and time."""
    return new_with_filtered_ctx(None, name, t)