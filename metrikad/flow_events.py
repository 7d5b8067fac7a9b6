"""Consensus node log events tracked for the flow protocol."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from .model import Event, FromContext, new_with_filtered_ctx

# Building blocks for the context keys each event keeps.
_NODE = ("level", "node_role", "node_id")
_TRAILER = ("time", "message")
_HOTSTUFF = _NODE + ("hotstuff", "chain", "path_id", "view")
_BLOCK = ("block_view", "block_id", "block_proposer_id", "block_time", "qc_block_id")
_VOTED = ("voted_block_view", "voted_block_id")


@dataclass(frozen=True)
class LogEvent(FromContext):
    """Turns a JSON log line with a given message into a named event."""

    message: str
    name: str
    keys: tuple

    def __init__(self, message: str, name: str, keys: Iterable[str]) -> None:
        object.__setattr__(self, "message", message)
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "keys", tuple(keys))

    def matches(self, ctx: Mapping[str, Any]) -> bool:
        """True if the log context carries this event's message."""
        return "message" in ctx and ctx["message"] == self.message

    def new(self, ctx: Mapping[str, Any], t: datetime) -> Optional[Event]:
        """Build the event from ctx, or return None if the message differs."""
        if not self.matches(ctx):
            return None
        return new_with_filtered_ctx(ctx, self.name, t, *self.keys)


def _same_name(message: str, keys: Iterable[str]) -> LogEvent:
    return LogEvent(message, message, keys)


_EVENTS = (
    _same_name("OnFinalizedBlock", _HOTSTUFF + ("block_id",) + _TRAILER),
    _same_name("OnProposingBlock", _HOTSTUFF + _BLOCK + ("qc_block_view",) + _TRAILER),
    # Jolteon variant of a proposal from the validator of interest.
    _same_name("OnOwnProposal", _HOTSTUFF + _BLOCK + ("qc_view",) + _TRAILER),
    # qc_block_view was renamed to qc_view; both are kept for compatibility.
    _same_name(
        "OnReceiveProposal",
        _HOTSTUFF + _BLOCK + ("qc_block_view", "qc_view") + _TRAILER,
    ),
    _same_name("OnVoting", _HOTSTUFF + _VOTED + ("voter_id",) + _TRAILER),
    _same_name("OnOwnVote", _HOTSTUFF + _VOTED + _TRAILER),
    LogEvent(
        "block vote received, forwarding block vote to hotstuff vote aggregator",
        "BlockVoteReceived",
        _NODE + ("compliance", "block_view", "block_id", "vote_id", "voter") + _TRAILER,
    ),
)


def events_from_context() -> dict[str, LogEvent]:
    """Tracked log events keyed by the log message that triggers them."""
    return {event.message: event for event in _EVENTS}