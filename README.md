# metrikad

Building blocks of a monitoring agent for blockchain nodes: an event model,
a priority buffer with a draining controller, recognisers and discovery
helpers for Flow nodes, and cloud instance metadata lookups.

## Modules

- `metrikad.model` – the `Event` dataclass (`name`, millisecond `timestamp`,
  optional `values`), the `FromContext` interface, and the helpers
  `new_with_filtered_ctx(ctx, name, t, *keys)`, `new_with_ctx(ctx, name, t)`
  and `new_event(name, t)`. Context values must be plain JSON-like data
  (None, bool, int, float, str, lists and string-keyed mappings); anything
  else raises `TypeError`.
- `metrikad.buffer` – `Priority` (`LOW`, `MED`, `HIGH`), `Item`, `ItemBatch`,
  the `Buffer` interface, `PriorityQueue` (oldest first, with
  `drain_expired()` for a TTL in seconds; 0 disables expiry), `MultiQueue`,
  `new_priority_queues(ttl, n)` and the thread-safe `PriorityBuffer`. A
  `PriorityBuffer.get(n)` returns at most `n` items, highest priority first
  and oldest first within a priority.
- `metrikad.controller` – `ControllerConf` and `Controller`. The controller
  drains its buffer every `buf_drain_freq` seconds in batches of at most
  `buf_len_limit`, passing each batch to `on_buf_remove_callback`. A batch the
  callback rejects goes back into the buffer, an `agent.net.error` event is
  buffered, and retries back off exponentially. `start(stop_event)` runs until
  the `threading.Event` is set and then drains once more. `buf_insert` raises
  `HeapAllocLimitError` once the buffer holds at least `min_buf_size` items
  and the process' memory estimate exceeds `max_heap_alloc_bytes`.
  `buf_insert_and_early_drain` also drains as soon as the buffer reaches its
  batch limit, unless `publish_state()` reports the platform down. Zero
  settings fall back to defaults (1000 items, 5 s, 15 s, 50 MiB, 2500 items).
- `metrikad.flow_events` – `LogEvent` and `events_from_context()`, which maps
  Flow consensus node log messages (`OnFinalizedBlock`, `OnProposingBlock`,
  `OnOwnProposal`, `OnReceiveProposal`, `OnVoting`, `OnOwnVote` and the block
  vote forwarding message, reported as `BlockVoteReceived`) to recognisers
  that keep only the relevant keys of a JSON log record.
- `metrikad.flow` – `PEFEndpoint`, `FlowConfig` (loaded from YAML with
  `FlowConfig.load(path)`), `Container` and `Flow`. A `Flow` validates and
  fills in the client (`flow-go`), reads the node id from a container's
  `--nodeid` argument, the node version from the image tag, and the node role
  and network from JSON log lines via `update_from_logs(lines, header_len)`.
  Which chain values count as networks is decided by the `known_network`
  callable; by default any non-empty value is accepted.
- `metrikad.cloud` – `MetadataSearch` and its implementations `AzureSearch`,
  `DigitalOceanSearch`, `EC2Search`, `EquinixSearch`, `GCESearch` and
  `VultrSearch`, each with `is_running_on()` and `hostname()`. Every class
  takes the metadata service address and a timeout, so it can be pointed at a
  local test server.

## Installation

```
pip install .
```

With the test extra:

```
pip install ".[test]"
pytest
```

## Example

```python
from datetime import datetime, timezone

from metrikad.buffer import Item, Priority, PriorityBuffer
from metrikad.flow_events import events_from_context

buffer = PriorityBuffer(ttl=0)
buffer.insert(
    Item(priority=Priority.LOW, timestamp=1, data="low"),
    Item(priority=Priority.HIGH, timestamp=2, data="high"),
)
batch = buffer.get(2)  # the HIGH item comes out first

record = {"message": "OnFinalizedBlock", "view": 424144, "chain": "flow-mainnet"}
event = events_from_context()["OnFinalizedBlock"].new(record, datetime.now(timezone.utc))
```

## What it does not do

This is a library, not a running agent. It has no command line program and
no HTTP server, and it does not publish or export events anywhere: drained
batches go only to the callback you supply. `Flow` does not find containers
or systemd units, read environment files, probe metrics endpoints over HTTP
or write configuration files; it works with the `FlowConfig`, `Container` and
log lines you give it.