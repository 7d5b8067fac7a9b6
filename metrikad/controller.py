"""Periodic draining of a buffer, with memory guards and retry backoff."""

from __future__ import annotations

import collections
import dataclasses
import logging
import os
import random
import sys
import threading
import time
import tracemalloc
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from .buffer import Buffer, Item, ItemBatch
from .model import AGENT_NET_ERROR_NAME, ERROR_KEY, new_with_ctx

try:
    import resource
except ImportError:  # pragma: no cover - not available on every platform
    resource = None

log = logging.getLogger(__name__)

DEFAULT_MAX_DRAIN_BATCH_LEN = 1000
DEFAULT_MAX_HEAP_ALLOC_BYTES = 52428800
DEFAULT_DRAIN_FREQ = 5.0
DEFAULT_MEM_STATS_CACHE_TIMEOUT = 15.0
DEFAULT_MIN_BUF_SIZE = 2500


class HeapAllocLimitError(Exception):
    """The agent reached its maximum allowed heap allocation."""

    def __init__(self, message: str = "heap allocated bytes limit reached") -> None:
        super().__init__(message)


@dataclasses.dataclass
class ControllerConf:
    """Controller settings; zero values are replaced by defaults.

    Durations are in seconds.
    """

    buf_len_limit: int = 0
    buf_drain_freq: float = 0.0
    on_buf_remove_callback: Optional[Callable[[ItemBatch], None]] = None
    mem_stats_cache_timeout: float = 0.0
    max_heap_alloc_bytes: int = 0
    min_buf_size: int = 0


def _read_heap_alloc() -> int:
    """Best effort estimate of the process' allocated memory in bytes."""
    if tracemalloc.is_tracing():
        return tracemalloc.get_traced_memory()[0]
    try:
        with open("/proc/self/statm", encoding="ascii") as statm:
            resident_pages = int(statm.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    if resource is not None:
        max_rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        return max_rss if sys.platform == "darwin" else max_rss * 1024
    return 0


class _ExponentialBackoff:
    """Randomised exponential backoff that never expires."""

    def __init__(
        self,
        initial: float = 0.5,
        multiplier: float = 1.5,
        randomization: float = 0.5,
        max_interval: float = 60.0,
    ) -> None:
        self.initial = initial
        self.multiplier = multiplier
        self.randomization = randomization
        self.max_interval = max_interval
        self._current = initial

    def reset(self) -> None:
        self._current = self.initial

    def next(self) -> float:
        delta = self.randomization * self._current
        value = random.uniform(self._current - delta, self._current + delta)
        if self._current >= self.max_interval / self.multiplier:
            self._current = self.max_interval
        else:
            self._current *= self.multiplier
        return value


class Controller:
    """Drains a buffer periodically and guards insertions by memory usage.

    ``publish_state`` is a callable returning True while the platform is up;
    when omitted the platform is always considered up.
    """

    def __init__(
        self,
        conf: ControllerConf,
        buffer: Buffer,
        publish_state: Optional[Callable[[], bool]] = None,
    ) -> None:
        if conf.on_buf_remove_callback is None:
            raise ValueError("on_buf_remove_callback is required")
        self.conf = dataclasses.replace(
            conf,
            buf_len_limit=conf.buf_len_limit or DEFAULT_MAX_DRAIN_BATCH_LEN,
            buf_drain_freq=conf.buf_drain_freq or DEFAULT_DRAIN_FREQ,
            mem_stats_cache_timeout=conf.mem_stats_cache_timeout
            or DEFAULT_MEM_STATS_CACHE_TIMEOUT,
            max_heap_alloc_bytes=conf.max_heap_alloc_bytes
            or DEFAULT_MAX_HEAP_ALLOC_BYTES,
            min_buf_size=conf.min_buf_size or DEFAULT_MIN_BUF_SIZE,
        )
        self.buffer = buffer
        self.publish_state = publish_state or (lambda: True)
        self.heap_alloc = _read_heap_alloc()
        self.memstats_updated_at = time.monotonic()
        self.drop_counts: collections.Counter[str] = collections.Counter()

    def _final_drain(self) -> None:
        try:
            self.buf_drain()
        except Exception as err:  # noqa: BLE001 - shutting down regardless
            log.warning("final drain failed: %s", err)

    def start(self, stop_event: threading.Event) -> None:
        """Drain periodically until stop_event is set, backing off on errors.

        A last drain is attempted once the event is set.
        """
        log.debug("starting buffer controller")
        backoff = _ExponentialBackoff()

        if stop_event.wait(self.conf.buf_drain_freq):
            self._final_drain()
            return
        backoff.reset()

        while True:
            log.debug("scheduled drain kick in")
            try:
                self.buf_drain()
            except Exception as err:  # noqa: BLE001 - retried with backoff
                delay = backoff.next()
                log.warning("scheduled drain failed: %s (retry in %.3fs)", err, delay)
                if stop_event.wait(delay):
                    self._final_drain()
                    return
                continue

            if stop_event.wait(self.conf.buf_drain_freq):
                self._final_drain()
                return
            backoff.reset()
            log.debug("scheduled drain ok, buffer length %d", len(self.buffer))

    def _check_mem_stats(self) -> None:
        now = time.monotonic()
        if now - self.memstats_updated_at > self.conf.mem_stats_cache_timeout:
            self.heap_alloc = _read_heap_alloc()
            self.memstats_updated_at = now
            log.debug(
                "memstats refreshed: heap_alloc=%d max_heap_alloc=%d",
                self.heap_alloc,
                self.conf.max_heap_alloc_bytes,
            )

        if (
            len(self.buffer) >= self.conf.min_buf_size
            and self.heap_alloc > self.conf.max_heap_alloc_bytes
        ):
            raise HeapAllocLimitError()

    def buf_insert(self, item: Item) -> None:
        """Insert an item, refusing it if the memory limit was reached."""
        try:
            self._check_mem_stats()
        except HeapAllocLimitError:
            self.drop_counts["memstats_error"] += 1
            raise

        try:
            self.buffer.insert(item)
        except Exception:
            self.drop_counts["buffer_full"] += 1
            raise

    def buf_insert_and_early_drain(self, item: Item) -> None:
        """Insert an item and drain early if the buffer reached its batch limit.

        No early drain happens while the platform is down.
        """
        self.buf_insert(item)
        if not self.publish_state():
            return
        if len(self.buffer) >= self.conf.buf_len_limit:
            log.debug("max batch length exceeded, eager drain kick in")
            try:
                self.buf_drain()
            except Exception as err:
                log.warning("eager drain failed: %s", err)
                raise
            log.debug("eager drain ok")

    def _drain_batch(self, batch_n: int) -> int:
        if batch_n < 1:
            return 0
        items = self.buffer.get(batch_n)
        try:
            self.conf.on_buf_remove_callback(items)
        except Exception as err:
            try:
                self.emit_event_with_error(err, AGENT_NET_ERROR_NAME)
            except Exception as emit_err:  # noqa: BLE001 - logged only
                log.warning("error emitting event %s: %s", AGENT_NET_ERROR_NAME, emit_err)
            try:
                self.buffer.insert(*items)
            except Exception as in_err:
                raise RuntimeError(f"{in_err}: {err}") from err
            raise
        return len(items)

    def buf_drain(self) -> None:
        """Empty the buffer in batches, handing each to the remove callback.

        A batch the callback rejects is put back in the buffer and the
        callback's exception is raised.
        """
        limit = self.conf.buf_len_limit
        drained = 0
        while len(self.buffer) > limit:
            drained += self._drain_batch(limit)
        drained += self._drain_batch(min(len(self.buffer), limit))
        if drained > 0:
            log.info("buffer drain ok, count %d", drained)

    def emit_event_with_error(self, err: BaseException, name: str) -> None:
        """Buffer an event carrying the error text in its context."""
        self.emit_event({ERROR_KEY: str(err)}, name)

    def emit_event(self, ctx: Mapping[str, Any], name: str) -> None:
        """Buffer an event for publishing."""
        event = new_with_ctx(ctx, name, datetime.now(timezone.utc))
        log.debug("emitting event: %s, %s", event.name, event.values)
        try:
            self.buf_insert(Item(priority=0, data=event))
        except Exception as err:
            log.error("buffer insert error: %s", err)
            raise