import queue
import threading
import time

import pytest

from metrikad.buffer import Item, PriorityBuffer
from metrikad.controller import Controller, ControllerConf, HeapAllocLimitError
from metrikad.model import AGENT_NET_ERROR_NAME, Event


def make_items(n):
    now = time.time_ns() // 1_000_000
    return [Item(priority=0, timestamp=now, data=f"heap-test-{i}") for i in range(n)]


def run_for(ctrl, seconds):
    stop = threading.Event()
    thread = threading.Thread(target=ctrl.start, args=(stop,))
    thread.start()
    time.sleep(seconds)
    stop.set()
    thread.join(timeout=5)
    assert not thread.is_alive()


def collecting_callback():
    drained = queue.Queue()

    def on_drain(batch):
        drained.put(list(batch))

    return drained, on_drain


def test_controller_drain_batch():
    n = 5
    drained, on_drain = collecting_callback()
    conf = ControllerConf(buf_drain_freq=0.001, buf_len_limit=n, on_buf_remove_callback=on_drain)

    pb = PriorityBuffer(0)
    m = make_items(n)
    pb.insert(*m)

    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.1)

    batch = drained.get(timeout=0.1)
    assert len(batch) == n
    assert batch == m
    assert drained.qsize() == 0

    pb = PriorityBuffer(0)
    pb.insert(*m)
    conf.buf_len_limit = 1
    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.1)

    assert len(pb) == 0
    for expected in m:
        batch = drained.get(timeout=0.1)
        assert len(batch) == 1
        assert batch[0] == expected


def test_controller_drain_callback():
    n = 5
    drained, on_drain = collecting_callback()
    conf = ControllerConf(buf_drain_freq=0.001, buf_len_limit=n, on_buf_remove_callback=on_drain)
    pb = PriorityBuffer(0)
    m = make_items(n)
    pb.insert(*m)

    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.1)

    assert drained.get(timeout=0.1) == m
    assert len(pb) == 0


def test_controller_drain_callback_err():
    n = 5
    calls = []

    def on_drain(batch):
        calls.append(len(batch))
        raise RuntimeError("drain test error")

    conf = ControllerConf(buf_drain_freq=0.05, buf_len_limit=n, on_buf_remove_callback=on_drain)
    pb = PriorityBuffer(0)
    pb.insert(*make_items(n))

    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.15)

    # one net error event from the scheduled drain, one from the final drain
    assert len(pb) == n + 2
    assert len(calls) == 2


def test_controller_drain_smaller_than_limit():
    n = 5
    drained, on_drain = collecting_callback()
    conf = ControllerConf(
        buf_drain_freq=0.001, buf_len_limit=2 * n, on_buf_remove_callback=on_drain
    )
    pb = PriorityBuffer(0)
    m = make_items(n)
    pb.insert(*m)

    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.1)

    assert drained.get(timeout=0.1) == m
    assert len(pb) == 0


def test_controller_close():
    conf = ControllerConf(
        buf_drain_freq=0.001, buf_len_limit=1, on_buf_remove_callback=lambda b: None
    )
    pb = PriorityBuffer(0)
    pb.insert(*make_items(5))

    ctrl = Controller(conf, pb)
    run_for(ctrl, 0.1)

    assert len(pb) == 0


def test_controller_final_drain_on_immediate_stop():
    drained, on_drain = collecting_callback()
    conf = ControllerConf(buf_drain_freq=10, buf_len_limit=10, on_buf_remove_callback=on_drain)
    pb = PriorityBuffer(0)
    m = make_items(3)
    pb.insert(*m)

    stop = threading.Event()
    stop.set()
    Controller(conf, pb).start(stop)

    assert drained.get(timeout=0.1) == m
    assert len(pb) == 0


def test_heap_alloc_limit_error():
    n = 5
    conf = ControllerConf(
        buf_drain_freq=0.001, buf_len_limit=1, on_buf_remove_callback=lambda b: None, min_buf_size=1
    )
    pb = PriorityBuffer(0)
    m = make_items(n)
    pb.insert(*m)

    ctrl = Controller(conf, pb)
    ctrl.conf.max_heap_alloc_bytes = 100
    ctrl.heap_alloc = 200
    ctrl.memstats_updated_at = time.monotonic()

    with pytest.raises(HeapAllocLimitError):
        ctrl.buf_insert(m[0])
    assert ctrl.drop_counts["memstats_error"] == 1
    assert len(pb) == n


def test_heap_alloc_limit_min_buf_size():
    n = 5
    conf = ControllerConf(
        buf_drain_freq=0.001,
        buf_len_limit=1,
        on_buf_remove_callback=lambda b: None,
        min_buf_size=8,
        mem_stats_cache_timeout=3600,
    )
    pb = PriorityBuffer(0)
    m = make_items(n)
    pb.insert(*m)

    ctrl = Controller(conf, pb)
    ctrl.conf.max_heap_alloc_bytes = 100
    ctrl.heap_alloc = 200
    ctrl.memstats_updated_at = time.monotonic()

    for i in range(n):
        if i + 1 > 3:
            with pytest.raises(HeapAllocLimitError):
                ctrl.buf_insert(m[i])
        else:
            ctrl.buf_insert(m[i])
    assert len(pb) == 8


def test_defaults_applied():
    ctrl = Controller(ControllerConf(on_buf_remove_callback=lambda b: None), PriorityBuffer(0))
    assert ctrl.conf.buf_len_limit == 1000
    assert ctrl.conf.buf_drain_freq == 5.0
    assert ctrl.conf.mem_stats_cache_timeout == 15.0
    assert ctrl.conf.max_heap_alloc_bytes == 52428800
    assert ctrl.conf.min_buf_size == 2500


def test_missing_callback_rejected():
    with pytest.raises(ValueError):
        Controller(ControllerConf(), PriorityBuffer(0))


def test_buf_drain_failure_requeues_and_emits_event():
    def on_drain(batch):
        raise ConnectionError("platform down")

    pb = PriorityBuffer(0)
    pb.insert(*make_items(3))
    ctrl = Controller(ControllerConf(buf_len_limit=10, on_buf_remove_callback=on_drain), pb)

    with pytest.raises(ConnectionError):
        ctrl.buf_drain()

    assert len(pb) == 4
    names = [item.data.name for item in pb.get(4) if isinstance(item.data, Event)]
    assert names == [AGENT_NET_ERROR_NAME]


def test_emit_event_with_error():
    pb = PriorityBuffer(0)
    ctrl = Controller(ControllerConf(on_buf_remove_callback=lambda b: None), pb)
    ctrl.emit_event_with_error(ValueError("boom"), AGENT_NET_ERROR_NAME)

    items = pb.get(1)
    assert len(items) == 1
    assert items[0].priority == 0
    assert items[0].data.name == AGENT_NET_ERROR_NAME
    assert items[0].data.values == {"error": "boom"}


def test_early_drain_when_platform_up():
    drained, on_drain = collecting_callback()
    pb = PriorityBuffer(0)
    ctrl = Controller(
        ControllerConf(buf_len_limit=2, on_buf_remove_callback=on_drain), pb, lambda: True
    )
    m = make_items(2)
    ctrl.buf_insert_and_early_drain(m[0])
    assert drained.qsize() == 0
    ctrl.buf_insert_and_early_drain(m[1])

    assert drained.get(timeout=0.1) == m
    assert len(pb) == 0


def test_no_early_drain_when_platform_down():
    drained, on_drain = collecting_callback()
    pb = PriorityBuffer(0)
    ctrl = Controller(
        ControllerConf(buf_len_limit=1, on_buf_remove_callback=on_drain), pb, lambda: False
    )
    ctrl.buf_insert_and_early_drain(make_items(1)[0])

    assert drained.qsize() == 0
    assert len(pb) == 1