from datetime import datetime, timedelta, timezone

import pytest

from metrikad.model import (
    AGENT_DOWN_NAME,
    ERROR_KEY,
    Event,
    FromContext,
    new_event,
    new_with_ctx,
    new_with_filtered_ctx,
)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_filtered_ctx_keeps_only_given_keys():
    ctx = {"level": "info", "view": 424144, "message": "OnFinalizedBlock"}
    ev = new_with_filtered_ctx(ctx, "OnFinalizedBlock", EPOCH, "level", "message")
    assert ev.name == "OnFinalizedBlock"
    assert ev.values == {"level": "info", "message": "OnFinalizedBlock"}


def test_filtered_ctx_skips_missing_keys():
    ctx = {"level": "info"}
    ev = new_with_filtered_ctx(ctx, "x", EPOCH, "level", "absent")
    assert ev.values == {"level": "info"}


def test_filtered_ctx_no_keys_gives_empty_values():
    ev = new_with_filtered_ctx({"a": 1}, "x", EPOCH)
    assert ev.values == {}


def test_nil_ctx_gives_no_values():
    ev = new_with_filtered_ctx(None, "x", EPOCH, "a")
    assert ev.values is None
    assert ev.name == "x"


def test_timestamp_in_milliseconds():
    t = EPOCH + timedelta(milliseconds=1234)
    ev = new_event("x", t)
    assert ev.timestamp == 1234


def test_timestamp_truncates_sub_millisecond():
    t = EPOCH + timedelta(milliseconds=1234, microseconds=999)
    assert new_event("x", t).timestamp == 1234


def test_new_with_ctx_copies_whole_ctx():
    ctx = {ERROR_KEY: "boom", "nested": {"a": [1, 2.5, None, True]}}
    ev = new_with_ctx(ctx, "agent.net.error", EPOCH)
    assert ev.values == ctx
    assert ev.name == "agent.net.error"


def test_new_event_without_context():
    ev = new_event(AGENT_DOWN_NAME, EPOCH)
    assert ev == Event(name=AGENT_DOWN_NAME, timestamp=0, values=None)


def test_unsupported_value_type_raises():
    with pytest.raises(TypeError):
        new_with_ctx({"bad": object()}, "x", EPOCH)


def test_non_string_key_raises():
    with pytest.raises(TypeError):
        new_with_ctx({"ok": {1: "bad"}}, "x", EPOCH)


class _OnlyLevel(FromContext):
    def new(self, ctx, t):
        return new_with_filtered_ctx(ctx, "lvl", t, "level")


def test_from_context_subclass_builds_event():
    ev = _OnlyLevel().new({"level": "warn", "other": 1}, EPOCH)
    expected = Event(name="lvl", timestamp=0, values={"level": "warn"})
    assert ev == expected


def test_from_context_is_abstract():
    with pytest.raises(TypeError):
        FromContext()