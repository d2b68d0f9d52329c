"""Tests for the in-process push buffer."""

from __future__ import annotations

from datetime import timedelta

import pytest

import quiver.online.push as push
import quiver.types as types

SOURCE = ("ads", "profile")


def _key(user_id: int) -> str:
    return types.canonical_key({"user_id": user_id})


class TestPushBuffer:
    def test_read_returns_newest_at_or_before_as_of(self, t0):
        buffer = push.PushBuffer()
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "silver"}, t0)
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "gold"}, t0 + timedelta(minutes=10))

        [now] = buffer.read(SOURCE, [_key(1)], t0 + timedelta(hours=1))
        [earlier] = buffer.read(SOURCE, [_key(1)], t0 + timedelta(minutes=5))

        assert now.features == {"tier": "gold"}
        assert earlier.features == {"tier": "silver"}

    def test_future_only_entity_is_absent(self, t0):
        buffer = push.PushBuffer()
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "gold"}, t0)
        assert buffer.read(SOURCE, [_key(1)], t0 - timedelta(seconds=1)) == []

    def test_out_of_order_writes_are_sorted(self, t0):
        """A late write of an older event does not shadow the newer one."""
        buffer = push.PushBuffer()
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "gold"}, t0 + timedelta(minutes=10))
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "silver"}, t0)

        [record] = buffer.read(SOURCE, [_key(1)], t0 + timedelta(hours=1))
        assert record.features == {"tier": "gold"}

    def test_later_write_wins_exact_tie(self, t0):
        buffer = push.PushBuffer()
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "silver"}, t0)
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "gold"}, t0)

        [record] = buffer.read(SOURCE, [_key(1)], t0)
        assert record.features == {"tier": "gold"}

    def test_history_is_bounded(self, t0):
        buffer = push.PushBuffer(max_versions=2)
        for minute in range(3):
            buffer.write(SOURCE, {"user_id": 1}, {"n": minute}, t0 + timedelta(minutes=minute))

        # The oldest version was evicted, so as_of at t0 finds nothing.
        assert buffer.read(SOURCE, [_key(1)], t0) == []
        [record] = buffer.read(SOURCE, [_key(1)], t0 + timedelta(minutes=1))
        assert record.features == {"n": 1}

    def test_accepts_canonical_key(self, t0):
        buffer = push.PushBuffer()
        buffer.write(SOURCE, _key(1), {"tier": "gold"}, t0)
        assert len(buffer.read(SOURCE, [_key(1)], t0)) == 1

    def test_clear(self, t0):
        buffer = push.PushBuffer()
        buffer.write(SOURCE, {"user_id": 1}, {"tier": "gold"}, t0)
        buffer.write(("ads", "other"), {"user_id": 1}, {"tier": "gold"}, t0)

        buffer.clear(SOURCE)
        assert buffer.read(SOURCE, [_key(1)], t0) == []
        assert len(buffer.read(("ads", "other"), [_key(1)], t0)) == 1

        buffer.clear()
        assert buffer.read(("ads", "other"), [_key(1)], t0) == []

    def test_max_versions_must_be_positive(self):
        with pytest.raises(ValueError):
            push.PushBuffer(max_versions=0)
