"""Tests for the point-in-time merge."""

from __future__ import annotations

from datetime import timedelta

import pytest

import quiver.adapters as adapters
import quiver.dispatcher as dispatcher
import quiver.errors as errors
import quiver.merge as merge
import quiver.registry as registry
import quiver.resolver as resolver
import quiver.sources as sources

HIST = sources.DataSource(
    name="clicks_hist",
    project="ads",
    type=sources.SourceType.BATCH_FILE,
    timestamp_field="ts",
    join_keys=["user_id"],
    options=sources.FileOptions(uri="data/clicks.parquet"),
)
CLICKS = sources.DataSource(
    name="clicks",
    project="ads",
    type=sources.SourceType.STREAM_KAFKA,
    timestamp_field="ts",
    join_keys=["user_id"],
    options=sources.KafkaOptions(topic="clicks"),
    batch_source=HIST,
)


def _key(user_id) -> str:
    return CLICKS.entity_key({"user_id": user_id})


def _candidate(value, ts, tier=dispatcher.ONLINE_TIER, created=None, ordinal=0, user_id=1):
    row = adapters.LookupRow(_key(user_id), {"click_count": value}, ts, created, ordinal)
    return dispatcher.Candidate(row=row, tier=tier)


def _resolve(*refs: str) -> resolver.Resolution:
    snapshot = registry.SourceRegistry([CLICKS]).snapshot()
    return resolver.SourceResolver(snapshot).resolve_many([resolver.FeatureReference.parse(r) for r in refs])


def _dispatched(candidates=None, failures=None, user_ids=(1,)) -> dispatcher.DispatchResult:
    outcome = dispatcher.SourceOutcome(source=CLICKS)
    for candidate in candidates or []:
        outcome.candidates.setdefault(candidate.row.entity_key, []).append(candidate)
    outcome.failures.update(failures or {})
    return dispatcher.DispatchResult(
        outcomes={CLICKS.key: outcome},
        row_keys={CLICKS.key: [_key(u) for u in user_ids]},
    )


class TestSelectCandidate:
    def test_fallback_wins_when_newer(self, t0):
        """Online copy 10 minutes old, fallback 1 minute old: the fallback wins."""
        online = _candidate(5, t0 - timedelta(minutes=10))
        fallback = _candidate(7, t0 - timedelta(minutes=1), tier=dispatcher.FALLBACK_TIER)
        assert merge.select_candidate([online, fallback], t0) is fallback

    def test_future_rows_never_win(self, t0):
        future = _candidate(99, t0 + timedelta(seconds=1))
        past = _candidate(1, t0 - timedelta(days=1))
        assert merge.select_candidate([future, past], t0) is past
        assert merge.select_candidate([future], t0) is None

    def test_created_timestamp_then_tier_then_ordinal(self, t0):
        late_created = _candidate(1, t0, tier=dispatcher.FALLBACK_TIER, created=t0 + timedelta(seconds=1))
        no_created = _candidate(2, t0)
        assert merge.select_candidate([no_created, late_created], t0) is late_created

        online = _candidate(3, t0, tier=dispatcher.ONLINE_TIER)
        fallback = _candidate(4, t0, tier=dispatcher.FALLBACK_TIER, ordinal=9)
        assert merge.select_candidate([fallback, online], t0) is online

        first = _candidate(5, t0, ordinal=0)
        second = _candidate(6, t0, ordinal=1)
        assert merge.select_candidate([second, first], t0) is second

    def test_deterministic_regardless_of_arrival_order(self, t0):
        candidates = [
            _candidate(1, t0 - timedelta(minutes=3)),
            _candidate(2, t0, created=t0),
            _candidate(3, t0, tier=dispatcher.FALLBACK_TIER, created=t0),
        ]
        winners = {merge.select_candidate(order, t0).row.values["click_count"] for order in (candidates, candidates[::-1])}
        assert winners == {2}


class TestMergeEngine:
    def test_value_and_missing(self, t0):
        resolution = _resolve("ads/clicks:click_count")
        dispatched = _dispatched([_candidate(5, t0 - timedelta(minutes=1))], user_ids=(1, 2))

        rows = merge.MergeEngine().merge(resolution, dispatched, 2, t0)

        assert rows[0]["clicks:click_count"] == merge.FeatureValue(
            status=merge.FeatureStatus.VALUE, value=5, event_timestamp=t0 - timedelta(minutes=1)
        )
        assert rows[1]["clicks:click_count"].status is merge.FeatureStatus.MISSING

    def test_null_value_is_missing(self, t0):
        resolution = _resolve("ads/clicks:click_count")
        dispatched = _dispatched([_candidate(None, t0)])

        [row] = merge.MergeEngine().merge(resolution, dispatched, 1, t0)
        assert row["clicks:click_count"].status is merge.FeatureStatus.MISSING

    def test_backend_failure_surfaces_per_feature(self, t0):
        resolution = _resolve("ads/clicks:click_count")
        dispatched = _dispatched(
            [_candidate(5, t0, user_id=2)],
            failures={_key(1): errors.BackendTimeoutError("clicks")},
            user_ids=(1, 2),
        )

        rows = merge.MergeEngine().merge(resolution, dispatched, 2, t0)

        assert rows[0]["clicks:click_count"].status is merge.FeatureStatus.TIMEOUT
        assert rows[1]["clicks:click_count"].value == 5

    def test_resolution_failure_and_order_preserved(self, t0):
        """Keys follow the requested order; unknown features are tagged, not dropped."""
        resolution = _resolve("ads/nope:x", "ads/clicks:click_count", "ads/clicks:other")
        dispatched = _dispatched([_candidate(5, t0)])

        [row] = merge.MergeEngine().merge(resolution, dispatched, 1, t0)

        assert list(row) == ["nope:x", "clicks:click_count", "clicks:other"]
        assert row["nope:x"].status is merge.FeatureStatus.UNKNOWN_FEATURE
        assert row["clicks:click_count"].ok
        assert row["clicks:other"].status is merge.FeatureStatus.MISSING


class TestFeatureValue:
    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (errors.BackendUnavailableError("clicks", "reset"), merge.FeatureStatus.BACKEND_UNAVAILABLE),
            (errors.BackendRejectedError("clicks", "bad sql"), merge.FeatureStatus.BACKEND_REJECTED),
            (errors.UnknownFieldError("ads/clicks:x", ["click_count"]), merge.FeatureStatus.UNKNOWN_FIELD),
        ],
    )
    def test_from_error(self, error, status):
        value = merge.FeatureValue.from_error(error)
        assert value.status is status
        assert value.error == error.cause
        assert not value.ok
