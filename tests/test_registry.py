"""Tests for the in-memory source registry."""

from __future__ import annotations

import pytest

import quiver.errors as errors
import quiver.registry as registry
import quiver.sources as sources


def _source(name: str = "orders", project: str = "ads", uri: str = "data/orders.parquet") -> sources.DataSource:
    return sources.DataSource(
        name=name,
        project=project,
        type=sources.SourceType.BATCH_FILE,
        timestamp_field="ts",
        join_keys=["user_id"],
        options=sources.FileOptions(uri=uri),
    )


@pytest.fixture
def reg() -> registry.SourceRegistry:
    return registry.SourceRegistry([_source()])


class TestRegister:
    def test_register_and_lookup(self, reg):
        assert reg.lookup("ads", "orders").name == "orders"

    def test_register_from_dict(self, reg):
        entry = reg.register(
            {
                "name": "views",
                "project": "ads",
                "type": "BATCH_FILE",
                "timestamp_field": "ts",
                "join_keys": ["user_id"],
                "options": {"uri": "data/views.parquet"},
            }
        )
        assert entry.version == 1
        assert reg.lookup("ads", "views").options.uri == "data/views.parquet"

    def test_duplicate_name_rejected(self, reg):
        with pytest.raises(errors.CatalogValidationError, match="already exists"):
            reg.register(_source())

    def test_same_name_in_other_project(self, reg):
        reg.register(_source(project="search"))
        assert [s.project for s in (reg.lookup("ads", "orders"), reg.lookup("search", "orders"))] == [
            "ads",
            "search",
        ]

    def test_mismatched_options_leaves_catalog_unchanged(self, reg):
        """A rejected registration does not alter the catalog."""
        before = reg.snapshot()
        with pytest.raises(errors.ValidationError):
            reg.register(
                {
                    "name": "clicks",
                    "project": "ads",
                    "type": "STREAM_KAFKA",
                    "timestamp_field": "ts",
                    "join_keys": ["user_id"],
                    "options": {"kind": "file", "uri": "data/clicks.parquet"},
                }
            )
        assert reg.snapshot() is before
        assert not reg.snapshot().contains("ads", "clicks")

    def test_lookup_missing(self, reg):
        with pytest.raises(errors.SourceNotFoundError):
            reg.lookup("ads", "nope")

    def test_list_sorted(self, reg):
        reg.register(_source("alpha"))
        assert [s.name for s in reg.list("ads")] == ["alpha", "orders"]
        assert reg.list("unknown") == []


class TestReplaceAndLoad:
    def test_replace_bumps_version_on_change(self, reg):
        entry = reg.replace(_source(uri="data/orders_v2.parquet"))
        assert entry.version == 2
        assert reg.lookup("ads", "orders").options.uri == "data/orders_v2.parquet"

    def test_replace_unchanged_keeps_version(self, reg):
        assert reg.replace(_source()).version == 1

    def test_meta_does_not_change_hash(self, t0):
        source = _source()
        stamped = source.with_meta(sources.SourceMeta(latest_event_timestamp=t0))
        assert registry.compute_spec_hash(source) == registry.compute_spec_hash(stamped)

    def test_load_is_atomic(self, reg):
        """A bad item in a bulk load leaves every entry untouched."""
        with pytest.raises(errors.CatalogValidationError):
            reg.load([_source("views"), {"name": "bad", "project": "ads", "type": "BATCH_FILE"}])
        assert not reg.snapshot().contains("ads", "views")

    def test_load_rejects_duplicates(self, reg):
        with pytest.raises(errors.CatalogValidationError, match="duplicate"):
            reg.load([_source("views"), _source("views")])

    def test_snapshot_isolated_from_later_writes(self, reg):
        """A snapshot taken before a replace keeps seeing the old entry."""
        snap = reg.snapshot()
        reg.replace(_source(uri="data/orders_v2.parquet"))
        assert snap.lookup("ads", "orders").options.uri == "data/orders.parquet"
        assert snap.entry("ads", "orders").version == 1

    def test_entries_ordered(self, reg):
        reg.register(_source("alpha", project="search"))
        reg.register(_source("beta"))
        assert [(e.source.project, e.source.name) for e in reg.snapshot().entries()] == [
            ("ads", "beta"),
            ("ads", "orders"),
            ("search", "alpha"),
        ]
