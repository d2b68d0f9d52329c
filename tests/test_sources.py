from datetime import timedelta

import pytest

import quiver.errors as errors
import quiver.sources as sources


def _file_options():
    return sources.FileOptions(uri="s3://bucket/clicks.parquet")


def _hist(**overrides):
    params = dict(
        name="clicks_hist",
        project="ads",
        type=sources.SourceType.BATCH_FILE,
        timestamp_field="ts",
        join_keys=["user_id"],
        options=_file_options(),
    )
    params.update(overrides)
    return sources.DataSource(**params)


def _clicks(**overrides):
    params = dict(
        name="clicks",
        project="ads",
        type=sources.SourceType.STREAM_KAFKA,
        timestamp_field="ts",
        join_keys=["user_id"],
        options=sources.KafkaOptions(kafka_bootstrap_servers="broker:9092", topic="clicks"),
    )
    params.update(overrides)
    return sources.DataSource(**params)


class TestSourceType:
    def test_wire_numbers(self):
        assert sources.SourceType.BATCH_FILE == 1
        assert sources.SourceType.PUSH_SOURCE == 9
        assert sources.SourceType.BATCH_ATHENA == 12

    def test_families(self):
        assert sources.SourceType.BATCH_SPARK.is_batch
        assert sources.SourceType.STREAM_KINESIS.is_stream
        assert sources.SourceType.PUSH_SOURCE.supports_batch_source
        assert not sources.SourceType.BATCH_FILE.supports_batch_source
        assert not sources.SourceType.REQUEST_SOURCE.is_batch


class TestValueType:
    def test_accepts(self):
        assert sources.ValueType.INT64.accepts(3)
        assert not sources.ValueType.INT64.accepts(True)
        assert not sources.ValueType.INT64.accepts("3")
        assert sources.ValueType.DOUBLE.accepts(3)
        assert sources.ValueType.STRING.accepts("DE")
        assert sources.ValueType.BOOL.accepts(False)

    def test_none_is_never_accepted(self):
        assert not sources.ValueType.INVALID.accepts(None)


class TestDataSource:
    def test_creates_streaming_source_with_fallback(self):
        source = _clicks(batch_source=_hist())
        assert source.key == ("ads", "clicks")
        assert source.batch_source.name == "clicks_hist"
        assert source.options.kind == "kafka"

    def test_is_frozen(self):
        source = _hist()
        with pytest.raises(Exception):
            source.name = "other"

    def test_options_must_match_type(self):
        """A populated options variant that mismatches type is rejected."""
        with pytest.raises(errors.CatalogValidationError, match="options payload is BATCH_FILE"):
            _clicks(options=_file_options())

    def test_invalid_type_rejected(self):
        with pytest.raises(errors.CatalogValidationError, match="INVALID"):
            _hist(type=sources.SourceType.INVALID)

    def test_timestamp_field_required(self):
        with pytest.raises(errors.CatalogValidationError, match="timestamp_field"):
            _hist(timestamp_field="")

    def test_name_required(self):
        with pytest.raises(errors.CatalogValidationError, match="name"):
            _hist(name="")

    def test_join_keys_required_for_storage_sources(self):
        with pytest.raises(errors.CatalogValidationError, match="join_keys"):
            _hist(join_keys=[])

    def test_request_source_needs_no_timestamp_or_keys(self):
        source = sources.DataSource(
            name="ctx",
            project="ads",
            type=sources.SourceType.REQUEST_SOURCE,
            options=sources.RequestDataOptions(request_schema=[sources.FeatureSpec(name="age")]),
        )
        assert source.feature_names() == ["age"]

    def test_request_source_needs_a_schema(self):
        with pytest.raises(errors.CatalogValidationError, match="at least one field"):
            sources.DataSource(
                name="ctx",
                project="ads",
                type=sources.SourceType.REQUEST_SOURCE,
                options=sources.RequestDataOptions(),
            )

    def test_field_mapping_must_be_injective(self):
        with pytest.raises(errors.CatalogValidationError, match="same feature name"):
            _hist(field_mapping={"a": "x", "b": "x"})

    def test_schema_must_contain_timestamp(self):
        with pytest.raises(errors.CatalogValidationError, match="'ts' is not in the source schema"):
            _hist(source_schema=[sources.FeatureSpec(name="user_id"), sources.FeatureSpec(name="spend")])

    def test_batch_source_only_on_stream_or_push(self):
        with pytest.raises(errors.CatalogValidationError, match="cannot declare a batch_source"):
            _hist(name="outer", batch_source=_hist())

    def test_batch_source_must_be_batch(self):
        with pytest.raises(errors.CatalogValidationError, match="must be a batch source"):
            _clicks(batch_source=_clicks(name="other"))

    def test_batch_source_chain_limited_to_one_level(self):
        """A chained batch_source.batch_source is rejected at construction."""
        inner = sources.DataSource.model_construct(**{**_hist().__dict__, "batch_source": _hist(name="deeper")})
        with pytest.raises(errors.CatalogValidationError, match="one level"):
            _clicks(batch_source=inner)

    def test_batch_source_keyed_by_same_entity(self):
        with pytest.raises(errors.CatalogValidationError, match="keyed by columns"):
            _clicks(batch_source=_hist(join_keys=["account_id"]))

    def test_warehouse_table_or_query(self):
        with pytest.raises(errors.CatalogValidationError, match="exactly one of 'table' or 'query'"):
            sources.DataSource(
                name="orders",
                project="ads",
                type=sources.SourceType.BATCH_BIGQUERY,
                timestamp_field="ts",
                join_keys=["user_id"],
                options=sources.BigQueryOptions(table="p:d.t", query="select 1"),
            )


class TestCanonicalNames:
    def test_feature_names_apply_field_mapping(self):
        source = _hist(
            field_mapping={"amt": "spend"},
            source_schema=[
                sources.FeatureSpec(name="user_id"),
                sources.FeatureSpec(name="ts"),
                sources.FeatureSpec(name="amt", value_type=sources.ValueType.DOUBLE),
            ],
        )
        assert source.feature_names() == ["spend"]
        assert source.origin_column("spend") == "amt"
        assert source.canonical_name("amt") == "spend"
        assert source.origin_column("other") == "other"

    def test_entity_key_is_canonical(self):
        source = _hist(join_keys=["user_id", "region"])
        assert source.entity_key({"region": "eu", "user_id": 1, "extra": 2}) == source.entity_key(
            {"user_id": 1, "region": "eu"}
        )

    def test_entity_key_missing_join_key(self):
        with pytest.raises(KeyError):
            _hist().entity_key({"account_id": 1})


class TestSourceFromDict:
    def test_accepts_type_name_and_infers_kind(self):
        source = sources.source_from_dict(
            {
                "name": "clicks",
                "project": "ads",
                "type": "STREAM_KAFKA",
                "timestamp_field": "ts",
                "join_keys": ["user_id"],
                "options": {"topic": "clicks", "watermark_delay_threshold": "PT5M"},
                "batch_source": {
                    "name": "clicks_hist",
                    "project": "ads",
                    "type": "BATCH_FILE",
                    "timestamp_field": "ts",
                    "join_keys": ["user_id"],
                    "options": {"uri": "data/clicks.parquet"},
                },
            }
        )
        assert source.type is sources.SourceType.STREAM_KAFKA
        assert source.options.watermark_delay_threshold == timedelta(minutes=5)
        assert isinstance(source.batch_source.options, sources.FileOptions)

    def test_structural_errors_are_catalog_errors(self):
        with pytest.raises(errors.CatalogValidationError, match="orders"):
            sources.source_from_dict({"name": "orders", "project": "ads", "type": 1, "options": {"kind": "file"}})

    def test_with_meta_returns_copy(self, t0):
        source = _hist()
        stamped = source.with_meta(sources.SourceMeta(latest_event_timestamp=t0))
        assert stamped.meta.latest_event_timestamp == t0
        assert source.meta.latest_event_timestamp is None
