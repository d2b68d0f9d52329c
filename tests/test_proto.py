"""Tests for the binary source definition codec."""

from __future__ import annotations

from datetime import timedelta

import pytest

import quiver.errors as errors
import quiver.proto as proto
import quiver.sources as sources


def _clicks(t0=None):
    meta = sources.SourceMeta(latest_event_timestamp=t0) if t0 else sources.SourceMeta()
    return sources.DataSource(
        name="clicks",
        project="ads",
        type=sources.SourceType.STREAM_KAFKA,
        timestamp_field="ts",
        created_timestamp_column="created",
        join_keys=["user_id"],
        field_mapping={"cnt": "click_count"},
        tags={"team": "growth"},
        options=sources.KafkaOptions(
            kafka_bootstrap_servers="broker:9092",
            topic="clicks",
            message_format=sources.StreamFormat(format="avro", schema_json='{"type": "record"}'),
            watermark_delay_threshold=timedelta(minutes=5),
        ),
        batch_source=sources.DataSource(
            name="clicks_hist",
            project="ads",
            type=sources.SourceType.BATCH_FILE,
            timestamp_field="ts",
            join_keys=["user_id"],
            options=sources.FileOptions(uri="s3://bucket/clicks", file_format="delta"),
        ),
        meta=meta,
    )


class TestSourceCodec:
    def test_round_trip_preserves_definition(self, t0):
        """Encoding then decoding yields an equal model, nested fallback included."""
        source = _clicks(t0)
        decoded = proto.parse_source(proto.serialize_source(source))
        assert decoded == source

    def test_field_numbers_are_stable(self):
        """Wire numbers of the exchanged fields never move."""
        fields = proto.DataSourceProto.DESCRIPTOR.fields_by_name
        assert fields["type"].number == 1
        assert fields["timestamp_field"].number == 3
        assert fields["name"].number == 20
        assert fields["batch_source"].number == 26
        assert fields["meta"].number == 50
        assert fields["file_options"].number == 11
        assert fields["athena_options"].number == 35
        assert fields["join_keys"].number == 28

    def test_options_live_in_one_oneof(self):
        msg = proto.to_proto(_clicks())
        assert msg.WhichOneof("options") == "kafka_options"
        assert msg.batch_source.WhichOneof("options") == "file_options"

    def test_stream_format_schema_travels_as_schema_json(self):
        msg = proto.to_proto(_clicks())
        assert msg.kafka_options.message_format.avro_format.schema_json == '{"type": "record"}'

        decoded = proto.from_proto(msg)
        assert decoded.options.message_format.message_schema == '{"type": "record"}'

    def test_request_source_schema(self):
        source = sources.DataSource(
            name="ctx",
            project="ads",
            type=sources.SourceType.REQUEST_SOURCE,
            options=sources.RequestDataOptions(
                request_schema=[sources.FeatureSpec(name="age", value_type=sources.ValueType.INT64)]
            ),
        )
        decoded = proto.parse_source(proto.serialize_source(source))
        assert decoded.options.request_schema[0].value_type is sources.ValueType.INT64

    def test_mismatched_oneof_is_rejected(self):
        """A payload whose options variant mismatches type fails validation."""
        msg = proto.to_proto(_clicks())
        msg.ClearField("batch_source")
        msg.type = int(sources.SourceType.BATCH_FILE)
        with pytest.raises(errors.ValidationError):
            proto.parse_source(msg.SerializeToString())

    def test_missing_options_rejected(self):
        msg = proto.DataSourceProto(name="x", project="ads", type=1, timestamp_field="ts")
        with pytest.raises(errors.CatalogValidationError, match="no options payload"):
            proto.from_proto(msg)

    def test_garbage_bytes(self):
        with pytest.raises(errors.ValidationError):
            proto.parse_source(b"\xff\xff\xff")


class TestSourceListCodec:
    def test_list_envelope(self):
        hist = _clicks().batch_source
        payload = proto.serialize_source_list([_clicks(), hist])
        decoded = proto.parse_source_list(payload)
        assert [s.name for s in decoded] == ["clicks", "clicks_hist"]

    def test_empty_list(self):
        assert proto.parse_source_list(proto.serialize_source_list([])) == []
