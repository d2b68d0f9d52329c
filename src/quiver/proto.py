"""Field-numbered binary codec for source definitions.

Source definitions are exchanged with the control plane as protobuf
messages. The schema is declared here as a ``FileDescriptorProto`` and
loaded into a private descriptor pool at import time, so no generated
``_pb2`` module is needed. Field numbers are part of the wire contract:
never renumber a field and never reuse a retired number (6-10 are
reserved on ``DataSource``; 5 is reserved on ``SnowflakeOptions``).

Decoding goes through the ``DataSource`` model constructor, so every
catalog invariant (options variant matches ``type``, bounded
``batch_source`` chain, ...) is checked on the way in.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from typing import Any

from google.protobuf import descriptor_pb2, descriptor_pool, duration_pb2, message_factory, timestamp_pb2
from google.protobuf.message import DecodeError

import quiver.errors as errors
import quiver.sources as sources

_F = descriptor_pb2.FieldDescriptorProto
_PACKAGE = "quiver.core"
_DS = f".{_PACKAGE}.DataSource"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# (oneof field name, field number, nested message name, options model)
_OPTION_VARIANTS: list[tuple[str, int, str, type[sources.BaseOptions]]] = [
    ("file_options", 11, "FileOptions", sources.FileOptions),
    ("bigquery_options", 12, "BigQueryOptions", sources.BigQueryOptions),
    ("kafka_options", 13, "KafkaOptions", sources.KafkaOptions),
    ("kinesis_options", 14, "KinesisOptions", sources.KinesisOptions),
    ("redshift_options", 15, "RedshiftOptions", sources.RedshiftOptions),
    ("custom_options", 16, "CustomSourceOptions", sources.CustomSourceOptions),
    ("request_data_options", 18, "RequestDataOptions", sources.RequestDataOptions),
    ("snowflake_options", 19, "SnowflakeOptions", sources.SnowflakeOptions),
    ("push_options", 22, "PushOptions", sources.PushOptions),
    ("spark_options", 27, "SparkOptions", sources.SparkOptions),
    ("trino_options", 30, "TrinoOptions", sources.TrinoOptions),
    ("athena_options", 35, "AthenaOptions", sources.AthenaOptions),
]
_ONEOF_BY_MODEL = {model: oneof for oneof, _, _, model in _OPTION_VARIANTS}
_MODEL_BY_ONEOF = {oneof: model for oneof, _, _, model in _OPTION_VARIANTS}

# Plain string fields per options payload: (model attribute, proto field, number)
_STRING_FIELDS: dict[type[sources.BaseOptions], list[tuple[str, str, int]]] = {
    sources.FileOptions: [("uri", "uri", 2), ("s3_endpoint_override", "s3_endpoint_override", 3)],
    sources.BigQueryOptions: [("table", "table", 1), ("query", "query", 2)],
    sources.TrinoOptions: [("table", "table", 1), ("query", "query", 2)],
    sources.KafkaOptions: [("kafka_bootstrap_servers", "kafka_bootstrap_servers", 1), ("topic", "topic", 2)],
    sources.KinesisOptions: [("region", "region", 1), ("stream_name", "stream_name", 2)],
    sources.RedshiftOptions: [
        ("table", "table", 1),
        ("query", "query", 2),
        ("db_schema", "schema", 3),
        ("database", "database", 4),
    ],
    sources.AthenaOptions: [
        ("table", "table", 1),
        ("query", "query", 2),
        ("database", "database", 3),
        ("data_source", "data_source", 4),
    ],
    sources.SnowflakeOptions: [
        ("table", "table", 1),
        ("query", "query", 2),
        ("db_schema", "schema", 3),
        ("database", "database", 4),
    ],
    sources.SparkOptions: [
        ("table", "table", 1),
        ("query", "query", 2),
        ("path", "path", 3),
        ("file_format", "file_format", 4),
        ("date_partition_column_format", "date_partition_column_format", 5),
    ],
    sources.CustomSourceOptions: [],
    sources.RequestDataOptions: [],
    sources.PushOptions: [],
}

_FILE_FORMATS = [("parquet", 1), ("delta", 2), ("csv", 3), ("json", 4)]
_STREAM_FORMATS = [
    ("avro", 1, "schema_json", "message_schema"),
    ("proto", 2, "class_path", "class_path"),
    ("json", 3, "schema_json", "message_schema"),
]


# =============================================================================
# Descriptor construction
# =============================================================================


def _add_field(
    msg: descriptor_pb2.DescriptorProto,
    name: str,
    number: int,
    ftype: int,
    type_name: str | None = None,
    repeated: bool = False,
    oneof_index: int | None = None,
) -> None:
    field = msg.field.add(
        name=name,
        number=number,
        type=ftype,
        label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
    )
    if type_name is not None:
        field.type_name = type_name
    if oneof_index is not None:
        field.oneof_index = oneof_index


def _add_string_map(msg: descriptor_pb2.DescriptorProto, scope: str, name: str, number: int) -> None:
    entry_name = "".join(part.capitalize() for part in name.split("_")) + "Entry"
    entry = msg.nested_type.add(name=entry_name)
    entry.options.map_entry = True
    _add_field(entry, "key", 1, _F.TYPE_STRING)
    _add_field(entry, "value", 2, _F.TYPE_STRING)
    _add_field(msg, name, number, _F.TYPE_MESSAGE, type_name=f"{scope}.{entry_name}", repeated=True)


def _build_file() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="quiver/core/data_source.proto",
        package=_PACKAGE,
        syntax="proto3",
    )
    fdp.dependency.extend(["google/protobuf/duration.proto", "google/protobuf/timestamp.proto"])

    value_type = fdp.enum_type.add(name="ValueType")
    for member in sources.ValueType:
        value_type.value.add(name=member.name, number=member.value)

    spec = fdp.message_type.add(name="FeatureSpecV2")
    _add_field(spec, "name", 1, _F.TYPE_STRING)
    _add_field(spec, "value_type", 2, _F.TYPE_ENUM, type_name=f".{_PACKAGE}.ValueType")

    file_format = fdp.message_type.add(name="FileFormat")
    file_format.oneof_decl.add(name="format")
    for fmt, number in _FILE_FORMATS:
        marker = fmt.capitalize() + "Format"
        file_format.nested_type.add(name=marker)
        _add_field(
            file_format, f"{fmt}_format", number, _F.TYPE_MESSAGE,
            type_name=f".{_PACKAGE}.FileFormat.{marker}", oneof_index=0,
        )

    stream_format = fdp.message_type.add(name="StreamFormat")
    stream_format.oneof_decl.add(name="format")
    for fmt, number, payload, _ in _STREAM_FORMATS:
        marker = fmt.capitalize() + "Format"
        nested = stream_format.nested_type.add(name=marker)
        _add_field(nested, payload, 1, _F.TYPE_STRING)
        _add_field(
            stream_format, f"{fmt}_format", number, _F.TYPE_MESSAGE,
            type_name=f".{_PACKAGE}.StreamFormat.{marker}", oneof_index=0,
        )

    ds = fdp.message_type.add(name="DataSource")
    ds.reserved_range.add(start=6, end=11)

    source_type = ds.enum_type.add(name="SourceType")
    for member in sources.SourceType:
        source_type.value.add(name=member.name, number=member.value)

    meta = ds.nested_type.add(name="SourceMeta")
    for name, number in (
        ("earliest_event_timestamp", 1),
        ("latest_event_timestamp", 2),
        ("created_timestamp", 3),
        ("last_updated_timestamp", 4),
    ):
        _add_field(meta, name, number, _F.TYPE_MESSAGE, type_name=".google.protobuf.Timestamp")

    for _, _, msg_name, model in _OPTION_VARIANTS:
        options = ds.nested_type.add(name=msg_name)
        for _, proto_name, number in _STRING_FIELDS[model]:
            _add_field(options, proto_name, number, _F.TYPE_STRING)
        if model is sources.FileOptions:
            _add_field(options, "file_format", 1, _F.TYPE_MESSAGE, type_name=f".{_PACKAGE}.FileFormat")
        elif model is sources.KafkaOptions:
            _add_field(options, "message_format", 3, _F.TYPE_MESSAGE, type_name=f".{_PACKAGE}.StreamFormat")
            _add_field(
                options, "watermark_delay_threshold", 4, _F.TYPE_MESSAGE,
                type_name=".google.protobuf.Duration",
            )
        elif model is sources.KinesisOptions:
            _add_field(options, "record_format", 3, _F.TYPE_MESSAGE, type_name=f".{_PACKAGE}.StreamFormat")
        elif model is sources.SnowflakeOptions:
            options.reserved_range.add(start=5, end=6)
        elif model is sources.CustomSourceOptions:
            _add_field(options, "configuration", 1, _F.TYPE_BYTES)
        elif model is sources.RequestDataOptions:
            options.reserved_range.add(start=1, end=3)
            _add_field(
                options, "schema", 3, _F.TYPE_MESSAGE,
                type_name=f".{_PACKAGE}.FeatureSpecV2", repeated=True,
            )
        elif model is sources.PushOptions:
            options.reserved_range.add(start=1, end=2)

    _add_field(ds, "type", 1, _F.TYPE_ENUM, type_name=f"{_DS}.SourceType")
    _add_string_map(ds, _DS, "field_mapping", 2)
    _add_field(ds, "timestamp_field", 3, _F.TYPE_STRING)
    _add_field(ds, "date_partition_column", 4, _F.TYPE_STRING)
    _add_field(ds, "created_timestamp_column", 5, _F.TYPE_STRING)
    _add_field(ds, "data_source_class_type", 17, _F.TYPE_STRING)
    _add_field(ds, "name", 20, _F.TYPE_STRING)
    _add_field(ds, "project", 21, _F.TYPE_STRING)
    _add_field(ds, "description", 23, _F.TYPE_STRING)
    _add_string_map(ds, _DS, "tags", 24)
    _add_field(ds, "owner", 25, _F.TYPE_STRING)
    _add_field(ds, "batch_source", 26, _F.TYPE_MESSAGE, type_name=_DS)
    _add_field(ds, "join_keys", 28, _F.TYPE_STRING, repeated=True)
    _add_field(ds, "schema", 29, _F.TYPE_MESSAGE, type_name=f".{_PACKAGE}.FeatureSpecV2", repeated=True)
    _add_field(ds, "meta", 50, _F.TYPE_MESSAGE, type_name=f"{_DS}.SourceMeta")

    ds.oneof_decl.add(name="options")
    for oneof, number, msg_name, _ in _OPTION_VARIANTS:
        _add_field(ds, oneof, number, _F.TYPE_MESSAGE, type_name=f"{_DS}.{msg_name}", oneof_index=0)

    source_list = fdp.message_type.add(name="DataSourceList")
    _add_field(source_list, "datasources", 1, _F.TYPE_MESSAGE, type_name=_DS, repeated=True)
    return fdp


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(duration_pb2.DESCRIPTOR.serialized_pb)
_POOL.AddSerializedFile(timestamp_pb2.DESCRIPTOR.serialized_pb)
_POOL.AddSerializedFile(_build_file().SerializeToString())

DataSourceProto = message_factory.GetMessageClass(_POOL.FindMessageTypeByName(f"{_PACKAGE}.DataSource"))
DataSourceListProto = message_factory.GetMessageClass(
    _POOL.FindMessageTypeByName(f"{_PACKAGE}.DataSourceList")
)


# =============================================================================
# Model <-> message conversion
# =============================================================================


def _set_timestamp(target: Any, value: datetime) -> None:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH
    target.seconds = delta.days * 86400 + delta.seconds
    target.nanos = delta.microseconds * 1000


def _get_timestamp(msg: Any, field: str) -> datetime | None:
    if not msg.HasField(field):
        return None
    ts = getattr(msg, field)
    return _EPOCH + timedelta(seconds=ts.seconds, microseconds=ts.nanos // 1000)


def _set_duration(target: Any, value: timedelta) -> None:
    target.seconds = value.days * 86400 + value.seconds
    target.nanos = value.microseconds * 1000


def _stream_format_to_proto(fmt: sources.StreamFormat, target: Any) -> None:
    for name, _, payload, attr in _STREAM_FORMATS:
        if name == fmt.format:
            nested = getattr(target, f"{name}_format")
            nested.SetInParent()
            value = getattr(fmt, attr)
            if value:
                setattr(nested, payload, value)


def _stream_format_from_proto(msg: Any) -> sources.StreamFormat | None:
    which = msg.WhichOneof("format")
    if which is None:
        return None
    name = which.removesuffix("_format")
    payload, attr = next((p, a) for n, _, p, a in _STREAM_FORMATS if n == name)
    return sources.StreamFormat(format=name, **{attr: getattr(getattr(msg, which), payload) or None})


def _options_to_proto(options: sources.BaseOptions, target: Any) -> None:
    target.SetInParent()
    model = type(options)
    for attr, proto_name, _ in _STRING_FIELDS[model]:
        value = getattr(options, attr)
        if value:
            setattr(target, proto_name, value)
    if isinstance(options, sources.FileOptions):
        getattr(target.file_format, f"{options.file_format}_format").SetInParent()
    elif isinstance(options, sources.KafkaOptions):
        if options.message_format is not None:
            _stream_format_to_proto(options.message_format, target.message_format)
        if options.watermark_delay_threshold is not None:
            _set_duration(target.watermark_delay_threshold, options.watermark_delay_threshold)
    elif isinstance(options, sources.KinesisOptions):
        if options.record_format is not None:
            _stream_format_to_proto(options.record_format, target.record_format)
    elif isinstance(options, sources.CustomSourceOptions):
        target.configuration = options.configuration
    elif isinstance(options, sources.RequestDataOptions):
        for spec in options.request_schema:
            target.schema.add(name=spec.name, value_type=int(spec.value_type))


def _options_from_proto(model: type[sources.BaseOptions], msg: Any) -> sources.BaseOptions:
    data: dict[str, Any] = {}
    for attr, proto_name, _ in _STRING_FIELDS[model]:
        value = getattr(msg, proto_name)
        if value:
            data[attr] = value
    if model is sources.FileOptions:
        which = msg.file_format.WhichOneof("format")
        if which is not None:
            data["file_format"] = which.removesuffix("_format")
        data.setdefault("uri", "")
    elif model is sources.KafkaOptions:
        if msg.HasField("message_format"):
            data["message_format"] = _stream_format_from_proto(msg.message_format)
        if msg.HasField("watermark_delay_threshold"):
            d = msg.watermark_delay_threshold
            data["watermark_delay_threshold"] = timedelta(seconds=d.seconds, microseconds=d.nanos // 1000)
        data.setdefault("topic", "")
    elif model is sources.KinesisOptions:
        if msg.HasField("record_format"):
            data["record_format"] = _stream_format_from_proto(msg.record_format)
        data.setdefault("stream_name", "")
    elif model is sources.CustomSourceOptions:
        data["configuration"] = bytes(msg.configuration)
    elif model is sources.RequestDataOptions:
        data["request_schema"] = [
            sources.FeatureSpec(name=s.name, value_type=sources.ValueType(s.value_type)) for s in msg.schema
        ]
    return model(**data)


def to_proto(source: sources.DataSource) -> Any:
    """Convert a DataSource model into a ``DataSourceProto`` message."""
    msg = DataSourceProto()
    _fill(source, msg)
    return msg


def _fill(source: sources.DataSource, msg: Any) -> None:
    msg.name = source.name
    msg.project = source.project
    msg.type = int(source.type)
    msg.description = source.description
    msg.owner = source.owner
    msg.tags.update(source.tags)
    msg.field_mapping.update(source.field_mapping)
    msg.timestamp_field = source.timestamp_field
    msg.created_timestamp_column = source.created_timestamp_column
    msg.date_partition_column = source.date_partition_column
    msg.data_source_class_type = source.data_source_class_type
    msg.join_keys.extend(source.join_keys)
    for spec in source.source_schema:
        msg.schema.add(name=spec.name, value_type=int(spec.value_type))

    for field in ("earliest_event_timestamp", "latest_event_timestamp", "created_timestamp", "last_updated_timestamp"):
        value = getattr(source.meta, field)
        if value is not None:
            _set_timestamp(getattr(msg.meta, field), value)

    if source.batch_source is not None:
        _fill(source.batch_source, msg.batch_source)

    _options_to_proto(source.options, getattr(msg, _ONEOF_BY_MODEL[type(source.options)]))


def from_proto(msg: Any) -> sources.DataSource:
    """Convert a ``DataSourceProto`` message into a validated DataSource.

    Raises:
        CatalogValidationError: If no options payload is populated or the
            decoded entry violates a catalog invariant.
    """
    which = msg.WhichOneof("options")
    if which is None:
        raise errors.CatalogValidationError(
            msg.name or "(unnamed)",
            cause="no options payload is populated",
            fix="Populate exactly one options field matching the source type.",
        )
    try:
        source_type = sources.SourceType(msg.type)
    except ValueError:
        raise errors.CatalogValidationError(
            msg.name or "(unnamed)",
            cause=f"unknown source type number {msg.type}",
            fix="Upgrade the serving process or fix the source type.",
        ) from None

    meta = sources.SourceMeta(
        earliest_event_timestamp=_get_timestamp(msg.meta, "earliest_event_timestamp"),
        latest_event_timestamp=_get_timestamp(msg.meta, "latest_event_timestamp"),
        created_timestamp=_get_timestamp(msg.meta, "created_timestamp"),
        last_updated_timestamp=_get_timestamp(msg.meta, "last_updated_timestamp"),
    )
    return sources.DataSource(
        name=msg.name,
        project=msg.project,
        type=source_type,
        options=_options_from_proto(_MODEL_BY_ONEOF[which], getattr(msg, which)),
        description=msg.description,
        owner=msg.owner,
        tags=dict(msg.tags),
        field_mapping=dict(msg.field_mapping),
        timestamp_field=msg.timestamp_field,
        created_timestamp_column=msg.created_timestamp_column,
        date_partition_column=msg.date_partition_column,
        data_source_class_type=msg.data_source_class_type,
        join_keys=list(msg.join_keys),
        source_schema=[
            sources.FeatureSpec(name=s.name, value_type=sources.ValueType(s.value_type)) for s in msg.schema
        ],
        batch_source=from_proto(msg.batch_source) if msg.HasField("batch_source") else None,
        meta=meta,
    )


def serialize_source(source: sources.DataSource) -> bytes:
    return to_proto(source).SerializeToString(deterministic=True)


def parse_source(data: bytes) -> sources.DataSource:
    msg = DataSourceProto()
    try:
        msg.ParseFromString(data)
    except DecodeError as e:
        raise errors.ValidationError(
            context="Decoding a DataSource payload",
            cause=str(e),
            fix="Check the payload was produced by a compatible control plane.",
        ) from e
    return from_proto(msg)


def serialize_source_list(items: Iterable[sources.DataSource]) -> bytes:
    """Encode sources into a ``DataSourceList`` envelope."""
    envelope = DataSourceListProto()
    for source in items:
        _fill(source, envelope.datasources.add())
    return envelope.SerializeToString(deterministic=True)


def parse_source_list(data: bytes) -> list[sources.DataSource]:
    """Decode a ``DataSourceList`` envelope into validated sources."""
    envelope = DataSourceListProto()
    try:
        envelope.ParseFromString(data)
    except DecodeError as e:
        raise errors.ValidationError(
            context="Decoding a DataSourceList payload",
            cause=str(e),
            fix="Check the payload was produced by a compatible control plane.",
        ) from e
    return [from_proto(msg) for msg in envelope.datasources]
