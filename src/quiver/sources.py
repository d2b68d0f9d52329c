"""Source definitions for the Quiver serving catalog.

A ``DataSource`` describes where feature data originates and how to address
it. The ``options`` payload is a discriminated union keyed by ``kind``; the
payload's variant must agree with the declared ``type``. Every invariant is
enforced when the model is constructed, so a ``DataSource`` that exists is
valid.

Example:
    clicks = DataSource(
        name="clicks",
        project="ads",
        type=SourceType.STREAM_KAFKA,
        timestamp_field="ts",
        join_keys=["user_id"],
        options=KafkaOptions(kafka_bootstrap_servers="broker:9092", topic="clicks"),
        batch_source=DataSource(
            name="clicks_hist",
            project="ads",
            type=SourceType.BATCH_FILE,
            timestamp_field="ts",
            join_keys=["user_id"],
            options=FileOptions(uri="s3://bucket/clicks.parquet"),
        ),
    )
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Annotated, Any, ClassVar, Literal, Union

import pydantic as pdt

import quiver.errors as errors
import quiver.types as types


class SourceType(enum.IntEnum):
    """Closed set of backend families. Values are the wire enum numbers."""

    INVALID = 0
    BATCH_FILE = 1
    BATCH_BIGQUERY = 2
    STREAM_KAFKA = 3
    STREAM_KINESIS = 4
    BATCH_REDSHIFT = 5
    CUSTOM_SOURCE = 6
    REQUEST_SOURCE = 7
    BATCH_SNOWFLAKE = 8
    PUSH_SOURCE = 9
    BATCH_TRINO = 10
    BATCH_SPARK = 11
    BATCH_ATHENA = 12

    @property
    def is_batch(self) -> bool:
        return self.name.startswith("BATCH_")

    @property
    def is_stream(self) -> bool:
        return self.name.startswith("STREAM_")

    @property
    def supports_batch_source(self) -> bool:
        """Streaming and push sources may declare a historical fallback."""
        return self.is_stream or self is SourceType.PUSH_SOURCE


class ValueType(enum.IntEnum):
    """Scalar value types a source column or request field may declare."""

    INVALID = 0
    BYTES = 1
    STRING = 2
    INT32 = 3
    INT64 = 4
    DOUBLE = 5
    FLOAT = 6
    BOOL = 7
    UNIX_TIMESTAMP = 8

    def accepts(self, value: Any) -> bool:
        """Check whether a Python value is compatible with this type.

        ``None`` is never accepted; callers treat it as an absent value.
        """
        if value is None:
            return False
        if self is ValueType.INVALID:
            return True
        if self is ValueType.BYTES:
            return isinstance(value, (bytes, bytearray))
        if self is ValueType.STRING:
            return isinstance(value, str)
        if self is ValueType.BOOL:
            return isinstance(value, bool)
        if self in (ValueType.INT32, ValueType.INT64):
            return isinstance(value, int) and not isinstance(value, bool)
        if self in (ValueType.DOUBLE, ValueType.FLOAT):
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        # UNIX_TIMESTAMP
        return isinstance(value, (datetime, int))


class SourceModel(pdt.BaseModel):
    """Base for catalog models: immutable, no unknown fields."""

    model_config = pdt.ConfigDict(frozen=True, extra="forbid", populate_by_name=True, ser_json_bytes="base64")


class FeatureSpec(SourceModel):
    """A named, typed column (origin schema) or request field."""

    name: str
    value_type: ValueType = ValueType.INVALID


class SourceMeta(SourceModel):
    """Freshness bookkeeping. Written only by the freshness tracker."""

    earliest_event_timestamp: datetime | None = None
    latest_event_timestamp: datetime | None = None
    created_timestamp: datetime | None = None
    last_updated_timestamp: datetime | None = None


# =============================================================================
# Options payloads (one per SourceType)
# =============================================================================


class BaseOptions(SourceModel):
    """Connection/query parameters for exactly one backend family."""

    source_type: ClassVar[SourceType] = SourceType.INVALID

    def problems(self) -> list[str]:
        """Return invariant violations specific to this payload."""
        return []


class _TableOrQueryOptions(BaseOptions):
    table: str | None = None
    query: str | None = None

    def problems(self) -> list[str]:
        if bool(self.table) == bool(self.query):
            return ["exactly one of 'table' or 'query' must be set"]
        return []


class FileOptions(BaseOptions):
    """Files on local disk or object storage (s3://, gs://, file://)."""

    source_type: ClassVar[SourceType] = SourceType.BATCH_FILE

    kind: Literal["file"] = "file"
    uri: str
    file_format: Literal["parquet", "delta", "csv", "json"] = "parquet"
    s3_endpoint_override: str | None = None

    def problems(self) -> list[str]:
        return [] if self.uri else ["'uri' must not be empty"]


class BigQueryOptions(_TableOrQueryOptions):
    """Table reference in the form ``project:dataset.table``, or a query."""

    source_type: ClassVar[SourceType] = SourceType.BATCH_BIGQUERY

    kind: Literal["bigquery"] = "bigquery"


class RedshiftOptions(_TableOrQueryOptions):
    source_type: ClassVar[SourceType] = SourceType.BATCH_REDSHIFT

    kind: Literal["redshift"] = "redshift"
    db_schema: str | None = pdt.Field(default=None, alias="schema")
    database: str | None = None


class SnowflakeOptions(_TableOrQueryOptions):
    source_type: ClassVar[SourceType] = SourceType.BATCH_SNOWFLAKE

    kind: Literal["snowflake"] = "snowflake"
    db_schema: str | None = pdt.Field(default=None, alias="schema")
    database: str | None = None


class TrinoOptions(_TableOrQueryOptions):
    source_type: ClassVar[SourceType] = SourceType.BATCH_TRINO

    kind: Literal["trino"] = "trino"


class AthenaOptions(_TableOrQueryOptions):
    source_type: ClassVar[SourceType] = SourceType.BATCH_ATHENA

    kind: Literal["athena"] = "athena"
    database: str | None = None
    data_source: str | None = None


class SparkOptions(BaseOptions):
    """Spark table, query, or path (exactly one)."""

    source_type: ClassVar[SourceType] = SourceType.BATCH_SPARK

    kind: Literal["spark"] = "spark"
    table: str | None = None
    query: str | None = None
    path: str | None = None
    file_format: str | None = None
    date_partition_column_format: str | None = None

    def problems(self) -> list[str]:
        if sum(bool(v) for v in (self.table, self.query, self.path)) != 1:
            return ["exactly one of 'table', 'query' or 'path' must be set"]
        return []


class StreamFormat(SourceModel):
    """Encoding of messages on a stream."""

    format: Literal["avro", "proto", "json"]
    message_schema: str | None = pdt.Field(default=None, alias="schema_json")
    class_path: str | None = None


class KafkaOptions(BaseOptions):
    source_type: ClassVar[SourceType] = SourceType.STREAM_KAFKA

    kind: Literal["kafka"] = "kafka"
    kafka_bootstrap_servers: str = ""
    topic: str
    message_format: StreamFormat | None = None
    watermark_delay_threshold: timedelta | None = None

    def problems(self) -> list[str]:
        return [] if self.topic else ["'topic' must not be empty"]


class KinesisOptions(BaseOptions):
    source_type: ClassVar[SourceType] = SourceType.STREAM_KINESIS

    kind: Literal["kinesis"] = "kinesis"
    region: str = ""
    stream_name: str
    record_format: StreamFormat | None = None

    def problems(self) -> list[str]:
        return [] if self.stream_name else ["'stream_name' must not be empty"]


class CustomSourceOptions(BaseOptions):
    """Opaque configuration, interpreted only by a custom adapter."""

    source_type: ClassVar[SourceType] = SourceType.CUSTOM_SOURCE

    kind: Literal["custom"] = "custom"
    configuration: bytes = b""


class RequestDataOptions(BaseOptions):
    """Declared schema of values supplied inline with each request."""

    source_type: ClassVar[SourceType] = SourceType.REQUEST_SOURCE

    kind: Literal["request"] = "request"
    request_schema: list[FeatureSpec] = pdt.Field(default_factory=list, alias="schema")

    def problems(self) -> list[str]:
        if not self.request_schema:
            return ["request sources must declare at least one field"]
        names = [f.name for f in self.request_schema]
        if len(set(names)) != len(names):
            return ["request schema field names must be unique"]
        return []


class PushOptions(BaseOptions):
    """Marker payload: data is pushed into the serving buffer out-of-band."""

    source_type: ClassVar[SourceType] = SourceType.PUSH_SOURCE

    kind: Literal["push"] = "push"


OptionsKind = Annotated[
    Union[
        FileOptions,
        BigQueryOptions,
        KafkaOptions,
        KinesisOptions,
        RedshiftOptions,
        RequestDataOptions,
        CustomSourceOptions,
        SnowflakeOptions,
        PushOptions,
        SparkOptions,
        TrinoOptions,
        AthenaOptions,
    ],
    pdt.Field(discriminator="kind"),
]

OPTIONS_BY_TYPE: dict[SourceType, type[BaseOptions]] = {
    cls.source_type: cls
    for cls in (
        FileOptions,
        BigQueryOptions,
        KafkaOptions,
        KinesisOptions,
        RedshiftOptions,
        RequestDataOptions,
        CustomSourceOptions,
        SnowflakeOptions,
        PushOptions,
        SparkOptions,
        TrinoOptions,
        AthenaOptions,
    )
}


# =============================================================================
# DataSource
# =============================================================================


class DataSource(SourceModel):
    """A named catalog entry describing one origin of feature data."""

    name: str
    project: str
    type: SourceType
    options: OptionsKind
    description: str = ""
    owner: str = ""
    tags: dict[str, str] = pdt.Field(default_factory=dict)
    field_mapping: dict[str, str] = pdt.Field(default_factory=dict)
    timestamp_field: str = ""
    created_timestamp_column: str = ""
    date_partition_column: str = ""
    data_source_class_type: str = ""
    join_keys: list[str] = pdt.Field(default_factory=list)
    source_schema: list[FeatureSpec] = pdt.Field(default_factory=list, alias="schema")
    batch_source: DataSource | None = None
    meta: SourceMeta = pdt.Field(default_factory=SourceMeta)

    @pdt.model_validator(mode="before")
    @classmethod
    def coerce_plain_data(cls, data: Any) -> Any:
        """Accept ``type`` by name and infer ``options.kind`` from it (YAML catalogs)."""
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        source_type = data.get("type")
        if isinstance(source_type, str) and source_type in SourceType.__members__:
            source_type = data["type"] = SourceType[source_type]
        options = data.get("options")
        if not isinstance(options, Mapping) or "kind" in options or not isinstance(source_type, int):
            return data
        if source_type in OPTIONS_BY_TYPE:
            kind = OPTIONS_BY_TYPE[SourceType(source_type)].model_fields["kind"].default
            data["options"] = {**options, "kind": kind}
        return data

    @pdt.model_validator(mode="after")
    def validate_invariants(self) -> DataSource:
        """Enforce catalog invariants at construction time."""
        self.check()
        return self

    def check(self) -> None:
        """Raise CatalogValidationError if any catalog invariant is violated."""
        problem = self._first_problem()
        if problem is not None:
            cause, fix = problem
            raise errors.CatalogValidationError(self.name or "(unnamed)", cause, fix)

    def _first_problem(self) -> tuple[str, str] | None:
        if not self.name:
            return "name must not be empty", "Give the source a name unique within its project."
        if not self.project:
            return "project must not be empty", "Set the project the source belongs to."
        if self.type is SourceType.INVALID:
            return "type INVALID is a sentinel", "Declare the source's backend family."

        options_type = type(self.options).source_type
        if options_type is not self.type:
            return (
                f"options payload is {options_type.name} but type is {self.type.name}",
                f"Use {OPTIONS_BY_TYPE[self.type].__name__} for a {self.type.name} source.",
            )
        for problem in self.options.problems():
            return problem, f"Fix the {type(self.options).__name__} payload."

        is_request = self.type is SourceType.REQUEST_SOURCE
        if not self.timestamp_field and not is_request:
            return "timestamp_field is required", "Name the column holding event time."

        canonical = list(self.field_mapping.values())
        if len(set(canonical)) != len(canonical):
            return (
                "field_mapping maps two origin columns to the same feature name",
                "Give every mapped column a distinct canonical name.",
            )

        if self.source_schema:
            columns = {spec.name for spec in self.source_schema}
            if len(columns) != len(self.source_schema):
                return "schema column names must be unique", "Remove the duplicate column."
            for column in (self.timestamp_field, self.created_timestamp_column):
                if column and column not in columns:
                    return (
                        f"column '{column}' is not in the source schema",
                        "Add the column to the schema or fix the column name.",
                    )

        if not self.join_keys and self.type not in (
            SourceType.REQUEST_SOURCE,
            SourceType.CUSTOM_SOURCE,
        ):
            return "join_keys must not be empty", "List the entity key columns."

        if self.batch_source is not None:
            if not self.type.supports_batch_source:
                return (
                    f"{self.type.name} sources cannot declare a batch_source",
                    "Only streaming and push sources take a historical fallback.",
                )
            if not self.batch_source.type.is_batch:
                return (
                    f"batch_source '{self.batch_source.name}' is {self.batch_source.type.name}",
                    "The historical fallback must be a batch source.",
                )
            if self.batch_source.batch_source is not None:
                return (
                    "batch_source chains are limited to one level",
                    f"Remove batch_source from '{self.batch_source.name}'.",
                )
            if not set(self.batch_source.join_keys) <= set(self.join_keys):
                return (
                    f"batch_source '{self.batch_source.name}' is keyed by columns the source lacks",
                    "Key the historical fallback by the same entity columns.",
                )
        return None

    @property
    def key(self) -> tuple[str, str]:
        """Catalog identity: (project, name)."""
        return self.project, self.name

    def canonical_name(self, column: str) -> str:
        """Canonical feature name for an origin column."""
        return self.field_mapping.get(column, column)

    def origin_column(self, feature_name: str) -> str:
        """Origin column for a canonical feature name."""
        for column, canonical in self.field_mapping.items():
            if canonical == feature_name:
                return column
        return feature_name

    def feature_names(self) -> list[str]:
        """Canonical names of the features this source can serve.

        Timestamp and join-key columns are bookkeeping, not features.
        """
        if isinstance(self.options, RequestDataOptions):
            return [spec.name for spec in self.options.request_schema]
        reserved = {self.timestamp_field, self.created_timestamp_column}
        names = []
        for spec in self.source_schema:
            if spec.name in reserved:
                continue
            canonical = self.canonical_name(spec.name)
            if canonical in self.join_keys:
                continue
            names.append(canonical)
        return names

    def entity_key(self, row: Mapping[str, Any]) -> str:
        """Canonical entity key of ``row`` restricted to this source's join keys.

        Raises:
            KeyError: If the row does not carry one of the join keys.
        """
        return types.canonical_key({k: row[k] for k in self.join_keys})

    def with_meta(self, meta: SourceMeta) -> DataSource:
        """Copy of this source carrying new freshness bookkeeping."""
        return self.model_copy(update={"meta": meta})


def source_from_dict(data: Mapping[str, Any]) -> DataSource:
    """Build a DataSource from plain data (YAML/JSON), mapping parse failures.

    Raises:
        CatalogValidationError: If the payload fails structural or invariant checks.
    """
    try:
        return DataSource.model_validate(dict(data))
    except pdt.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise errors.CatalogValidationError(
            str(data.get("name", "(unnamed)")),
            cause=details,
            fix="Check the source definition matches the DataSource schema.",
        ) from e


DataSource.model_rebuild()
