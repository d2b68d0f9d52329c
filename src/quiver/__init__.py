from .adapters import AdapterTable, StoreAdapter, default_adapter_table
from .freshness import FreshnessTracker
from .merge import FeatureStatus, FeatureValue
from .online import PushBuffer, SqliteOnlineStore
from .registry import SourceRegistry
from .resolver import FeatureReference
from .serving import FeatureServer, OnlineFeaturesRequest, OnlineFeaturesResponse
from .settings import QuiverSettings, load_quiver_settings
from .sources import (
    AthenaOptions,
    BigQueryOptions,
    CustomSourceOptions,
    DataSource,
    FeatureSpec,
    FileOptions,
    KafkaOptions,
    KinesisOptions,
    PushOptions,
    RedshiftOptions,
    RequestDataOptions,
    SnowflakeOptions,
    SourceType,
    SparkOptions,
    TrinoOptions,
    ValueType,
)

__all__ = [
    # catalog
    "DataSource",
    "SourceType",
    "ValueType",
    "FeatureSpec",
    "SourceRegistry",
    # options
    "FileOptions",
    "BigQueryOptions",
    "KafkaOptions",
    "KinesisOptions",
    "RedshiftOptions",
    "RequestDataOptions",
    "CustomSourceOptions",
    "SnowflakeOptions",
    "PushOptions",
    "SparkOptions",
    "TrinoOptions",
    "AthenaOptions",
    # serving
    "FeatureServer",
    "FeatureReference",
    "OnlineFeaturesRequest",
    "OnlineFeaturesResponse",
    "FeatureValue",
    "FeatureStatus",
    "FreshnessTracker",
    # backends
    "AdapterTable",
    "StoreAdapter",
    "default_adapter_table",
    "PushBuffer",
    "SqliteOnlineStore",
    # config
    "QuiverSettings",
    "load_quiver_settings",
]
