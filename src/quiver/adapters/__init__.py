from __future__ import annotations

from collections.abc import Mapping

import quiver.sources as sources
from quiver.online.base import BaseOnlineStore
from quiver.online.push import PushBuffer

from .base import AdapterTable, EntityKey, LookupRow, StoreAdapter, latest_per_entity
from .file import FileAdapter
from .ibis_table import ConnectionFactory, IbisTableAdapter
from .online import OnlineStoreAdapter, PushAdapter, online_table_name, report_online_freshness
from .request import RequestSourceAdapter

WAREHOUSE_TYPES = (
    sources.SourceType.BATCH_BIGQUERY,
    sources.SourceType.BATCH_REDSHIFT,
    sources.SourceType.BATCH_SNOWFLAKE,
    sources.SourceType.BATCH_TRINO,
    sources.SourceType.BATCH_ATHENA,
    sources.SourceType.BATCH_SPARK,
)


def default_adapter_table(
    online_store: BaseOnlineStore | None = None,
    push_buffer: PushBuffer | None = None,
    connections: Mapping[sources.SourceType, ConnectionFactory] | None = None,
) -> AdapterTable:
    """Build the standard adapter table.

    File and request sources are always served. Streaming sources need an
    online store, push sources a push buffer, and warehouse families a
    connection factory. Custom sources need a caller-registered adapter.
    """
    table = AdapterTable()
    table.register(sources.SourceType.BATCH_FILE, FileAdapter())
    table.register(sources.SourceType.REQUEST_SOURCE, RequestSourceAdapter())
    if online_store is not None:
        stream_adapter = OnlineStoreAdapter(online_store)
        table.register(sources.SourceType.STREAM_KAFKA, stream_adapter)
        table.register(sources.SourceType.STREAM_KINESIS, stream_adapter)
    if push_buffer is not None:
        table.register(sources.SourceType.PUSH_SOURCE, PushAdapter(push_buffer))
    for source_type, connect in (connections or {}).items():
        if source_type not in WAREHOUSE_TYPES:
            raise ValueError(f"{source_type.name} is not served through an Ibis connection")
        table.register(source_type, IbisTableAdapter(connect))
    return table


__all__ = [
    "AdapterTable",
    "EntityKey",
    "FileAdapter",
    "IbisTableAdapter",
    "LookupRow",
    "OnlineStoreAdapter",
    "PushAdapter",
    "RequestSourceAdapter",
    "StoreAdapter",
    "WAREHOUSE_TYPES",
    "default_adapter_table",
    "latest_per_entity",
    "online_table_name",
    "report_online_freshness",
]
