"""File source adapter.

Reads parquet, CSV, JSON or Delta files (local paths or object storage
URIs) through an in-memory DuckDB connection and runs the shared Ibis
point-lookup expression over them.

Tie order: with no created-timestamp column, rows sharing an event time
are ordered by their position in the file scan, and the later row wins.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import quiver.errors as errors
import quiver.sources as sources
from quiver.adapters import base
from quiver.adapters import ibis_table

if TYPE_CHECKING:
    import ibis
    import ibis.expr.types as ir
    import pyarrow as pa

logger = logging.getLogger(__name__)


class FileAdapter(base.StoreAdapter):
    """Point lookups over BATCH_FILE sources.

    Example:
        adapter = FileAdapter()
        rows = adapter.point_lookup(source, source.options, keys, ["spend"], as_of)
    """

    def __init__(self, connect: ibis_table.ConnectionFactory | None = None) -> None:
        self.connect = connect or ibis_table.duckdb_connection

    def point_lookup(
        self,
        source: sources.DataSource,
        options: sources.BaseOptions,
        entity_keys: Sequence[base.EntityKey],
        fields: Sequence[str],
        as_of: datetime,
    ) -> list[base.LookupRow]:
        if not isinstance(options, sources.FileOptions):
            raise errors.BackendRejectedError(source.name, f"expected file options, got {type(options).__name__}")
        try:
            conn = self.connect()
            table = self._read(conn, options)
            return ibis_table.run_point_lookup(table, source, entity_keys, fields, as_of)
        except errors.BackendError:
            raise
        except Exception as e:
            raise ibis_table.classify_backend_error(source, e) from e

    def _read(self, conn: "ibis.BaseBackend", options: sources.FileOptions) -> "ir.Table":
        """Register the file with the connection according to its format."""
        uri = options.uri.removeprefix("file://")
        if uri.startswith("s3://") and options.s3_endpoint_override:
            conn.raw_sql("INSTALL httpfs")
            conn.raw_sql("LOAD httpfs")
            endpoint = options.s3_endpoint_override.split("://", 1)[-1]
            conn.raw_sql(f"SET s3_endpoint = '{endpoint}'")

        logger.debug("Reading %s file %s", options.file_format, uri)
        if options.file_format == "parquet":
            return conn.read_parquet(uri)
        if options.file_format == "csv":
            return conn.read_csv(uri)
        if options.file_format == "json":
            return conn.read_json(uri)
        return conn.create_table("delta_source", _read_delta(uri, options))


def _read_delta(uri: str, options: sources.FileOptions) -> "pa.Table":
    """Load the current version of a Delta table."""
    import deltalake as dl

    storage_options = None
    if options.s3_endpoint_override:
        storage_options = {"AWS_ENDPOINT_URL": options.s3_endpoint_override}
    return dl.DeltaTable(uri, storage_options=storage_options).to_pyarrow_table()
