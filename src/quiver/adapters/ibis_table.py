"""Point lookups over Ibis tables (files and warehouse queries).

The lookup is expressed once as an Ibis expression and compiles to the
backend's SQL: filter to the requested entities and ``event <= as_of``,
rank rows per entity by event time, created time and scan ordinal (all
descending) and keep rank 0. The same expression serves DuckDB over local
files and any warehouse Ibis can connect to.
"""

from __future__ import annotations

import decimal
import functools
import logging
import operator
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import duckdb

import quiver.errors as errors
import quiver.sources as sources
import quiver.types as types
from quiver.adapters import base

if TYPE_CHECKING:
    import ibis
    import ibis.expr.types as ir

logger = logging.getLogger(__name__)

_ORDINAL = "__quiver_ordinal"
_RANK = "__quiver_rank"

ConnectionFactory = Callable[[], "ibis.BaseBackend"]


def _ensure_ibis_duckdb() -> None:
    """Suppress decimal.InvalidOperation trap before importing ibis.duckdb.

    sqlglot's Oracle compiler triggers decimal.InvalidOperation on Python
    3.14+ when ibis loads all SQL compiler backends.
    """
    decimal.getcontext().traps[decimal.InvalidOperation] = False


def duckdb_connection() -> "ibis.BaseBackend":
    """Create an in-memory DuckDB connection via Ibis."""
    _ensure_ibis_duckdb()
    import ibis

    return ibis.duckdb.connect()


def _as_of_literal(table: "ir.Table", column: str, as_of: datetime):
    """Compare in the column's own timezone flavour (naive columns hold UTC)."""
    import ibis

    dtype = table.schema()[column]
    if getattr(dtype, "timezone", None) is None:
        return ibis.literal(as_of.replace(tzinfo=None))
    return ibis.literal(as_of)


def point_lookup_expr(
    table: "ir.Table",
    source: sources.DataSource,
    entity_keys: Sequence[base.EntityKey],
    fields: Sequence[str],
    as_of: datetime,
) -> tuple["ir.Table", list[str]]:
    """Build the point-lookup expression.

    Returns:
        The expression and the canonical feature names it selects. Requested
        fields whose origin column is absent from the table are skipped;
        they surface as Missing.
    """
    import ibis

    columns = set(table.columns)
    key_columns = [source.origin_column(k) for k in source.join_keys]
    ts_col = source.timestamp_field
    created_col = source.created_timestamp_column or None
    for required in (*key_columns, ts_col, *([created_col] if created_col else [])):
        if required not in columns:
            raise errors.BackendRejectedError(
                source.name,
                cause=f"column '{required}' is not present in the backend table",
                fix="Fix the source's join_keys, timestamp_field or field_mapping.",
            )
    selected = [name for name in fields if source.origin_column(name) in columns]

    t = table.mutate(**{_ORDINAL: ibis.row_number()})
    t = t.filter(t[ts_col] <= _as_of_literal(t, ts_col, as_of))

    if len(key_columns) == 1:
        column = key_columns[0]
        t = t.filter(t[column].isin([e.values[source.join_keys[0]] for e in entity_keys]))
    else:
        matches = [
            functools.reduce(
                operator.and_,
                [t[source.origin_column(k)] == e.values[k] for k in source.join_keys],
            )
            for e in entity_keys
        ]
        t = t.filter(functools.reduce(operator.or_, matches))

    order_by = [ibis.desc(t[ts_col])]
    if created_col:
        order_by.append(ibis.desc(t[created_col]))
    order_by.append(ibis.desc(t[_ORDINAL]))
    rank = ibis.row_number().over(group_by=[t[c] for c in key_columns], order_by=order_by)
    ranked = t.mutate(**{_RANK: rank})
    ranked = ranked.filter(ranked[_RANK] == 0)

    keep = [*key_columns, ts_col, *([created_col] if created_col else []), _ORDINAL]
    keep += [source.origin_column(name) for name in selected if source.origin_column(name) not in keep]
    return ranked.select(*keep), selected


def rows_from_records(
    records: Sequence[Mapping],
    source: sources.DataSource,
    entity_keys: Sequence[base.EntityKey],
    fields: Sequence[str],
) -> list[base.LookupRow]:
    """Map scanned records back to request entity keys.

    A batch source keyed by a subset of its parent's join keys serves every
    request key that shares the scanned key, so one record can yield
    several rows.
    """
    by_values: dict[str, list[str]] = {}
    for e in entity_keys:
        by_values.setdefault(types.canonical_key({k: e.values[k] for k in source.join_keys}), []).append(e.key)
    rows = []
    for record in records:
        scanned = types.canonical_key({k: record[source.origin_column(k)] for k in source.join_keys})
        created = record.get(source.created_timestamp_column) if source.created_timestamp_column else None
        for entity_key in by_values.get(scanned, []):
            rows.append(
                base.LookupRow(
                    entity_key=entity_key,
                    values={name: record[source.origin_column(name)] for name in fields},
                    event_timestamp=types.ensure_utc(record[source.timestamp_field]),
                    created_timestamp=types.ensure_utc(created) if created is not None else None,
                    ordinal=int(record[_ORDINAL]),
                )
            )
    return rows


def classify_backend_error(source: sources.DataSource, exc: Exception) -> errors.BackendError:
    """Map a driver exception to the retryable/terminal taxonomy."""
    if isinstance(exc, (duckdb.IOException, duckdb.HTTPException, ConnectionError, TimeoutError, OSError)):
        return errors.BackendUnavailableError(source.name, f"{type(exc).__name__}: {exc}")
    return errors.BackendRejectedError(source.name, f"{type(exc).__name__}: {exc}")


def run_point_lookup(
    table: "ir.Table",
    source: sources.DataSource,
    entity_keys: Sequence[base.EntityKey],
    fields: Sequence[str],
    as_of: datetime,
) -> list[base.LookupRow]:
    """Execute the point-lookup expression and return one row per entity."""
    if not entity_keys:
        return []
    expr, selected = point_lookup_expr(table, source, entity_keys, fields, as_of)
    records = expr.to_pyarrow().to_pylist()
    logger.debug("Point lookup on '%s' matched %d of %d entities", source.name, len(records), len(entity_keys))
    return base.latest_per_entity(rows_from_records(records, source, entity_keys, selected), as_of)


class IbisTableAdapter(base.StoreAdapter):
    """Point lookups against a warehouse reachable through an Ibis backend.

    Serves BigQuery, Redshift, Snowflake, Trino, Athena and Spark sources.
    The options payload addresses either a table (with optional
    database/schema qualifiers) or a query; Spark may also name a path.

    Example:
        adapter = IbisTableAdapter(lambda: ibis.trino.connect(host="trino"))
        adapters.register(SourceType.BATCH_TRINO, adapter)
    """

    def __init__(self, connect: ConnectionFactory) -> None:
        self.connect = connect

    def point_lookup(
        self,
        source: sources.DataSource,
        options: sources.BaseOptions,
        entity_keys: Sequence[base.EntityKey],
        fields: Sequence[str],
        as_of: datetime,
    ) -> list[base.LookupRow]:
        try:
            conn = self.connect()
            table = self._address(conn, options)
            return run_point_lookup(table, source, entity_keys, fields, as_of)
        except errors.BackendError:
            raise
        except Exception as e:
            raise classify_backend_error(source, e) from e

    def _address(self, conn: "ibis.BaseBackend", options: sources.BaseOptions) -> "ir.Table":
        query = getattr(options, "query", None)
        if query:
            return conn.sql(query)
        if isinstance(options, sources.SparkOptions) and options.path:
            if (options.file_format or "parquet") == "csv":
                return conn.read_csv(options.path)
            return conn.read_parquet(options.path)

        table = getattr(options, "table")
        database = getattr(options, "database", None)
        db_schema = getattr(options, "db_schema", None)
        if database and db_schema:
            return conn.table(table, database=(database, db_schema))
        if database or db_schema:
            return conn.table(table, database=database or db_schema)
        return conn.table(table)
