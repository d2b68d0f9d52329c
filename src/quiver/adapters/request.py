"""Request-time source adapter.

Request sources never touch storage: the caller supplies the declared
values inline on each entity row and the adapter echoes them back, stamped
with the request's as_of time.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

import quiver.errors as errors
import quiver.sources as sources
from quiver.adapters import base


class RequestSourceAdapter(base.StoreAdapter):
    """Echoes inline request values for REQUEST_SOURCE entries.

    A declared field the caller omitted (or sent as null) is left out of
    the row, which the merge step reports as Missing. A value of the wrong
    type is rejected.
    """

    inline = True

    def point_lookup(
        self,
        source: sources.DataSource,
        options: sources.BaseOptions,
        entity_keys: Sequence[base.EntityKey],
        fields: Sequence[str],
        as_of: datetime,
    ) -> list[base.LookupRow]:
        if not isinstance(options, sources.RequestDataOptions):
            raise errors.BackendRejectedError(source.name, f"expected request options, got {type(options).__name__}")
        declared = {spec.name: spec.value_type for spec in options.request_schema}

        rows = []
        for entity in entity_keys:
            values = {}
            for name in fields:
                value = entity.values.get(name)
                if value is None:
                    continue
                value_type = declared.get(name, sources.ValueType.INVALID)
                if not value_type.accepts(value):
                    raise errors.BackendRejectedError(
                        source.name,
                        cause=f"request value for '{name}' is not {value_type.name}",
                        fix=f"Send '{name}' as a {value_type.name} value.",
                    )
                values[name] = value
            rows.append(base.LookupRow(entity_key=entity.key, values=values, event_timestamp=as_of))
        return rows
