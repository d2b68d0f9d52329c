"""Point-in-time merge of dispatched candidates into feature vectors.

For each entity row and each requested feature the engine picks, among the
candidates produced for the feature's source (online copy plus optional
historical fallback), the one with the latest event time not after as_of.
Ties are broken by created timestamp, then by tier (online beats
fallback), then by scan/arrival ordinal. No candidate means Missing;
a captured backend failure means that failure's error kind.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

import pydantic as pdt

import quiver.errors as errors
from quiver.dispatcher import Candidate, DispatchResult
from quiver.resolver import Resolution

logger = logging.getLogger(__name__)


class FeatureStatus(str, enum.Enum):
    """Exactly one of these tags every feature of every entity."""

    VALUE = "value"
    MISSING = "missing"
    UNKNOWN_FEATURE = "unknown_feature"
    UNKNOWN_FIELD = "unknown_field"
    NOT_FOUND = "not_found"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    BACKEND_REJECTED = "backend_rejected"
    TIMEOUT = "timeout"
    INVALID_REQUEST = "invalid_request"


class FeatureValue(pdt.BaseModel, frozen=True):
    """One feature's outcome for one entity."""

    status: FeatureStatus
    value: Any = None
    event_timestamp: datetime | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is FeatureStatus.VALUE

    @classmethod
    def missing(cls) -> FeatureValue:
        return cls(status=FeatureStatus.MISSING)

    @classmethod
    def from_error(cls, error: errors.QuiverError) -> FeatureValue:
        return cls(status=FeatureStatus(error.kind), error=error.cause)


def select_candidate(candidates: Sequence[Candidate], as_of: datetime) -> Candidate | None:
    """The winning candidate with event time <= as_of, or None."""
    best: Candidate | None = None
    for candidate in candidates:
        if candidate.row.event_timestamp > as_of:
            logger.debug("Dropping future row for %s", candidate.row.entity_key)
            continue
        if best is None or candidate.sort_key() > best.sort_key():
            best = candidate
    return best


class MergeEngine:
    """Assembles per-entity feature vectors in request order."""

    def merge(
        self,
        resolution: Resolution,
        dispatched: DispatchResult,
        row_count: int,
        as_of: datetime,
    ) -> list[dict[str, FeatureValue]]:
        """Build one ``{feature label: FeatureValue}`` mapping per entity row.

        The mapping preserves the order of the requested references; every
        reference appears in every row.
        """
        vectors: list[dict[str, FeatureValue]] = []
        for row_index in range(row_count):
            vector: dict[str, FeatureValue] = {}
            for ref_index, reference in enumerate(resolution.references):
                vector[reference.label] = self._feature_value(
                    resolution, dispatched, ref_index, row_index, as_of
                )
            vectors.append(vector)
        return vectors

    def _feature_value(
        self,
        resolution: Resolution,
        dispatched: DispatchResult,
        ref_index: int,
        row_index: int,
        as_of: datetime,
    ) -> FeatureValue:
        failure = resolution.failures.get(ref_index)
        if failure is not None:
            return FeatureValue.from_error(failure)

        feature = resolution.resolved[ref_index]
        source_key = feature.source.key
        outcome = dispatched.outcomes[source_key]
        entity_key = dispatched.row_keys[source_key][row_index]

        backend_failure = outcome.failures.get(entity_key)
        if backend_failure is not None:
            return FeatureValue.from_error(backend_failure)

        winner = select_candidate(outcome.candidates.get(entity_key, []), as_of)
        if winner is None:
            return FeatureValue.missing()
        value = winner.row.values.get(feature.field_name)
        if value is None:
            return FeatureValue.missing()
        return FeatureValue(
            status=FeatureStatus.VALUE,
            value=value,
            event_timestamp=winner.row.event_timestamp,
        )
