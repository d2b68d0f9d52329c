"""Feature reference resolution.

Maps ``project/source:feature`` references to the owning source and the
canonical field name within it. Resolution is pure: it reads one registry
snapshot and never touches a backend.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence

import pydantic as pdt

import quiver.errors as errors
import quiver.registry as registry
import quiver.sources as sources


class FeatureReference(pdt.BaseModel, frozen=True, extra="forbid"):
    """Reference to one feature of one source within a project."""

    project: str
    source_name: str
    feature_name: str

    @classmethod
    def parse(cls, text: str, default_project: str | None = None) -> FeatureReference:
        """Parse ``source:feature`` or ``project/source:feature``.

        Raises:
            ValidationError: If the reference is malformed.
        """
        project = default_project
        body = text
        if "/" in text:
            project, _, body = text.partition("/")
        source_name, sep, feature_name = body.partition(":")
        if not sep or not project or not source_name or not feature_name or ":" in feature_name:
            raise errors.ValidationError(
                context=f"Parsing feature reference '{text}'",
                cause="expected 'source:feature' or 'project/source:feature'",
                fix="Write references as '<source>:<feature>', optionally prefixed with '<project>/'.",
            )
        return cls(project=project, source_name=source_name, feature_name=feature_name)

    @property
    def label(self) -> str:
        """Response key for this feature."""
        return f"{self.source_name}:{self.feature_name}"

    def __str__(self) -> str:
        return f"{self.project}/{self.label}"


@dataclasses.dataclass(frozen=True)
class ResolvedFeature:
    """A reference bound to its source."""

    reference: FeatureReference
    source: sources.DataSource
    field_name: str  # canonical feature name
    column: str  # origin column name


@dataclasses.dataclass
class SourceGroup:
    """All resolved features served by one source, in first-seen order."""

    source: sources.DataSource
    features: list[ResolvedFeature] = dataclasses.field(default_factory=list)

    @property
    def field_names(self) -> list[str]:
        seen: dict[str, None] = {}
        for feature in self.features:
            seen.setdefault(feature.field_name, None)
        return list(seen)


@dataclasses.dataclass
class Resolution:
    """Outcome of resolving a batch of references.

    ``resolved`` and ``failures`` are keyed by the reference's position in
    the request; every position appears in exactly one of them.
    """

    references: list[FeatureReference]
    resolved: dict[int, ResolvedFeature]
    failures: dict[int, errors.NotFoundError]
    groups: dict[tuple[str, str], SourceGroup]


class SourceResolver:
    """Resolves feature references against a registry snapshot."""

    def __init__(self, snapshot: registry.RegistrySnapshot) -> None:
        self._snapshot = snapshot

    def resolve(self, reference: FeatureReference) -> ResolvedFeature:
        """Bind a reference to its source and canonical field.

        A source that declares no schema accepts any field name; the
        absence of a value then surfaces as Missing at merge time.

        Raises:
            UnknownFeatureError: The source name is not registered.
            UnknownFieldError: The field is not in the source's canonical schema.
        """
        if not self._snapshot.contains(reference.project, reference.source_name):
            raise errors.UnknownFeatureError(str(reference), reference.project)
        source = self._snapshot.lookup(reference.project, reference.source_name)

        available = source.feature_names()
        declares_schema = bool(source.source_schema) or source.type is sources.SourceType.REQUEST_SOURCE
        if declares_schema and reference.feature_name not in available:
            raise errors.UnknownFieldError(str(reference), available)

        return ResolvedFeature(
            reference=reference,
            source=source,
            field_name=reference.feature_name,
            column=source.origin_column(reference.feature_name),
        )

    def resolve_many(self, references: Sequence[FeatureReference]) -> Resolution:
        """Resolve many references, grouping them by source.

        Failures are isolated per reference and never abort siblings.
        """
        resolved: dict[int, ResolvedFeature] = {}
        failures: dict[int, errors.NotFoundError] = {}
        groups: dict[tuple[str, str], SourceGroup] = {}
        for index, reference in enumerate(references):
            try:
                feature = self.resolve(reference)
            except errors.NotFoundError as e:
                failures[index] = e
                continue
            resolved[index] = feature
            group = groups.setdefault(feature.source.key, SourceGroup(source=feature.source))
            group.features.append(feature)
        return Resolution(
            references=list(references),
            resolved=resolved,
            failures=failures,
            groups=groups,
        )
