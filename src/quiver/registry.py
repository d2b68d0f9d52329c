"""In-memory source catalog for the serving path.

The registry holds one immutable snapshot of every project's sources.
Mutations (from the control plane) build a new snapshot and swap it in
under a lock; readers never lock. A request takes one snapshot up front
and resolves every reference against it, so a catalog reload mid-request
is never observed as a torn read.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

import quiver.errors as errors
import quiver.sources as sources

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogEntry:
    """A registered source with content-based versioning.

    The version is incremented on each replace that changes the spec_hash.
    """

    source: sources.DataSource
    spec_hash: str
    version: int


def compute_spec_hash(source: sources.DataSource) -> str:
    """SHA256 of the source's canonical JSON, excluding freshness meta."""
    spec_json = source.model_dump_json(exclude={"meta"}, by_alias=True)
    return hashlib.sha256(spec_json.encode()).hexdigest()


class RegistrySnapshot:
    """Immutable view of the catalog at one instant."""

    def __init__(self, entries: Mapping[str, Mapping[str, CatalogEntry]]) -> None:
        self._entries = entries

    def lookup(self, project: str, name: str) -> sources.DataSource:
        """Fetch a source by project and name.

        Raises:
            SourceNotFoundError: If the source is not registered.
        """
        return self.entry(project, name).source

    def entry(self, project: str, name: str) -> CatalogEntry:
        project_entries = self._entries.get(project, {})
        entry = project_entries.get(name)
        if entry is None:
            raise errors.SourceNotFoundError(project, name, list(project_entries))
        return entry

    def contains(self, project: str, name: str) -> bool:
        return name in self._entries.get(project, {})

    def list(self, project: str) -> list[sources.DataSource]:
        """All sources of a project, sorted by name."""
        project_entries = self._entries.get(project, {})
        return [project_entries[name].source for name in sorted(project_entries)]

    def projects(self) -> list[str]:
        return sorted(self._entries)

    def entries(self) -> list[CatalogEntry]:
        """Every entry, ordered by project then name."""
        return [
            self._entries[project][name]
            for project in self.projects()
            for name in sorted(self._entries[project])
        ]


def _freeze(entries: dict[str, dict[str, CatalogEntry]]) -> Mapping[str, Mapping[str, CatalogEntry]]:
    return MappingProxyType({p: MappingProxyType(dict(e)) for p, e in entries.items()})


class SourceRegistry:
    """Catalog of source definitions, keyed by (project, name).

    Example:
        registry = SourceRegistry()
        registry.register(clicks)
        registry.lookup("ads", "clicks")
    """

    def __init__(self, initial: Iterable[sources.DataSource] = ()) -> None:
        self._write_lock = threading.Lock()
        self._snapshot = RegistrySnapshot(_freeze({}))
        for source in initial:
            self.register(source)

    def snapshot(self) -> RegistrySnapshot:
        """Current catalog snapshot. Never blocks."""
        return self._snapshot

    def register(self, source: sources.DataSource | Mapping[str, Any]) -> CatalogEntry:
        """Add a new source to its project.

        Raises:
            CatalogValidationError: If the source violates a catalog invariant
                or its name is already taken within the project. The catalog
                is unchanged in that case.
        """
        source = self._coerce(source)
        with self._write_lock:
            if self._snapshot.contains(source.project, source.name):
                raise errors.CatalogValidationError(
                    source.name,
                    cause=f"a source named '{source.name}' already exists in project '{source.project}'",
                    fix="Pick a unique name or replace the existing source.",
                )
            entry = CatalogEntry(source=source, spec_hash=compute_spec_hash(source), version=1)
            self._swap([entry])
        logger.info("Registered source %s/%s", source.project, source.name)
        return entry

    def replace(self, source: sources.DataSource | Mapping[str, Any]) -> CatalogEntry:
        """Atomically replace (or add) one source entry."""
        source = self._coerce(source)
        with self._write_lock:
            entry = self._next_entry(source)
            self._swap([entry])
        return entry

    def load(self, items: Iterable[sources.DataSource | Mapping[str, Any]]) -> list[CatalogEntry]:
        """Replace-or-add many sources in one atomic swap.

        Every item is validated before anything is swapped in, so a bad
        entry leaves the catalog untouched.
        """
        coerced = [self._coerce(item) for item in items]
        seen: set[tuple[str, str]] = set()
        for source in coerced:
            if source.key in seen:
                raise errors.CatalogValidationError(
                    source.name,
                    cause=f"duplicate entry for '{source.name}' in project '{source.project}'",
                    fix="Remove the duplicate from the source list.",
                )
            seen.add(source.key)
        with self._write_lock:
            entries = [self._next_entry(source) for source in coerced]
            self._swap(entries)
        logger.info("Loaded %d source(s) into the registry", len(entries))
        return entries

    def lookup(self, project: str, name: str) -> sources.DataSource:
        return self._snapshot.lookup(project, name)

    def list(self, project: str) -> list[sources.DataSource]:
        return self._snapshot.list(project)

    def _coerce(self, source: sources.DataSource | Mapping[str, Any]) -> sources.DataSource:
        if isinstance(source, sources.DataSource):
            # Re-check in case the model was built without validation.
            source.check()
            return source
        return sources.source_from_dict(source)

    def _next_entry(self, source: sources.DataSource) -> CatalogEntry:
        spec_hash = compute_spec_hash(source)
        if not self._snapshot.contains(source.project, source.name):
            return CatalogEntry(source=source, spec_hash=spec_hash, version=1)
        current = self._snapshot.entry(source.project, source.name)
        if current.spec_hash == spec_hash:
            logger.debug("Source %s/%s unchanged", source.project, source.name)
            return CatalogEntry(source=source, spec_hash=spec_hash, version=current.version)
        logger.info("Replaced source %s/%s (v%d)", source.project, source.name, current.version + 1)
        return CatalogEntry(source=source, spec_hash=spec_hash, version=current.version + 1)

    def _swap(self, entries: list[CatalogEntry]) -> None:
        current = self._snapshot._entries
        staged: dict[str, dict[str, CatalogEntry]] = {p: dict(e) for p, e in current.items()}
        for entry in entries:
            staged.setdefault(entry.source.project, {})[entry.source.name] = entry
        self._snapshot = RegistrySnapshot(_freeze(staged))
