"""Configuration loading and validation for Quiver serving.

Configuration is loaded from quiver.yaml and validated using Pydantic.
The catalog file it points at holds the source definitions, either as a
binary DataSourceList or as a YAML list of sources.
"""

from __future__ import annotations

from datetime import timedelta
from functools import cache
from pathlib import Path

import omegaconf as oc
import pydantic as pdt
import pydantic_settings as pdts

import quiver.errors as errors
import quiver.online as online
import quiver.proto as proto
import quiver.sources as sources

BINARY_CATALOG_SUFFIXES = (".pb", ".bin")


class Settings(pdts.BaseSettings, strict=True, frozen=True, extra="forbid"):
    """Base settings class with strict validation."""

    pass


class ServingSettings(Settings):
    """Request handling limits shared by every lookup."""

    deadline_ms: float = pdt.Field(default=100.0, gt=0)
    max_staleness_seconds: float = pdt.Field(default=300.0, ge=0)
    batch_size: int = pdt.Field(default=256, ge=1)
    max_workers: int = pdt.Field(default=16, ge=1)
    max_retries: int = pdt.Field(default=1, ge=0)
    retry_backoff_ms: float = pdt.Field(default=10.0, ge=0)

    @property
    def deadline(self) -> timedelta:
        return timedelta(milliseconds=self.deadline_ms)

    @property
    def max_staleness(self) -> timedelta:
        return timedelta(seconds=self.max_staleness_seconds)


class QuiverSettings(Settings):
    """Root configuration loaded from quiver.yaml.

    Example quiver.yaml:
        project: ads
        catalog: catalog.yaml
        serving:
          deadline_ms: 50
          max_staleness_seconds: 600
        online_store:
          kind: sqlite
          path: .quiver/online.db
        push_buffer_size: 32
    """

    project: str
    catalog: str | None = None
    serving: ServingSettings = pdt.Field(default_factory=ServingSettings)
    online_store: online.OnlineStoreKind | None = None
    push_buffer_size: int = pdt.Field(default=16, ge=1)

    _config_path: Path | None = pdt.PrivateAttr(default=None)

    @property
    def catalog_path(self) -> Path | None:
        """Catalog location, relative paths resolved against quiver.yaml."""
        if self.catalog is None:
            return None
        path = Path(self.catalog)
        if not path.is_absolute() and self._config_path is not None:
            path = self._config_path.parent / path
        return path


def load_quiver_settings(path: Path | str = Path("quiver.yaml")) -> QuiverSettings:
    """Load and validate Quiver configuration from a YAML file.

    Args:
        path: Path to quiver.yaml file.

    Returns:
        Validated QuiverSettings instance.

    Raises:
        ConfigNotFoundError: If config file doesn't exist.
        ConfigValidationError: If config fails validation.
    """
    path = Path(path)

    if not path.exists():
        raise errors.ConfigNotFoundError(str(path))

    try:
        config = oc.OmegaConf.load(path)
        config_dict = oc.OmegaConf.to_container(config, resolve=True)
        settings = QuiverSettings.model_validate(config_dict)
        object.__setattr__(settings, "_config_path", path)
        return settings
    except pdt.ValidationError as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=_format_validation_errors(e),
        ) from e
    except oc.errors.OmegaConfBaseException as e:
        raise errors.ConfigValidationError(
            path=str(path),
            details=str(e),
        ) from e


def load_catalog(path: Path | str, project: str | None = None) -> list[sources.DataSource]:
    """Read source definitions from a binary or YAML catalog file.

    YAML catalogs are either a list of sources or a mapping with a
    ``sources`` list. Entries without a ``project`` inherit ``project``.

    Raises:
        ConfigNotFoundError: If the catalog file doesn't exist.
        ConfigValidationError: If the file is not a list of sources.
        CatalogValidationError: If a source violates a catalog invariant.
    """
    path = Path(path)
    if not path.exists():
        raise errors.ConfigNotFoundError(str(path))

    if path.suffix in BINARY_CATALOG_SUFFIXES:
        return proto.parse_source_list(path.read_bytes())

    try:
        data = oc.OmegaConf.to_container(oc.OmegaConf.load(path), resolve=True)
    except oc.errors.OmegaConfBaseException as e:
        raise errors.ConfigValidationError(path=str(path), details=str(e)) from e

    if isinstance(data, dict):
        data = data.get("sources", [])
    if not isinstance(data, list):
        raise errors.ConfigValidationError(path=str(path), details="catalog must be a list of sources")

    catalog = []
    for item in data:
        if not isinstance(item, dict):
            raise errors.ConfigValidationError(path=str(path), details=f"catalog entry is not a mapping: {item!r}")
        if project is not None:
            item.setdefault("project", project)
            if isinstance(item.get("batch_source"), dict):
                item["batch_source"].setdefault("project", item["project"])
        catalog.append(sources.source_from_dict(item))
    return catalog


def _format_validation_errors(error: pdt.ValidationError) -> str:
    """Format Pydantic validation errors into readable messages."""
    messages = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"])
        msg = err["msg"]
        messages.append(f"  - {loc}: {msg}")
    return "\n".join(messages)


@cache
def get_settings() -> QuiverSettings:
    """Get cached settings instance. Use for CLI commands.

    For testing or when you need to load from a specific path,
    use load_quiver_settings() directly.
    """
    return load_quiver_settings()
