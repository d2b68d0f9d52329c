"""Quiver CLI: inspect the serving catalog and run online lookups."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Annotated

import cyclopts
from loguru import logger
from rich.console import Console

import quiver.errors as errors
import quiver.output as output
import quiver.serving as serving
import quiver.settings as settings

# Version is defined here and in pyproject.toml
__version__ = "0.1.0"

console = Console()

app = cyclopts.App(
    name="quiver",
    help="Point-in-time correct online feature serving.",
    version=__version__,
)

ConfigOption = Annotated[
    Path,
    cyclopts.Parameter(name="--config", help="Path to quiver.yaml"),
]


def _handle_error(e: errors.QuiverError) -> None:
    """Display a structured error message."""
    console.print(f"[bold red]Error:[/bold red] {e.context}\n")
    console.print(f"[yellow]Cause:[/yellow] {e.cause}\n")
    console.print(f"[green]Fix:[/green] {e.fix}")


def _build_server(config: Path) -> serving.FeatureServer:
    t0 = time.perf_counter()
    quiver_settings = settings.load_quiver_settings(config)
    server = serving.FeatureServer.from_settings(quiver_settings)
    logger.debug(f"Startup: {(time.perf_counter() - t0) * 1000:.1f}ms")
    return server


@app.command
def sources(
    project: Annotated[
        str | None,
        cyclopts.Parameter(help="Only list sources of this project"),
    ] = None,
    config: ConfigOption = Path("quiver.yaml"),
):
    """List registered sources with version and content hash.

    Examples:
        quiver sources
        quiver sources ads
    """
    try:
        with _build_server(config) as server:
            entries = server.registry.snapshot().entries()
        if project is not None:
            entries = [e for e in entries if e.source.project == project]
        output.render_sources(entries)
    except errors.QuiverError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def freshness(
    json_output: Annotated[
        bool,
        cyclopts.Parameter(name="--json", help="Output as JSON"),
    ] = False,
    config: ConfigOption = Path("quiver.yaml"),
):
    """Show how far behind wall-clock each source's newest data is.

    Streaming sources are reported from the online store's stored event
    times. Exits 1 when any source is stale.
    """
    try:
        with _build_server(config) as server:
            catalog = [entry.source for entry in server.registry.snapshot().entries()]
            statuses = server.tracker.report_status(catalog, server.settings.serving.max_staleness)
    except errors.QuiverError as e:
        _handle_error(e)
        raise SystemExit(1)

    if json_output:
        payload = {
            "sources": [
                {
                    "source": f"{s.project}/{s.source_name}",
                    "latest_event_timestamp": s.latest_event_timestamp.isoformat()
                    if s.latest_event_timestamp
                    else None,
                    "staleness_seconds": s.data_staleness.total_seconds() if s.data_staleness else None,
                    "status": s.status,
                }
                for s in statuses
            ],
            "has_stale": any(s.status == "stale" for s in statuses),
        }
        console.print(json.dumps(payload, indent=2), markup=False)
    else:
        output.render_freshness(statuses)

    if any(s.status == "stale" for s in statuses):
        raise SystemExit(1)


@app.command
def lookup(
    features: Annotated[
        list[str],
        cyclopts.Parameter(help="Feature references, 'source:feature' or 'project/source:feature'"),
    ],
    *,
    entity: Annotated[
        list[str],
        cyclopts.Parameter(name="--entity", help="Entity row as a JSON object; repeat for more rows"),
    ],
    as_of: Annotated[
        str | None,
        cyclopts.Parameter(name="--as-of", help="ISO 8601 cutoff (default: now)"),
    ] = None,
    json_output: Annotated[
        bool,
        cyclopts.Parameter(name="--json", help="Output as JSON"),
    ] = False,
    config: ConfigOption = Path("quiver.yaml"),
):
    """Fetch online features for one or more entities.

    Examples:
        quiver lookup clicks:click_count --entity '{"user_id": 1}'
        quiver lookup clicks:click_count --entity '{"user_id": 1}' --as-of 2024-01-01T00:00:00Z
    """
    try:
        entity_rows = [json.loads(raw) for raw in entity]
    except json.JSONDecodeError as e:
        output.render_error(f"--entity must be a JSON object: {e}")
        raise SystemExit(1)
    if not all(isinstance(row, dict) for row in entity_rows):
        output.render_error("--entity must be a JSON object")
        raise SystemExit(1)

    try:
        with _build_server(config) as server:
            t0 = time.perf_counter()
            response = server.get_online_features(
                serving.OnlineFeaturesRequest(
                    entity_rows=entity_rows,
                    feature_references=features,
                    as_of=as_of,
                )
            )
            logger.debug(f"Lookup: {(time.perf_counter() - t0) * 1000:.1f}ms")
    except errors.QuiverError as e:
        _handle_error(e)
        raise SystemExit(1)

    if json_output:
        console.print(json.dumps(response.to_dict(), indent=2), markup=False)
    else:
        output.render_lookup(response, entity_rows)
