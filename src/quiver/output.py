"""Rich-based output formatting for CLI."""

from __future__ import annotations

from datetime import datetime, timedelta

from rich.console import Console
from rich.table import Table

import quiver.freshness as freshness
import quiver.merge as merge
import quiver.registry as registry
import quiver.serving as serving

# Global console instance
console = Console()

_STATUS_STYLE = {
    "fresh": "green",
    "stale": "yellow",
    "unknown": "dim",
}


def _format_ts(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _format_age(value: timedelta | None) -> str:
    if value is None:
        return "-"
    seconds = int(value.total_seconds())
    if seconds < 120:
        return f"{seconds}s"
    if seconds < 7200:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h"


def render_sources(entries: list[registry.CatalogEntry]) -> None:
    """Render catalog entries as a table."""
    if not entries:
        console.print("[dim]No sources registered[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Project", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Join keys")
    table.add_column("Fallback")
    table.add_column("Version")
    table.add_column("Hash")

    for entry in entries:
        source = entry.source
        table.add_row(
            source.project,
            source.name,
            source.type.name,
            ", ".join(source.join_keys) or "[dim]-[/dim]",
            source.batch_source.name if source.batch_source else "[dim]-[/dim]",
            str(entry.version),
            entry.spec_hash[:8],
        )

    console.print(table)
    console.print()
    console.print(f"[dim]Total: {len(entries)} source(s)[/dim]")


def render_freshness(statuses: list[freshness.FreshnessStatus]) -> None:
    """Render per-source staleness."""
    if not statuses:
        console.print("[dim]No sources registered[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Source")
    table.add_column("Latest event")
    table.add_column("Staleness")
    table.add_column("Status")

    for status in statuses:
        style = _STATUS_STYLE[status.status]
        table.add_row(
            f"{status.project}/{status.source_name}",
            _format_ts(status.latest_event_timestamp),
            _format_age(status.data_staleness),
            f"[{style}]{status.status}[/{style}]",
        )

    console.print(table)


def _format_value(value: merge.FeatureValue) -> str:
    if value.status is merge.FeatureStatus.VALUE:
        return str(value.value)
    if value.status is merge.FeatureStatus.MISSING:
        return "[dim]missing[/dim]"
    return f"[red]{value.status.value}[/red]"


def render_lookup(response: serving.OnlineFeaturesResponse, entity_rows: list[dict]) -> None:
    """Render one line per entity row, one column per feature."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Entity", style="dim")
    for name in response.feature_names:
        table.add_column(name)

    for entity, row in zip(entity_rows, response.rows):
        label = ", ".join(f"{k}={v}" for k, v in entity.items())
        table.add_row(label, *(_format_value(row[name]) for name in response.feature_names))

    console.print(table)
    console.print(f"[dim]as of {response.as_of.isoformat()}[/dim]")


def render_error(message: str) -> None:
    """Render error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")
