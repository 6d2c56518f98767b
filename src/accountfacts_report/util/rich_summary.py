from __future__ import annotations

from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table


def render_run_summary_table(
    *,
    enabled: bool,
    status: str,
    metrics: Dict[str, Any],
    console: Optional[Console] = None,
) -> None:
    """Print the per-run counts to stderr (or the given console)."""
    if not enabled:
        return
    table = Table(title="Account Facts Report", show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Status", status)
    table.add_row("Report", str(metrics.get("report", "")))
    table.add_row("Source", str(metrics.get("source", "")))
    table.add_row("Machines", str(metrics.get("machines", 0)))
    table.add_row("Fact fragments", str(metrics.get("fragments", 0)))
    table.add_row("Records reconstructed", str(metrics.get("records", 0)))
    if "primary_members_added" in metrics:
        table.add_row("Primary members added", str(metrics["primary_members_added"]))
    table.add_row("Rows written", str(metrics.get("rows", 0)))
    table.add_row("Output", str(metrics.get("output") or "<stdout>"))
    (console or Console(stderr=True)).print(table)
