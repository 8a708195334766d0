from __future__ import annotations

from typing import Optional

from rich import box
from rich.console import Console
from rich.table import Table

from possync.domain.models import HealthReport, QueueStats, SyncStatusSnapshot

_VERDICT_STYLE = {
    "healthy": "bold green",
    "degraded": "bold yellow",
    "unhealthy": "bold red",
    "unknown": "dim",
}


def _format_age(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


def queue_table(stats: QueueStats) -> Table:
    """
    Render queue depth per status plus the rolling delivery counters.
    """
    table = Table(title="Transaction Queue", box=box.ROUNDED)
    table.add_column("Metric", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right", style="magenta")

    table.add_row("Depth", f"{stats.depth:,}")
    for status, count in sorted(stats.counts.items()):
        table.add_row(f"  {status}", f"{count:,}")
    table.add_row("Oldest pending", _format_age(stats.oldest_pending_age_seconds))
    table.add_row("Processed", f"{stats.processed:,}")
    table.add_row("Success rate (%)", f"{stats.success_rate:.1f}")
    table.add_row("Avg processing (s)", f"{stats.average_processing_seconds:.2f}")
    table.add_row("Throughput (txn/min)", f"{stats.throughput_per_minute:,.2f}")
    table.add_row("Retries", f"{stats.retries:,}")
    table.add_row("Timeouts", f"{stats.timeouts:,}")
    return table


def health_table(report: HealthReport) -> Table:
    style = _VERDICT_STYLE.get(report.verdict, "")
    table = Table(
        title=f"Health: [{style}]{report.verdict}[/{style}]",
        box=box.ROUNDED,
        caption=f"checked at {report.checked_at.isoformat(timespec='seconds')}",
    )
    table.add_column("Component", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Detail", style="dim")
    table.add_column("Latency (s)", justify="right", style="green")

    for check in report.checks:
        check_style = _VERDICT_STYLE.get(check.status, "")
        latency = f"{check.latency_seconds:.2f}" if check.latency_seconds is not None else "-"
        table.add_row(
            check.component,
            f"[{check_style}]{check.status}[/{check_style}]",
            check.message,
            latency,
        )
    return table


def print_status(
    snapshot: SyncStatusSnapshot,
    report: Optional[HealthReport] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Print queue statistics, health checks, issues and recommendations.
    """
    console = console or Console()
    console.print(queue_table(snapshot.queue))
    if report is not None:
        console.print(health_table(report))

    last_sync = snapshot.last_sync.isoformat(timespec="seconds") if snapshot.last_sync else "never"
    console.print(
        f"Breaker: [bold]{snapshot.breaker.state.value}[/bold] "
        f"({snapshot.breaker.failure_count}/{snapshot.breaker.threshold}) | "
        f"Last delta sync: {last_sync} | Online: {snapshot.online}"
    )

    if snapshot.active_issues:
        console.print("[bold red]Issues[/bold red]")
        for issue in snapshot.active_issues:
            console.print(f"  - {issue}")
    if report is not None and report.recommendations:
        console.print("[bold yellow]Recommendations[/bold yellow]")
        for recommendation in report.recommendations:
            console.print(f"  - {recommendation}")


__all__ = ["health_table", "print_status", "queue_table"]
