"""Rate-limit commands - inspect the state shared by gateway processes."""

from __future__ import annotations

import json
import time
from datetime import datetime

import rich_click as click
from rich.console import Console
from rich.table import Table

from duckgate.gateway.config import GatewayConfig, load_config
from duckgate.gateway.openai_server import build_limiter
from duckgate.gateway.ratelimit.limiter import RateLimiter, RateLimitStatus


def _limiter(config_file: str | None, store: str | None) -> tuple[GatewayConfig, RateLimiter]:
    config = load_config(config_file, rate_limit_store=store)
    return config, build_limiter(config)


def _bar(pct: float, width: int = 20) -> str:
    filled = min(width, round(pct / 100 * width))
    color = "red" if pct > 80 else "yellow" if pct > 50 else "green"
    return f"[{color}]{'█' * filled}[/][dim]{'░' * (width - filled)}[/]"


def render_status(
    console: Console, status: RateLimitStatus, recommendations: list[str]
) -> None:
    """Print a status snapshot as a table followed by recommendations."""
    table = Table(title="Rate limit status", show_header=False, title_justify="left")
    table.add_column("field", style="bold")
    table.add_column("value")

    table.add_row(
        "Requests in window",
        f"{status.requests_in_window}/{status.max_requests}  "
        f"{_bar(status.utilization_pct)} {status.utilization_pct:.1f}%",
    )
    table.add_row("Window resets in", f"{status.time_until_window_reset_ms / 1000:.1f}s")
    table.add_row("Recommended wait", f"{status.recommended_wait_ms:.0f}ms")
    limited = "[red]yes[/]" if status.is_limited else "[green]no[/]"
    if status.is_limited and status.retry_after_ms is not None:
        limited += f" (retry after {status.retry_after_ms}ms)"
    table.add_row("Upstream limiting", limited)
    table.add_row("Data source", status.data_source)
    if status.owner_id:
        table.add_row("Last writer", status.owner_id)
    if status.last_updated:
        updated = datetime.fromtimestamp(status.last_updated / 1000).strftime("%H:%M:%S")
        table.add_row("Last updated", updated)
    console.print(table)

    if recommendations:
        console.print("[bold]Recommendations:[/]")
        for hint in recommendations:
            console.print(f"  • {hint}")


@click.group()
def ratelimit() -> None:
    """Rate-limit commands - inspect the shared admission state.

    Every gateway process on this machine records its upstream calls in one
    shared store. These commands read that store directly and do not need a
    running gateway.

    **Commands:**

        duckgate ratelimit status     Show the current window

        duckgate ratelimit monitor    Refresh the status periodically

        duckgate ratelimit clear      Delete the shared record

        duckgate ratelimit info       Show the configured limits
    """
    pass


_config_option = click.option(
    "--config", "-c", "config_file", default=None, help="YAML config file"
)
_store_option = click.option("--store", default=None, help="Path of the shared rate-limit file")


@ratelimit.command("status")
@_config_option
@_store_option
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
def ratelimit_status(config_file: str | None, store: str | None, json_output: bool) -> None:
    """Show the current rate-limit window."""
    _, limiter = _limiter(config_file, store)
    status = limiter.status()
    recommendations = limiter.recommendations(status)

    if json_output:
        click.echo(json.dumps({"status": status.to_dict(), "recommendations": recommendations}))
        return
    render_status(Console(), status, recommendations)


@ratelimit.command("monitor")
@_config_option
@_store_option
@click.option("--interval", "-i", default=5.0, type=float, help="Seconds between refreshes")
@click.option("--count", "-n", default=0, type=int, help="Stop after N refreshes (0 = forever)")
def ratelimit_monitor(
    config_file: str | None, store: str | None, interval: float, count: int
) -> None:
    """Refresh the rate-limit status until interrupted.

    **Examples:**

        duckgate ratelimit monitor

        duckgate ratelimit monitor --interval 2
    """
    _, limiter = _limiter(config_file, store)
    console = Console()
    refreshes = 0
    try:
        while True:
            status = limiter.status()
            console.clear()
            console.print(f"[dim]Refreshing every {interval:g}s. Ctrl+C to stop.[/]")
            render_status(console, status, limiter.recommendations(status))
            refreshes += 1
            if count and refreshes >= count:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("[dim]Monitor stopped[/]")


@ratelimit.command("clear")
@_config_option
@_store_option
def ratelimit_clear(config_file: str | None, store: str | None) -> None:
    """Delete the shared rate-limit record."""
    config, limiter = _limiter(config_file, store)
    limiter.store.clear()
    click.echo(f"Cleared rate-limit state at {config.rate_limit_store}")


@ratelimit.command("info")
@_config_option
@_store_option
def ratelimit_info(config_file: str | None, store: str | None) -> None:
    """Show the configured limits and where state is stored."""
    config, _ = _limiter(config_file, store)
    table = Table(title="Rate limit configuration", show_header=False, title_justify="left")
    table.add_column("setting", style="bold")
    table.add_column("value")
    table.add_row("Max requests per window", str(config.max_requests_per_window))
    table.add_row("Window", f"{config.window_ms / 1000:g}s")
    table.add_row("Minimum spacing", f"{config.min_interval_ms}ms")
    table.add_row("Stale after", f"{config.stale_after_ms / 1000:g}s")
    table.add_row("429 retries", str(config.rate_limit_retries))
    table.add_row("Store", config.rate_limit_store)
    Console().print(table)
