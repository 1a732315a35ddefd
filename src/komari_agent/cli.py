"""CLI for the Komari agent.

Provides a command-line interface using Typer for:
- Running the agent (identity push + report stream)
- Printing a one-off snapshot or identity payload for troubleshooting
- Generating a sample configuration file
"""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from komari_agent.core.config import load_config, load_metrics_config
from komari_agent.core.schemas import AgentConfig, MetricsConfig, Snapshot
from komari_agent.monitoring.sampler import MetricsSampler
from komari_agent.reporting.client import ReportingClient
from komari_agent.reporting.payloads import build_basic_info, build_report
from komari_agent.utils.logging import mask_token, setup_logging

app = typer.Typer(
    name="komari-agent",
    help="Container metrics agent for Komari",
    add_completion=False,
)

console = Console()
logger = logging.getLogger("komari_agent")


def _load_or_exit(config: Path | None) -> AgentConfig:
    try:
        return load_config(config)
    except Exception as e:
        console.print(f"[bold red]Error loading config: {e}[/]")
        raise typer.Exit(1) from e


@app.command()
def run(
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Optional YAML/JSON config file (env vars override it)"
    ),
    log_level: str | None = typer.Option(
        None, "--log-level", "-l", help="Logging level (overrides LOG_LEVEL)"
    ),
    log_file: Path | None = typer.Option(
        None, "--log-file", help="Write logs to file in addition to console"
    ),
    json_logs: bool = typer.Option(
        False, "--json-logs", help="Output logs in JSON format (for log shippers)"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate config without running"),
) -> None:
    """Run the agent until SIGINT/SIGTERM."""
    agent_config = _load_or_exit(config)
    setup_logging(
        level=log_level or agent_config.diagnostics.log_level,
        log_file=log_file,
        json_format=json_logs,
        rich_console=not json_logs,
    )

    _show_config_summary(agent_config)

    if dry_run:
        console.print("[bold green]Configuration is valid![/]")
        return

    try:
        asyncio.run(_run_agent(agent_config))
    except Exception as e:
        logger.critical(f"Agent terminated: {e!r}", exc_info=True)
        raise typer.Exit(1) from e


async def _run_agent(config: AgentConfig) -> None:
    client = ReportingClient(config)
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()

    def request_stop(sig: signal.Signals) -> None:
        logger.warning(f"{sig.name} received, stopping...")
        stop_requested.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    run_task = asyncio.create_task(client.run(), name="komari-agent")
    stop_task = asyncio.create_task(stop_requested.wait(), name="komari-stop")
    done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

    await client.stop()
    stop_task.cancel()
    if run_task in done:
        run_task.result()
    else:
        await asyncio.gather(run_task, return_exceptions=True)


@app.command()
def snapshot(
    config: Path | None = typer.Option(None, "--config", "-c", help="Optional config file"),
    interval: float = typer.Option(
        1.0, "--interval", "-i", help="Seconds between the two samples used for rates"
    ),
    output_format: str = typer.Option("table", "--format", "-f", help="table, json or payload"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
) -> None:
    """Take two samples and print the second one (with rates)."""
    setup_logging(level=log_level)
    metrics = _metrics_config(config)

    async def sample_twice() -> Snapshot:
        sampler = MetricsSampler(metrics)
        await sampler.snapshot()
        await asyncio.sleep(interval)
        return await sampler.snapshot()

    snap = asyncio.run(sample_twice())
    if output_format == "json":
        console.print_json(snap.model_dump_json())
    elif output_format == "payload":
        console.print_json(build_report(snap).model_dump_json())
    else:
        _show_snapshot_table(snap)


@app.command()
def info(
    config: Path | None = typer.Option(None, "--config", "-c", help="Optional config file"),
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Logging level"),
) -> None:
    """Print the identity payload that would be pushed to the collector."""
    setup_logging(level=log_level)
    metrics = _metrics_config(config)
    agent_version = AgentConfig.model_fields["agent_version"].default

    async def collect() -> str:
        system = await MetricsSampler(metrics).system_info()
        return build_basic_info(system, agent_version).model_dump_json()

    console.print_json(asyncio.run(collect()))


def _metrics_config(config: Path | None) -> MetricsConfig:
    """Metrics settings for the offline commands (endpoint/token not required)."""
    try:
        return load_metrics_config(config)
    except Exception as e:
        console.print(f"[bold red]Error loading config: {e}[/]")
        raise typer.Exit(1) from e


@app.command()
def init_config(
    output: Path = typer.Option(
        Path("komari-agent.yaml"), "--output", "-o", help="Output configuration file"
    ),
) -> None:
    """Generate a sample configuration file."""
    sample_config = """\
# Komari agent configuration
# Every value can be overridden by environment variables
# (KOMARI_ENDPOINT, KOMARI_TOKEN, REPORT_INTERVAL_MS, ...).
endpoint: "https://komari.example.com"
token: "change-me"

report_interval_seconds: 1
info_interval_seconds: 300
reconnect_delay_seconds: 5
handshake_timeout_seconds: 8

metrics:
  disk_path: "/"
  exclude_loopback: true
  uptime_policy: auto          # auto | pid1 | process
  memory_limit_fallback: host  # host | zero
  process_scan_concurrency: 50

diagnostics:
  log_level: INFO
  log_payload: false
  log_ws_send: false
  log_ws_every: 1
"""
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(sample_config)
    console.print(f"[bold green]Sample configuration written to {output}[/]")


def _show_config_summary(config: AgentConfig) -> None:
    """Display a summary of the agent configuration (token masked)."""
    table = Table(title="Agent Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Endpoint", config.endpoint)
    table.add_row("Token", mask_token(config.token, config.token))
    table.add_row("Report Interval", f"{config.report_interval_seconds}s")
    table.add_row("Info Interval", f"{config.info_interval_seconds}s")
    table.add_row("Reconnect Delay", f"{config.reconnect_delay_seconds}s")
    table.add_row("Disk Path", str(config.metrics.disk_path))
    table.add_row("Uptime Policy", config.metrics.uptime_policy.value)
    table.add_row("RAM Fallback", config.metrics.memory_limit_fallback.value)
    table.add_row("Agent Version", config.agent_version)

    console.print(table)


def _fmt_bytes(value: int | float | None) -> str:
    if value is None:
        return "N/A"
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if abs(size) < 1024 or unit == "TiB":
            return f"{size:,.1f} {unit}"
        size /= 1024
    return f"{size:,.1f} TiB"


def _fmt_percent(value: float | None) -> str:
    return f"{value:.1f}%" if value is not None else "N/A"


def _show_snapshot_table(snap: Snapshot) -> None:
    """Display one snapshot as a two-column table."""
    from rich.panel import Panel

    s, m = snap.system, snap.metrics
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Host", f"[cyan]{s.hostname}[/]")
    table.add_row("OS", s.os_name)
    table.add_row("Kernel / Arch", f"{s.kernel} / {s.arch}")
    table.add_row("CPU", f"{s.cpu_model or 'N/A'} ({s.cpu_cores} cores)")
    table.add_row("cgroup", s.cgroup_mode.value)
    table.add_row("IPv4 / IPv6", f"{s.ips.ipv4 or '-'} / {s.ips.ipv6 or '-'}")

    table.add_row("", "")
    table.add_row("[yellow]CPU[/]", "")
    table.add_row("  Of limit", _fmt_percent(m.cpu.usage_percent_of_limit))
    table.add_row("  Of host", _fmt_percent(m.cpu.usage_percent_of_host))
    table.add_row("  Limit", f"{m.cpu.limit_cores:g} cores")

    table.add_row("", "")
    table.add_row("[magenta]Memory[/]", "")
    table.add_row("  RAM", f"{_fmt_bytes(m.ram.used)} / {_fmt_bytes(m.ram.total)}")
    table.add_row("  Swap", f"{_fmt_bytes(m.swap.used)} / {_fmt_bytes(m.swap.total)}")
    table.add_row("  Disk", f"{_fmt_bytes(m.disk.used)} / {_fmt_bytes(m.disk.total)}")

    table.add_row("", "")
    table.add_row("[green]Network[/]", "")
    table.add_row("  Up", f"{_fmt_bytes(m.network.up_bps)}/s")
    table.add_row("  Down", f"{_fmt_bytes(m.network.down_bps)}/s")
    table.add_row(
        "  Total up/down",
        f"{_fmt_bytes(m.network.total_up_bytes)} / {_fmt_bytes(m.network.total_down_bytes)}",
    )
    table.add_row(
        "  Connections",
        f"tcp={m.connections.tcp} udp={m.connections.udp} unix={m.connections.unix}",
    )

    table.add_row("", "")
    table.add_row("Load", f"{m.load.load1:.2f} {m.load.load5:.2f} {m.load.load15:.2f}")
    table.add_row("Processes / Threads", f"{m.process} / {m.threads}")
    table.add_row("Uptime", f"{int(m.uptime_seconds)}s")

    title = f"[bold]Snapshot {snap.at.isoformat()}[/]"
    console.print(Panel(table, title=title, border_style="blue"))


if __name__ == "__main__":
    app()
