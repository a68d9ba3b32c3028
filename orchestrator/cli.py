"""CLI for deployment orchestration runs."""

import asyncio
import json
import re
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .cluster import InMemoryClusterAPI, RateLimitedClusterAPI, TokenBucket
from .cluster.base import ClusterAPI
from .config import settings
from .engine import OrchestrationEngine, RunHistory, RunState
from .graph import GraphLoader
from .core.exceptions import GraphLoadError
from .observability import setup_logging, setup_telemetry, shutdown_telemetry

app = typer.Typer(
    name="orchestrate",
    help="Deploy a service graph, probe its observability stack and load test it",
    add_completion=False,
)
console = Console()

DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([smh]?)\s*$")
DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600}

STATE_STYLES = {
    "Succeeded": "green",
    "Ready": "green",
    "Healthy": "green",
    "Degraded": "yellow",
    "WaitingReady": "yellow",
    "Applying": "yellow",
    "Pending": "dim",
    "Failed": "red",
    "Unreachable": "red",
    "Aborted": "magenta",
}


def parse_duration(value: str) -> float:
    """Parse ``90``, ``90s``, ``5m`` or ``1h`` into seconds."""
    match = DURATION_PATTERN.match(value or "")
    if not match or float(match.group(1)) <= 0:
        raise typer.BadParameter(f"Invalid duration '{value}' (use e.g. 90, 90s, 5m, 1h)")
    return float(match.group(1)) * DURATION_UNITS[match.group(2)]


def _styled(value: str) -> str:
    style = STATE_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def _short_time(value: Optional[str]) -> str:
    return value[:19].replace("T", " ") if value else "-"


def _build_cluster(dry_run: bool) -> ClusterAPI:
    if dry_run:
        return InMemoryClusterAPI()

    from .cluster.kubernetes import KubernetesClusterAPI

    backend = KubernetesClusterAPI(
        context=settings.kube_context, field_manager=settings.field_manager
    )
    return RateLimitedClusterAPI(backend, TokenBucket(settings.api_rate_limit, settings.api_burst))


def print_report(report: dict[str, Any]) -> None:
    """Render a run report: units, probes and load test."""
    console.print(
        f"\n[bold]Run {report['run_id']}[/bold] ({report['graph']}): "
        f"{_styled(report['state'])}"
    )

    unit_table = Table(title="Units (deployment order)")
    unit_table.add_column("Unit", style="cyan")
    unit_table.add_column("Status")
    unit_table.add_column("Attempts", justify="right")
    unit_table.add_column("Ready after", justify="right")
    unit_table.add_column("Errors")

    for unit in report["units"]:
        ready_after = unit.get("ready_after")
        unit_table.add_row(
            unit["unit_id"],
            _styled(unit["status"]),
            str(unit.get("attempts", 0)),
            f"{ready_after:.1f}s" if ready_after is not None else "-",
            "\n".join(escape(f"[{e['code']}] {e['message']}") for e in unit.get("errors", [])),
        )
    console.print(unit_table)

    if report.get("probes"):
        probe_table = Table(title="Endpoint probes")
        probe_table.add_column("Endpoint", style="cyan")
        probe_table.add_column("Outcome")
        probe_table.add_column("Latency", justify="right")
        probe_table.add_column("Detail")
        for probe in report["probes"]:
            probe_table.add_row(
                probe["name"],
                _styled(probe["outcome"]),
                f"{probe.get('latency_ms') or 0:.0f}ms",
                escape(probe.get("detail") or ""),
            )
        console.print(probe_table)

    load_test = report.get("load_test")
    if load_test:
        p95 = load_test.get("p95_ms")
        p95_text = "n/a" if p95 is None else f"{p95:.0f}"
        lines = [
            f"Requests: {load_test['total_requests']} ({load_test['total_failures']} failed)",
            f"Throughput: {load_test['rps']} rps",
            f"Error rate: {load_test['error_rate']:.2%}",
            f"Latency p50/p95/p99: {load_test['p50_ms']:.0f}/"
            f"{p95_text}/{load_test['p99_ms']:.0f} ms",
            f"Workers: {len(load_test.get('worker_contributions') or {})}",
        ]
        for violation in report.get("load_test_violations") or []:
            lines.append(f"[yellow]Threshold violated: {escape(violation)}[/yellow]")
        console.print(Panel("\n".join(lines), title="Load test"))

    stage_errors = [e for e in report.get("errors", []) if not e.get("unit_id")]
    for error in stage_errors:
        detail = escape(f"[{error['code']}] {error['message']}")
        console.print(f"[red]✗ {error['stage']}:[/red] {detail}")


# ============================================================================
# Run Command
# ============================================================================


@app.command()
def run(
    graph: Path = typer.Option(..., "--graph", "-g", help="Path to graph YAML file"),
    timeout: str = typer.Option(
        "15m", "--timeout", "-t", help="Deploy stage budget, e.g. 90s, 5m, 1h"
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Deploy against an in-memory cluster, skip probes and load test"
    ),
    no_loadtest: bool = typer.Option(False, "--no-loadtest", help="Skip the load test"),
    parallelism: Optional[int] = typer.Option(
        None, "--parallelism", "-p", min=1, help="Max units deployed concurrently"
    ),
    log_json: bool = typer.Option(False, "--log-json", help="Emit JSON logs"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Run history directory"),
):
    """Deploy a graph, probe its endpoints and load test it."""
    try:
        budget = parse_duration(timeout)
    except typer.BadParameter as e:
        console.print(f"[red]✗ {escape(str(e))}[/red]")
        raise typer.Exit(code=1)

    setup_logging(level=settings.log_level, json_format=log_json or settings.log_json)
    setup_telemetry(
        service_name=settings.otel_service_name,
        endpoint=settings.otel_endpoint,
        protocol=settings.otel_protocol,
        enabled=settings.otel_enabled,
    )

    try:
        loaded = GraphLoader().load(graph)
    except GraphLoadError as e:
        console.print(f"[red]✗ Invalid graph:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1)

    console.print(f"[bold]Running graph:[/bold] {loaded.name} ({len(loaded.graph)} units)")

    async def _run() -> RunState:
        cluster = _build_cluster(dry_run)
        engine = OrchestrationEngine(
            cluster,
            history=RunHistory(state_dir),
            max_parallelism=parallelism,
        )

        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, engine.abort, "interrupted (SIGINT)")
        except (NotImplementedError, RuntimeError):
            # No signal support outside the main thread
            pass

        try:
            deployment_run = await engine.run(
                loaded.definition,
                base_dir=loaded.base_dir,
                run_loadtest=not (no_loadtest or dry_run),
                run_probes=not dry_run,
                timeout=budget,
            )
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError):
                pass
            await cluster.close()

        print_report(deployment_run.to_report())
        return deployment_run.state

    try:
        final_state = asyncio.run(_run())
    except Exception as e:
        console.print(f"[red]✗ Error:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1)
    finally:
        shutdown_telemetry()

    raise typer.Exit(code=final_state.exit_code)


# ============================================================================
# Status Command
# ============================================================================


@app.command()
def status(
    run_id: str = typer.Option(..., "--run", "-r", help="Run id (or unique prefix)"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw report as JSON"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Run history directory"),
):
    """Show the report of a recorded run."""
    record = RunHistory(state_dir).get(run_id)
    if record is None:
        console.print(f"[red]✗ Unknown run:[/red] {run_id}")
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps(record.report, indent=2))
    else:
        print_report(record.report)


# ============================================================================
# List Command
# ============================================================================


@app.command("list")
def list_runs(
    state: Optional[str] = typer.Option(None, "--state", "-s", help="Filter by final state"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum runs to show"),
    state_dir: Optional[Path] = typer.Option(None, "--state-dir", help="Run history directory"),
):
    """List recorded runs, newest first."""
    records = RunHistory(state_dir).list_runs(state=state, limit=limit)
    if not records:
        console.print("[dim]No runs recorded[/dim]")
        return

    table = Table(title="Runs")
    table.add_column("Run", style="cyan", no_wrap=True)
    table.add_column("Graph", no_wrap=True)
    table.add_column("State")
    table.add_column("Started")
    table.add_column("Finished")

    for record in records:
        table.add_row(
            record.run_id[:12],
            record.graph,
            _styled(record.state),
            _short_time(record.started_at),
            _short_time(record.finished_at),
        )
    console.print(table)


# ============================================================================
# Validate Command
# ============================================================================


@app.command()
def validate(
    graph_file: Path = typer.Argument(..., help="Path to graph YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Validate a graph definition file."""
    console.print(f"[bold]Validating graph:[/bold] {graph_file}")

    try:
        loaded = GraphLoader().load(graph_file)
    except GraphLoadError as e:
        console.print(f"[red]✗ Validation failed:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1)

    console.print("[green]✓ Graph definition is valid[/green]")

    if verbose:
        console.print(f"\n[bold]Graph:[/bold] {loaded.name}")
        console.print(f"[bold]Description:[/bold] {loaded.definition.description}")
        console.print(f"[bold]Units:[/bold] {len(loaded.graph)}")

        table = Table(title="Units")
        table.add_column("ID", style="cyan")
        table.add_column("Namespace", style="green")
        table.add_column("Depends on", style="yellow")
        table.add_column("Readiness", style="magenta")

        for unit in loaded.graph.units:
            table.add_row(
                unit.id,
                unit.namespace,
                ", ".join(sorted(unit.depends_on)) or "-",
                unit.readiness.type,
            )
        console.print(table)


# ============================================================================
# Plan Command
# ============================================================================


@app.command()
def plan(
    graph_file: Path = typer.Argument(..., help="Path to graph YAML file"),
    output_format: str = typer.Option(
        "table", "--format", "-f", help="Output format: table, json"
    ),
):
    """Show the deployment order without touching the cluster."""
    try:
        loaded = GraphLoader().load(graph_file)
    except GraphLoadError as e:
        console.print(f"[red]✗ Validation failed:[/red]\n{escape(str(e))}")
        raise typer.Exit(code=1)

    order = loaded.graph.topological_order()
    stages = loaded.graph.levels()

    if output_format == "json":
        typer.echo(
            json.dumps(
                {
                    "graph": loaded.name,
                    "order": order,
                    "stages": stages,
                    "roots": loaded.graph.roots(),
                },
                indent=2,
            )
        )
        return

    console.print(f"[bold]Deployment plan for {loaded.name}[/bold]")
    console.print(f"Order: {' -> '.join(order)}")

    stage_table = Table(title="Deployment Stages")
    stage_table.add_column("Stage", style="cyan")
    stage_table.add_column("Units", style="green")
    stage_table.add_column("Count", style="yellow")

    for idx, stage in enumerate(stages):
        stage_table.add_row(str(idx + 1), ", ".join(stage), str(len(stage)))

    console.print(stage_table)


# ============================================================================
# Main
# ============================================================================


def main():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
