#!/usr/bin/env python3
"""
parabench - compare reduction strategies across concurrency backends (Typer)

Commands:
    compare    run strategies x backends over one workload and check agreement
    scaling    repeat the comparison over several worker counts
    race       repeat the racy increments demo and show lost updates
    partition  print a partition plan
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from rich.table import Table

from parabench.benchmark.comparison import (
    ComparisonRunner,
    format_report_table,
    format_scaling_table,
)
from parabench.benchmark.defaults import get_defaults
from parabench.benchmark.exceptions import BenchmarkError, InvalidArgument
from parabench.benchmark.workloads import make_increments, make_workload
from parabench.harness.backends import Backend
from parabench.harness.execution_harness import BenchmarkConfig, ExecutionHarness
from parabench.harness.partition import chunk_bounds, partition
from parabench.harness.strategies import ReductionStrategy
from parabench.utils.logger import get_console, get_logger, setup_logging

logger = get_logger(__name__)

app = typer.Typer(
    name="parabench",
    help="Run one reduction under several execution strategies and compare results and timing.",
    no_args_is_help=True,
    add_completion=False,
)


# =============================================================================
# Choice enums (Typer-compatible)
# =============================================================================


class WorkloadChoice(str, Enum):
    sqrt_sum = "sqrt-sum"
    monte_carlo_pi = "monte-carlo-pi"
    increments = "increments"


class LogLevel(str, Enum):
    debug = "DEBUG"
    info = "INFO"
    warning = "WARNING"
    error = "ERROR"


# =============================================================================
# Helpers
# =============================================================================


def _config(
    workers: int,
    timeout: float,
    tolerance: float,
    seed: Optional[int],
    repeats: int,
    warmup: int,
) -> BenchmarkConfig:
    try:
        return BenchmarkConfig(
            workers=workers,
            timeout_seconds=timeout,
            tolerance=tolerance,
            seed=seed,
            repeats=repeats,
            warmup=warmup,
        )
    except InvalidArgument as exc:
        raise typer.BadParameter(str(exc), param_hint=f"--{exc.argument.replace('_', '-')}") from exc


def _strategies(values: Optional[List[ReductionStrategy]]) -> List[ReductionStrategy]:
    return list(values) if values else [ReductionStrategy(name) for name in get_defaults().strategies]


def _backends(values: Optional[List[Backend]]) -> List[Backend]:
    return list(values) if values else [Backend(name) for name in get_defaults().backends]


# =============================================================================
# Commands
# =============================================================================


@app.command("compare")
def compare(
    workload: WorkloadChoice = typer.Option(WorkloadChoice.sqrt_sum, "--workload", "-w", help="Workload to reduce"),
    size: int = typer.Option(1000, "--size", "-n", help="Input length (points for monte-carlo-pi)"),
    workers: int = typer.Option(get_defaults().workers, "--workers", "-p", help="Worker count"),
    strategy: Optional[List[ReductionStrategy]] = typer.Option(None, "--strategy", "-s", help="Strategy (repeatable)"),
    backend: Optional[List[Backend]] = typer.Option(None, "--backend", "-b", help="Backend (repeatable)"),
    timeout: float = typer.Option(get_defaults().timeout_seconds, "--timeout", help="Per-run timeout in seconds"),
    tolerance: float = typer.Option(get_defaults().tolerance, "--tolerance", help="Relative agreement tolerance"),
    seed: Optional[int] = typer.Option(get_defaults().seed, "--seed", help="Monte-Carlo sampling seed"),
    repeats: int = typer.Option(get_defaults().repeats, "--repeats", help="Measured repeats per run"),
    warmup: int = typer.Option(get_defaults().warmup, "--warmup", help="Unmeasured warmup runs"),
    json_out: Optional[Path] = typer.Option(None, "--json", help="Write the report as JSON"),
    log_level: LogLevel = typer.Option(LogLevel.warning, "--log-level", help="Log level"),
) -> None:
    """Run strategies x backends over one workload and check agreement with serial."""
    setup_logging(log_level.value)
    config = _config(workers, timeout, tolerance, seed, repeats, warmup)
    try:
        data = make_workload(workload.value, size, seed=seed)
        report = ComparisonRunner(config).compare(_strategies(strategy), _backends(backend), data)
    except InvalidArgument as exc:
        raise typer.BadParameter(str(exc)) from exc

    get_console().print(format_report_table(report))
    if json_out is not None:
        json_out.parent.mkdir(parents=True, exist_ok=True)
        json_out.write_text(report.model_dump_json(indent=2))
        typer.echo(f"Report written to {json_out}")
    raise typer.Exit(code=0 if report.agreement_passed else 1)


@app.command("scaling")
def scaling(
    workload: WorkloadChoice = typer.Option(WorkloadChoice.sqrt_sum, "--workload", "-w"),
    size: int = typer.Option(100_000, "--size", "-n"),
    worker_counts: List[int] = typer.Option([1, 2, 4, 8], "--workers", "-p", help="Worker counts (repeatable)"),
    strategy: Optional[List[ReductionStrategy]] = typer.Option(None, "--strategy", "-s"),
    backend: Optional[List[Backend]] = typer.Option(None, "--backend", "-b"),
    timeout: float = typer.Option(get_defaults().timeout_seconds, "--timeout"),
    seed: Optional[int] = typer.Option(get_defaults().seed, "--seed"),
    repeats: int = typer.Option(get_defaults().repeats, "--repeats"),
    log_level: LogLevel = typer.Option(LogLevel.warning, "--log-level"),
) -> None:
    """Speedup of each strategy over the serial baseline at several worker counts."""
    setup_logging(log_level.value)
    config = _config(max(worker_counts), timeout, get_defaults().tolerance, seed, repeats, 0)
    try:
        data = make_workload(workload.value, size, seed=seed)
        points = ComparisonRunner(config).scaling(
            _strategies(strategy), _backends(backend), data, worker_counts
        )
    except InvalidArgument as exc:
        raise typer.BadParameter(str(exc)) from exc
    get_console().print(format_scaling_table(points))


@app.command("race")
def race(
    increments: int = typer.Option(1_000_000, "--increments", "-n", help="Unsynchronized increments per run"),
    workers: int = typer.Option(8, "--workers", "-p"),
    runs: int = typer.Option(20, "--runs", help="Repeated runs"),
    backend: Backend = typer.Option(Backend.THREADS, "--backend", "-b"),
    log_level: LogLevel = typer.Option(LogLevel.warning, "--log-level"),
) -> None:
    """Show lost updates of the racy accumulator next to the atomic one."""
    setup_logging(log_level.value)
    if not backend.is_parallel:
        raise typer.BadParameter("race needs a parallel backend", param_hint="--backend")
    harness = ExecutionHarness(_config(workers, get_defaults().timeout_seconds, get_defaults().tolerance, None, 1, 0))
    data = make_increments(increments)

    table = Table(title=f"{increments:,} increments, {workers} workers, {backend.value}")
    table.add_column("Run", justify="right")
    table.add_column("Racy result", justify="right")
    table.add_column("Lost updates", justify="right")
    lossy_runs = 0
    try:
        for run in range(1, runs + 1):
            result, _ = harness.run(ReductionStrategy.RACY, backend, data, workers)
            lost = increments - int(result)
            lossy_runs += lost > 0
            table.add_row(str(run), f"{result:,.0f}", f"{lost:,}")
        atomic, _ = harness.run(ReductionStrategy.ATOMIC, backend, data, workers)
    except BenchmarkError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=2) from exc

    console = get_console()
    console.print(table)
    console.print(f"Runs with lost updates: {lossy_runs}/{runs}; atomic result: {atomic:,.0f}")


@app.command("partition")
def show_partition(
    n: int = typer.Argument(..., help="Length of the index domain"),
    workers: int = typer.Argument(..., help="Worker count"),
) -> None:
    """Print the balanced partition plan for ``n`` elements over ``workers``."""
    try:
        plan = partition(n, workers)
    except InvalidArgument as exc:
        raise typer.BadParameter(str(exc)) from exc
    for index, (start, stop) in enumerate(chunk_bounds(plan)):
        typer.echo(f"worker {index}: [{start}, {stop}) size={stop - start}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
