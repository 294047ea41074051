"""Cross-strategy comparison: run every strategy/backend pair and check agreement.

Each run happens on a daemon watchdog thread. When a run outlives its
timeout the runner aborts its harness, records ``timed_out`` and moves on.
Aborting terminates process workers; a thread worker cannot be stopped and
keeps running (and holds interpreter exit) until its task returns.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar, Union

import numpy as np
from rich.console import Console
from rich.table import Table

from parabench.benchmark.exceptions import (
    BenchmarkTimeoutError,
    InvalidArgument,
    SerializationError,
    WorkerFailure,
)
from parabench.benchmark.models import (
    BenchmarkRecord,
    ComparisonReport,
    RunStatus,
    ScalingPoint,
    TimingStats,
)
from parabench.benchmark.workloads import Workload
from parabench.harness.backends import Backend
from parabench.harness.execution_harness import (
    BenchmarkConfig,
    ExecutionHarness,
    Measurement,
    validate_workers,
)
from parabench.harness.strategies import ReductionStrategy
from parabench.utils.logger import (
    get_console,
    get_logger,
    log_benchmark_complete,
    log_benchmark_error,
    log_benchmark_skipped,
    log_benchmark_start,
)

logger = get_logger(__name__)

T = TypeVar("T")

ALL_STRATEGIES = tuple(ReductionStrategy)
ALL_BACKENDS = tuple(Backend)


def invalid_combination_reason(
    strategy: ReductionStrategy,
    backend: Backend,
    workers: int,
) -> Optional[str]:
    """Return why a combination is not meaningful, or None if it should run."""
    if strategy is ReductionStrategy.RACY:
        if not backend.is_parallel:
            return "racy accumulation needs a parallel backend"
        if workers <= 1:
            return "racy accumulation needs more than one worker"
    return None


def run_with_watchdog(
    fn: Callable[[], T],
    timeout: Optional[float],
    name: str = "parabench-watchdog",
    on_timeout: Optional[Callable[[], None]] = None,
) -> T:
    """Call ``fn`` on a daemon thread and wait at most ``timeout`` seconds.

    Anything ``fn`` raises, ``SystemExit`` and ``KeyboardInterrupt`` included,
    is re-raised in the caller.

    Raises:
        BenchmarkTimeoutError: ``fn`` did not finish in time. ``on_timeout`` is
            called first so the caller can release what the run holds.
    """
    outcome: dict = {}

    def target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, name=name, daemon=True)
    start = time.perf_counter()
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        waited = time.perf_counter() - start
        if on_timeout is not None:
            on_timeout()
        raise BenchmarkTimeoutError(
            f"run exceeded timeout of {timeout}s (waited {waited:.2f}s)",
            timeout_seconds=float(timeout) if timeout is not None else float("inf"),
            elapsed_seconds=waited,
        )
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


@dataclass
class _Attempt:
    """One finished run, before its agreement annotation is known."""
    strategy: ReductionStrategy
    backend: Backend
    status: RunStatus
    elapsed_seconds: Optional[float] = None
    result: Optional[float] = None
    timing: Optional[TimingStats] = None
    error: Optional[str] = None
    failed_worker: Optional[int] = None
    skip_reason: Optional[str] = None


class ComparisonRunner:
    """Runs strategies x backends over one workload and checks agreement."""

    def __init__(
        self,
        config: Optional[BenchmarkConfig] = None,
        harness_factory: Callable[[BenchmarkConfig], ExecutionHarness] = ExecutionHarness,
    ):
        self.config = config or BenchmarkConfig()
        self._harness_factory = harness_factory

    def compare(
        self,
        strategies: Sequence[Union[ReductionStrategy, str]],
        backends: Sequence[Union[Backend, str]],
        workload: Workload,
        workers: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ComparisonReport:
        """Run the cross product of ``strategies`` and ``backends`` in order.

        Args:
            strategies: Strategies to run
            backends: Backends to run each strategy on
            workload: Shared input; never regenerated between runs
            workers: Worker count (defaults to config)
            timeout: Per-run timeout in seconds (defaults to config)

        Raises:
            InvalidArgument: Bad overall input; raised before any run starts.
        """
        strategies = _coerce(strategies, ReductionStrategy, "strategies")
        backends = _coerce(backends, Backend, "backends")
        workers = validate_workers(self.config.workers if workers is None else workers)
        timeout = self.config.timeout_seconds if timeout is None else timeout
        if timeout is not None and timeout <= 0:
            raise InvalidArgument(f"timeout must be positive, got {timeout}", argument="timeout", value=timeout)

        attempts = [
            self._attempt(strategy, backend, workload, workers, timeout)
            for strategy in strategies
            for backend in backends
        ]

        reference = self._reference(attempts, workload, timeout)
        records = [self._to_record(attempt, workers, reference, workload) for attempt in attempts]
        checked = [record for record in records if record.counts_for_agreement]
        agreement_passed = reference is not None and all(record.agrees_with_serial for record in checked)

        if not agreement_passed:
            logger.warning(f"Agreement check failed for {workload.name} (reference={reference!r})")
        return ComparisonReport(
            workload=workload.name,
            size=len(workload),
            workers=workers,
            tolerance=self.config.tolerance,
            plausible_range=(self.config.mc_lower, self.config.mc_upper) if workload.monte_carlo else None,
            seed=self.config.seed if workload.monte_carlo else None,
            reference_result=reference,
            records=records,
            agreement_passed=agreement_passed,
        )

    def scaling(
        self,
        strategies: Sequence[Union[ReductionStrategy, str]],
        backends: Sequence[Union[Backend, str]],
        workload: Workload,
        worker_counts: Iterable[int],
        timeout: Optional[float] = None,
    ) -> List[ScalingPoint]:
        """Compare at each worker count and report speedup over the serial baseline.

        The baseline is the fastest ok SERIAL run seen at any worker count, or a
        direct serial measurement when SERIAL is not among ``strategies``.
        """
        reports = [
            self.compare(strategies, backends, workload, workers=count, timeout=timeout)
            for count in worker_counts
        ]
        serial_times = [
            record.elapsed_seconds
            for report in reports
            for record in report.records_for(ReductionStrategy.SERIAL)
            if record.status == RunStatus.OK and record.elapsed_seconds
        ]
        if serial_times:
            baseline = min(serial_times)
        else:
            harness = self._harness_factory(self.config)
            baseline = run_with_watchdog(
                lambda: harness.measure(ReductionStrategy.SERIAL, Backend.NONE, workload, 1),
                self.config.timeout_seconds if timeout is None else timeout,
                on_timeout=harness.abort,
            ).elapsed

        points: List[ScalingPoint] = []
        for report in reports:
            for record in report.records:
                if record.status == RunStatus.SKIPPED:
                    continue
                speedup = None
                if record.status == RunStatus.OK and record.elapsed_seconds:
                    speedup = baseline / record.elapsed_seconds
                points.append(ScalingPoint(
                    strategy=record.strategy,
                    backend=record.backend,
                    workers=report.workers,
                    elapsed_ms=record.elapsed_ms,
                    speedup=speedup,
                    status=record.status,
                ))
        return points

    def _attempt(
        self,
        strategy: ReductionStrategy,
        backend: Backend,
        workload: Workload,
        workers: int,
        timeout: Optional[float],
    ) -> _Attempt:
        reason = invalid_combination_reason(strategy, backend, workers)
        if reason is not None:
            log_benchmark_skipped(logger, strategy.value, backend.value, reason)
            return _Attempt(strategy, backend, RunStatus.SKIPPED, skip_reason=reason)

        # Fresh harness per run: an abandoned run keeps mutating its own state only.
        harness = self._harness_factory(self.config)
        log_benchmark_start(logger, strategy.value, backend.value, workers)
        try:
            measurement: Measurement = run_with_watchdog(
                lambda: harness.measure(strategy, backend, workload, workers),
                timeout,
                name=f"parabench-watchdog-{strategy.value}-{backend.value}",
                on_timeout=harness.abort,
            )
        except BenchmarkTimeoutError as exc:
            log_benchmark_error(logger, strategy.value, backend.value, str(exc))
            return _Attempt(
                strategy, backend, RunStatus.TIMED_OUT,
                elapsed_seconds=exc.elapsed_seconds, error=str(exc),
            )
        except WorkerFailure as exc:
            log_benchmark_error(logger, strategy.value, backend.value, str(exc))
            # A broken process pool fails every worker alike; the index names none of them.
            failed_worker = None if isinstance(exc.cause, BrokenProcessPool) else exc.index
            return _Attempt(strategy, backend, RunStatus.FAILED, error=str(exc), failed_worker=failed_worker)
        except SerializationError as exc:
            log_benchmark_error(logger, strategy.value, backend.value, str(exc))
            return _Attempt(strategy, backend, RunStatus.FAILED, error=str(exc))

        harness.mark_reported()
        log_benchmark_complete(logger, strategy.value, backend.value, measurement.elapsed * 1000.0, measurement.result)
        return _Attempt(
            strategy, backend, RunStatus.OK,
            elapsed_seconds=measurement.elapsed,
            result=measurement.result,
            timing=measurement.timing,
        )

    def _reference(self, attempts: List[_Attempt], workload: Workload, timeout: Optional[float]) -> Optional[float]:
        for attempt in attempts:
            if attempt.strategy is ReductionStrategy.SERIAL and attempt.status == RunStatus.OK:
                return attempt.result
        # No usable SERIAL run in the sweep: compute the ground truth directly.
        harness = self._harness_factory(self.config)
        try:
            return run_with_watchdog(
                lambda: harness.run(ReductionStrategy.SERIAL, Backend.NONE, workload, 1).result,
                timeout,
                name="parabench-watchdog-reference",
                on_timeout=harness.abort,
            )
        except (BenchmarkTimeoutError, WorkerFailure) as exc:
            logger.error(f"Could not compute serial reference: {exc}")
            return None

    def _agrees(self, value: float, reference: float, workload: Workload) -> bool:
        if workload.monte_carlo:
            # Plausibility band, not a comparison with the reference.
            return bool(self.config.mc_lower <= value <= self.config.mc_upper)
        return bool(np.isclose(value, reference, rtol=self.config.tolerance, atol=0.0))

    def _to_record(
        self,
        attempt: _Attempt,
        workers: int,
        reference: Optional[float],
        workload: Workload,
    ) -> BenchmarkRecord:
        agrees = None
        deviated = None
        if attempt.status == RunStatus.OK and reference is not None and attempt.result is not None:
            if attempt.strategy.correct_by_design:
                agrees = self._agrees(attempt.result, reference, workload)
            else:
                deviated = not self._agrees(attempt.result, reference, workload)
        return BenchmarkRecord(
            strategy=attempt.strategy,
            backend=attempt.backend,
            workers=workers,
            status=attempt.status,
            elapsed_seconds=attempt.elapsed_seconds,
            result=attempt.result,
            timing=attempt.timing,
            agrees_with_serial=agrees,
            deviated=deviated,
            error=attempt.error,
            failed_worker=attempt.failed_worker,
            skip_reason=attempt.skip_reason,
        )


def _coerce(values: Sequence, enum_cls, argument: str) -> list:
    if not values:
        raise InvalidArgument(f"{argument} must not be empty", argument=argument, value=values)
    try:
        return [enum_cls(value) for value in values]
    except ValueError as exc:
        raise InvalidArgument(str(exc), argument=argument, value=values) from exc


def _fmt_bool(value: Optional[bool]) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def format_report_table(report: ComparisonReport) -> Table:
    """Render a report as a Rich table."""
    table = Table(
        title=f"{report.workload} (n={report.size}, workers={report.workers})",
        caption=f"reference={report.reference_result!r}  agreement={'PASS' if report.agreement_passed else 'FAIL'}",
    )
    table.add_column("Strategy", style="cyan")
    table.add_column("Backend")
    table.add_column("Elapsed (ms)", justify="right")
    table.add_column("Result", justify="right")
    table.add_column("Agrees", justify="center")
    table.add_column("Status")

    for record in report.records:
        agrees = _fmt_bool(record.agrees_with_serial)
        if record.deviated is not None:
            agrees = "deviated" if record.deviated else "matched"
        status = record.status.value
        if record.skip_reason:
            status = f"{status}: {record.skip_reason}"
        elif record.error and record.status != RunStatus.OK:
            status = f"{status}: {record.error}"
        table.add_row(
            record.strategy.value,
            record.backend.value,
            f"{record.elapsed_ms:.3f}" if record.elapsed_ms is not None else "-",
            f"{record.result:.10g}" if record.result is not None else "-",
            agrees,
            status,
        )
    return table


def format_scaling_table(points: List[ScalingPoint]) -> Table:
    table = Table(title="Scaling")
    table.add_column("Strategy", style="cyan")
    table.add_column("Backend")
    table.add_column("Workers", justify="right")
    table.add_column("Elapsed (ms)", justify="right")
    table.add_column("Speedup", justify="right")
    for point in points:
        table.add_row(
            point.strategy.value,
            point.backend.value,
            str(point.workers),
            f"{point.elapsed_ms:.3f}" if point.elapsed_ms is not None else "-",
            f"{point.speedup:.2f}x" if point.speedup is not None else point.status.value,
        )
    return table


def print_report(report: ComparisonReport, console: Optional[Console] = None) -> None:
    (console or get_console()).print(format_report_table(report))
