"""Tests for cross-strategy comparisons, agreement checks and timeouts."""

import itertools
import os
import subprocess
import sys
import textwrap
import threading
import time
from concurrent.futures.process import BrokenProcessPool
from pathlib import Path

import numpy as np
import pytest
from rich.console import Console

# Add repo root to path
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from parabench.benchmark.comparison import (
    ComparisonRunner,
    format_report_table,
    format_scaling_table,
    invalid_combination_reason,
    run_with_watchdog,
)
from parabench.benchmark.exceptions import BenchmarkTimeoutError, InvalidArgument, WorkerFailure
from parabench.benchmark.models import RunStatus
from parabench.benchmark.workloads import (
    Workload,
    make_increments,
    make_monte_carlo_pi,
    make_sqrt_sum,
    pi_finalize,
    sqrt_term,
    unit_term,
)
from parabench.harness.backends import Backend
from parabench.harness.execution_harness import BenchmarkConfig, ExecutionHarness
from parabench.harness.strategies import ReductionStrategy

CORRECT_STRATEGIES = [
    ReductionStrategy.SERIAL,
    ReductionStrategy.ATOMIC,
    ReductionStrategy.PARTITIONED,
]


@pytest.fixture
def runner():
    return ComparisonRunner(BenchmarkConfig(workers=2, timeout_seconds=60.0, seed=42))


@pytest.fixture
def blocking_workload():
    """Workload whose very first element blocks until the test finishes."""
    gate = threading.Event()
    calls = itertools.count()

    def block_first_call(x):
        if next(calls) == 0:
            gate.wait()
        return x

    yield Workload(name="blocking", values=np.ones(100), element_fn=block_first_call)
    gate.set()


class TestCompare:
    """Cross product runs and the agreement verdict."""

    def test_all_combinations_in_order(self, runner):
        report = runner.compare(list(ReductionStrategy), list(Backend), make_sqrt_sum(1000))
        pairs = [(r.strategy, r.backend) for r in report.records]
        assert pairs == list(itertools.product(ReductionStrategy, Backend))
        assert report.agreement_passed is True
        assert report.reference_result == pytest.approx(21097.455887, abs=1e-3)

    def test_correct_strategies_agree_with_serial(self, runner):
        report = runner.compare(CORRECT_STRATEGIES, [Backend.NONE, Backend.THREADS], make_sqrt_sum(1000), workers=4)
        for record in report.records:
            assert record.status == RunStatus.OK
            assert record.agrees_with_serial is True
            assert record.deviated is None
            assert record.elapsed_ms > 0

    def test_racy_is_skipped_without_parallelism(self, runner):
        report = runner.compare([ReductionStrategy.RACY], [Backend.NONE, Backend.THREADS], make_increments(1000), workers=1)
        assert [r.status for r in report.records] == [RunStatus.SKIPPED, RunStatus.SKIPPED]
        assert all(r.skip_reason for r in report.records)

    def test_racy_is_annotated_not_checked(self, runner):
        report = runner.compare(
            [ReductionStrategy.SERIAL, ReductionStrategy.RACY], [Backend.THREADS], make_increments(10_000)
        )
        racy = report.records_for(ReductionStrategy.RACY)[0]
        assert racy.status == RunStatus.OK
        assert racy.agrees_with_serial is None
        assert racy.deviated is not None
        assert report.agreement_passed is True

    def test_reference_computed_when_serial_not_requested(self, runner):
        report = runner.compare([ReductionStrategy.PARTITIONED], [Backend.THREADS], make_sqrt_sum(500))
        assert report.reference_result is not None
        assert report.records[0].agrees_with_serial is True

    def test_monte_carlo_sanity_bound(self, runner):
        workload = make_monte_carlo_pi(1_000_000, seed=42)
        report = runner.compare(CORRECT_STRATEGIES, list(Backend), workload)
        assert report.seed == 42
        assert report.agreement_passed is True
        for record in report.records:
            assert record.status == RunStatus.OK
            assert 3.0 <= record.result <= 3.3

    @pytest.mark.parametrize("hits, agrees", [(749, False), (750, True), (825, True), (826, False)])
    def test_monte_carlo_band_is_inclusive(self, runner, hits, agrees):
        # 1000 samples: the estimate is 4 * hits / 1000, so 750 -> 3.0 and 825 -> 3.3.
        values = np.zeros(1000)
        values[:hits] = 1.0
        workload = Workload(
            name="mc-fixed", values=values, element_fn=unit_term, finalize_fn=pi_finalize, monte_carlo=True
        )
        report = runner.compare([ReductionStrategy.PARTITIONED], [Backend.THREADS], workload)
        assert report.plausible_range == (3.0, 3.3)
        assert report.records[0].agrees_with_serial is agrees
        assert report.agreement_passed is agrees

    def test_monte_carlo_band_is_configurable(self):
        runner = ComparisonRunner(BenchmarkConfig(workers=2, mc_lower=2.9, mc_upper=3.4))
        values = np.zeros(1000)
        values[:740] = 1.0  # 2.96
        workload = Workload(
            name="mc-fixed", values=values, element_fn=unit_term, finalize_fn=pi_finalize, monte_carlo=True
        )
        report = runner.compare([ReductionStrategy.ATOMIC], [Backend.NONE], workload)
        assert report.agreement_passed is True

    def test_worker_failure_is_recorded_not_raised(self, runner):
        workload = Workload(name="failing", values=np.array([1.0, 4.0, -1.0, 9.0]), element_fn=sqrt_term)
        report = runner.compare([ReductionStrategy.PARTITIONED], [Backend.THREADS], workload)
        record = report.records[0]
        assert record.status == RunStatus.FAILED
        assert record.failed_worker == 1
        assert record.result is None

    def test_broken_process_pool_names_no_worker(self):
        class BrokenPoolHarness(ExecutionHarness):
            def measure(self, strategy, backend, workload, workers=None, repeats=None, warmup=None):
                if backend is Backend.PROCESSES:
                    raise WorkerFailure(0, BrokenProcessPool("a child process terminated abruptly"))
                return super().measure(strategy, backend, workload, workers, repeats, warmup)

        runner = ComparisonRunner(BenchmarkConfig(workers=2), harness_factory=BrokenPoolHarness)
        report = runner.compare([ReductionStrategy.PARTITIONED], [Backend.PROCESSES, Backend.THREADS], make_increments(10))
        broken, ok = report.records
        assert broken.status == RunStatus.FAILED
        assert broken.failed_worker is None
        assert ok.status == RunStatus.OK

    def test_serialization_error_does_not_abort_sweep(self, runner):
        workload = Workload(name="lambda", values=np.ones(50), element_fn=lambda x: x)
        report = runner.compare([ReductionStrategy.PARTITIONED], [Backend.PROCESSES, Backend.THREADS], workload)
        failed, ok = report.records
        assert failed.status == RunStatus.FAILED
        assert failed.result is None
        assert ok.status == RunStatus.OK
        assert ok.result == 50.0
        assert report.agreement_passed is True

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"strategies": [], "backends": ["none"]},
            {"strategies": ["serial"], "backends": ["gpu"]},
            {"strategies": ["fastest"], "backends": ["none"]},
            {"strategies": ["serial"], "backends": ["none"], "workers": 0},
            {"strategies": ["serial"], "backends": ["none"], "timeout": -1},
        ],
    )
    def test_invalid_input_aborts_before_any_run(self, kwargs):
        calls = []

        def factory(config):
            calls.append(config)
            raise AssertionError("no run should start")

        runner = ComparisonRunner(BenchmarkConfig(workers=2), harness_factory=factory)
        with pytest.raises(InvalidArgument):
            runner.compare(workload=make_increments(10), **kwargs)
        assert calls == []


class TestTimeouts:
    """Per-run watchdog timeouts."""

    def test_blocked_run_times_out_and_others_complete(self, runner, blocking_workload):
        timeout = 0.5
        start = time.perf_counter()
        report = runner.compare(CORRECT_STRATEGIES, [Backend.NONE], blocking_workload, timeout=timeout)
        total = time.perf_counter() - start

        blocked, atomic, partitioned = report.records
        assert blocked.status == RunStatus.TIMED_OUT
        assert timeout <= blocked.elapsed_seconds < timeout + 1.0
        assert blocked.result is None
        assert atomic.status == RunStatus.OK and atomic.result == 100.0
        assert partitioned.status == RunStatus.OK and partitioned.result == 100.0
        # The timed-out run is excluded from the agreement check.
        assert report.agreement_passed is True
        assert total < timeout + 5.0

    def test_watchdog_raises_after_timeout(self):
        gate = threading.Event()
        try:
            with pytest.raises(BenchmarkTimeoutError) as excinfo:
                run_with_watchdog(gate.wait, 0.2)
            assert excinfo.value.timeout_seconds == 0.2
            assert excinfo.value.elapsed_seconds >= 0.2
        finally:
            gate.set()

    def test_watchdog_propagates_errors(self):
        def boom():
            raise KeyError("boom")

        with pytest.raises(KeyError):
            run_with_watchdog(boom, 5.0)

    def test_watchdog_propagates_system_exit(self):
        def leave():
            raise SystemExit(3)

        with pytest.raises(SystemExit) as excinfo:
            run_with_watchdog(leave, 5.0)
        assert excinfo.value.code == 3

    def test_watchdog_calls_on_timeout(self):
        gate = threading.Event()
        aborted = []
        try:
            with pytest.raises(BenchmarkTimeoutError):
                run_with_watchdog(gate.wait, 0.1, on_timeout=lambda: aborted.append(True))
        finally:
            gate.set()
        assert aborted == [True]

    def test_timed_out_process_run_lets_interpreter_exit(self):
        # time.sleep pickles by reference, so the workers block inside real child processes.
        script = textwrap.dedent(
            """
            import time

            import numpy as np

            from parabench.benchmark.comparison import ComparisonRunner
            from parabench.benchmark.workloads import Workload
            from parabench.harness.execution_harness import BenchmarkConfig

            if __name__ == "__main__":
                workload = Workload(name="sleepy", values=np.full(2, 3600.0), element_fn=time.sleep)
                runner = ComparisonRunner(BenchmarkConfig(workers=2))
                report = runner.compare(["partitioned"], ["processes"], workload, timeout=0.5)
                print("STATUS", report.records[0].status.value)
            """
        )
        env = dict(os.environ, PYTHONPATH=os.pathsep.join(filter(None, [str(repo_root), os.environ.get("PYTHONPATH")])))
        try:
            completed = subprocess.run(
                [sys.executable, "-c", script],
                cwd=str(repo_root),
                env=env,
                capture_output=True,
                text=True,
                timeout=60,
            )
        except subprocess.TimeoutExpired:
            pytest.fail("interpreter did not exit after a timed-out process run")
        assert completed.returncode == 0, completed.stderr
        assert "STATUS timed_out" in completed.stdout


class TestCombinations:
    """Which strategy/backend pairs are meaningful."""

    def test_racy_needs_parallel_backend(self):
        assert invalid_combination_reason(ReductionStrategy.RACY, Backend.NONE, 4) is not None

    def test_racy_needs_several_workers(self):
        assert invalid_combination_reason(ReductionStrategy.RACY, Backend.THREADS, 1) is not None

    @pytest.mark.parametrize("strategy", CORRECT_STRATEGIES)
    @pytest.mark.parametrize("backend", list(Backend))
    def test_correct_strategies_always_run(self, strategy, backend):
        assert invalid_combination_reason(strategy, backend, 1) is None


class TestReporting:
    """Tables and scaling output."""

    def test_report_table_lists_every_record(self, runner):
        report = runner.compare(list(ReductionStrategy), [Backend.NONE, Backend.THREADS], make_increments(2000))
        table = format_report_table(report)
        assert table.row_count == len(report.records)

        console = Console(width=200, record=True)
        console.print(table)
        text = console.export_text()
        assert "partitioned" in text
        assert "skipped" in text
        assert "agreement=PASS" in text

    def test_report_round_trips_through_json(self, runner):
        report = runner.compare(CORRECT_STRATEGIES, [Backend.NONE], make_sqrt_sum(100))
        restored = type(report).model_validate_json(report.model_dump_json())
        assert restored == report

    def test_scaling_reports_speedups(self, runner):
        points = runner.scaling(
            [ReductionStrategy.SERIAL, ReductionStrategy.PARTITIONED],
            [Backend.THREADS],
            make_sqrt_sum(20_000),
            worker_counts=[1, 2],
        )
        assert [(p.strategy, p.workers) for p in points] == [
            (ReductionStrategy.SERIAL, 1),
            (ReductionStrategy.PARTITIONED, 1),
            (ReductionStrategy.SERIAL, 2),
            (ReductionStrategy.PARTITIONED, 2),
        ]
        assert all(p.speedup is not None and p.speedup > 0 for p in points)
        assert format_scaling_table(points).row_count == 4
