"""parabench: run one reduction under several execution strategies and compare them."""

from parabench.benchmark.comparison import ComparisonRunner, format_report_table, print_report
from parabench.benchmark.exceptions import (
    BenchmarkError,
    BenchmarkTimeoutError,
    InvalidArgument,
    SerializationError,
    WorkerFailure,
)
from parabench.benchmark.models import BenchmarkRecord, ComparisonReport, RunStatus
from parabench.benchmark.workloads import Workload, make_increments, make_monte_carlo_pi, make_sqrt_sum
from parabench.harness.backends import Backend
from parabench.harness.execution_harness import BenchmarkConfig, ExecutionHarness, RunOutcome
from parabench.harness.partition import partition
from parabench.harness.strategies import ReductionStrategy

__version__ = "0.1.0"

__all__ = [
    "Backend",
    "BenchmarkConfig",
    "BenchmarkError",
    "BenchmarkRecord",
    "BenchmarkTimeoutError",
    "ComparisonReport",
    "ComparisonRunner",
    "ExecutionHarness",
    "InvalidArgument",
    "ReductionStrategy",
    "RunOutcome",
    "RunStatus",
    "SerializationError",
    "WorkerFailure",
    "Workload",
    "format_report_table",
    "make_increments",
    "make_monte_carlo_pi",
    "make_sqrt_sum",
    "partition",
    "print_report",
]
