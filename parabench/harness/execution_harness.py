"""Runs one reduction strategy on one concurrency backend and times it.

Timing uses ``time.perf_counter`` (monotonic, unaffected by wall-clock
adjustments). The clock starts immediately before dispatch and stops after
the merge, so pool start-up and the join barrier are part of the measurement.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Union

from parabench.benchmark.defaults import get_default_value
from parabench.benchmark.exceptions import BenchmarkError, InvalidArgument
from parabench.benchmark.models import TimingStats
from parabench.benchmark.workloads import Workload
from parabench.harness.backends import Backend, Dispatcher, RunState, make_dispatcher
from parabench.harness.strategies import ReductionStrategy
from parabench.utils.logger import get_logger

logger = get_logger(__name__)


class RunOutcome(NamedTuple):
    """``(result, elapsed)`` of one run; elapsed is in seconds."""
    result: float
    elapsed: float


class Measurement(NamedTuple):
    """Result of the last repeat plus timing over all measured repeats."""
    result: float
    elapsed: float
    timing: TimingStats


@dataclass
class BenchmarkConfig:
    """Configuration for harness runs.

    Defaults come from ``BenchmarkDefaults`` (see ``parabench.benchmark.defaults``)
    and can be overridden per instance.
    """
    workers: int = field(default_factory=lambda: get_default_value("workers", 4))
    repeats: int = field(default_factory=lambda: get_default_value("repeats", 1))
    warmup: int = field(default_factory=lambda: get_default_value("warmup", 0))
    timeout_seconds: Optional[float] = field(default_factory=lambda: get_default_value("timeout_seconds", 60.0))
    tolerance: float = field(default_factory=lambda: get_default_value("tolerance", 1e-9))
    mc_lower: float = field(default_factory=lambda: get_default_value("mc_lower", 3.0))
    mc_upper: float = field(default_factory=lambda: get_default_value("mc_upper", 3.3))
    seed: Optional[int] = field(default_factory=lambda: get_default_value("seed", 42))

    def __post_init__(self):
        """Reject malformed values before anything is dispatched."""
        validate_workers(self.workers)
        if self.repeats < 1:
            raise InvalidArgument(f"repeats must be >= 1, got {self.repeats}", argument="repeats", value=self.repeats)
        if self.warmup < 0:
            raise InvalidArgument(f"warmup must be >= 0, got {self.warmup}", argument="warmup", value=self.warmup)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise InvalidArgument(
                f"timeout_seconds must be positive, got {self.timeout_seconds}",
                argument="timeout_seconds",
                value=self.timeout_seconds,
            )
        if not self.tolerance >= 0:
            raise InvalidArgument(
                f"tolerance must be >= 0, got {self.tolerance}", argument="tolerance", value=self.tolerance
            )
        if not self.mc_lower <= self.mc_upper:
            raise InvalidArgument(
                f"Monte-Carlo band [{self.mc_lower}, {self.mc_upper}] is empty",
                argument="mc_lower",
                value=(self.mc_lower, self.mc_upper),
            )


def validate_workers(workers: int) -> int:
    if isinstance(workers, bool) or not isinstance(workers, int) or workers <= 0:
        raise InvalidArgument(
            f"workers must be a positive integer, got {workers!r}",
            argument="workers",
            value=workers,
        )
    return workers


class ExecutionHarness:
    """Executes a strategy under a backend and tracks the run's lifecycle.

    ``state`` follows IDLE -> DISPATCHED -> MERGED, and REPORTED once the
    caller has recorded the outcome; ``worker_states`` records each worker's
    latest state by index. One harness instance serves one run at a time.
    """

    def __init__(self, config: Optional[BenchmarkConfig] = None):
        self.config = config or BenchmarkConfig()
        self.state = RunState.IDLE
        self.worker_states: Dict[int, RunState] = {}
        self._state_lock = threading.Lock()
        self._dispatcher: Optional[Dispatcher] = None
        self._aborted = False

    def mark_reported(self) -> None:
        """Close the lifecycle of the last run after its record was written."""
        self._transition(RunState.REPORTED)

    def abort(self) -> None:
        """Abandon the in-flight run and refuse further runs on this harness.

        Called from another thread when a watchdog gives up. Process workers
        are terminated; running threads cannot be interrupted and finish on
        their own.
        """
        with self._state_lock:
            self._aborted = True
            dispatcher = self._dispatcher
        if dispatcher is not None:
            logger.debug(f"aborting {dispatcher.backend.value} run")
            dispatcher.abort()

    def _set_worker_state(self, index: int, state: RunState) -> None:
        with self._state_lock:
            self.worker_states[index] = state
        logger.debug(f"worker {index} -> {state.value}")

    def _transition(self, state: RunState) -> None:
        logger.debug(f"run {self.state.value} -> {state.value}")
        self.state = state

    def run(
        self,
        strategy: Union[ReductionStrategy, str],
        backend: Union[Backend, str],
        workload: Workload,
        workers: Optional[int] = None,
    ) -> RunOutcome:
        """Run ``strategy`` once and return ``(result, elapsed_seconds)``.

        Raises:
            InvalidArgument: Bad worker count.
            SerializationError: The process backend could not pickle a task.
            WorkerFailure: A worker raised; carries its index.
            BenchmarkError: The harness was aborted by a watchdog.
        """
        strategy = ReductionStrategy(strategy)
        backend = Backend(backend)
        workers = validate_workers(self.config.workers if workers is None else workers)

        dispatcher = make_dispatcher(backend, self._set_worker_state)
        with self._state_lock:
            if self._aborted:
                raise BenchmarkError("harness was aborted; start a new one")
            self.worker_states = {}
            self._dispatcher = dispatcher
        self.state = RunState.IDLE

        start = time.perf_counter()
        self._transition(RunState.DISPATCHED)
        result = strategy.run(workload, workers, dispatcher)
        elapsed = time.perf_counter() - start
        self._transition(RunState.MERGED)
        return RunOutcome(float(result), elapsed)

    def measure(
        self,
        strategy: Union[ReductionStrategy, str],
        backend: Union[Backend, str],
        workload: Workload,
        workers: Optional[int] = None,
        repeats: Optional[int] = None,
        warmup: Optional[int] = None,
    ) -> Measurement:
        """Run ``warmup`` unmeasured then ``repeats`` measured times.

        ``elapsed`` is the minimum over measured repeats; ``result`` comes from
        the last repeat.
        """
        repeats = self.config.repeats if repeats is None else repeats
        warmup = self.config.warmup if warmup is None else warmup
        if repeats < 1:
            raise InvalidArgument(f"repeats must be >= 1, got {repeats}", argument="repeats", value=repeats)

        for _ in range(warmup):
            self.run(strategy, backend, workload, workers)

        samples: List[float] = []
        outcome = None
        for _ in range(repeats):
            outcome = self.run(strategy, backend, workload, workers)
            samples.append(outcome.elapsed)
        assert outcome is not None
        return Measurement(outcome.result, min(samples), TimingStats.from_seconds(samples, warmup=warmup))
