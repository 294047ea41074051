"""The closed set of reduction strategies compared by the harness.

All strategies compute ``workload.finalize(sum(f(x) for x in values))``:

- SERIAL: one accumulator, one sequential pass. The reference result.
- RACY: every worker does load / compute / store on one unguarded shared
  cell. Lost updates are expected under concurrency; its result is never
  treated as correct.
- ATOMIC: every worker does a locked fetch-and-add per element on one shared
  cell. Correct, but pays synchronization per element.
- PARTITIONED: each worker reduces a disjoint partition into a private slot;
  slots are summed in partition order after the join barrier. Correct and
  deterministic, with synchronization only at the merge.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from parabench.harness.accumulators import AccessMode
from parabench.harness.backends import Cell, Dispatcher
from parabench.harness.partition import partition
from parabench.benchmark.workloads import Workload

ElementFn = Callable[[Any], float]


# Worker tasks. Module-level so they pickle by reference for process workers.

def reduce_chunk(cell: Optional[Cell], element_fn: ElementFn, chunk: List[Any]) -> float:
    total = 0.0
    for x in chunk:
        total += element_fn(x)
    return total


def racy_accumulate(cell: Cell, element_fn: ElementFn, chunk: List[Any]) -> float:
    for x in chunk:
        # Unsynchronized read-modify-write: another worker's store between
        # load() and store() is overwritten.
        cell.store(cell.load() + element_fn(x))
    return 0.0


def atomic_accumulate(cell: Cell, element_fn: ElementFn, chunk: List[Any]) -> float:
    for x in chunk:
        cell.fetch_add(element_fn(x))
    return 0.0


def _chunk_payloads(workload: Workload, workers: int) -> list:
    return [
        (workload.element_fn, workload.chunk(part.start, part.stop))
        for part in partition(len(workload), workers)
    ]


def run_serial(workload: Workload, workers: int, dispatcher: Dispatcher) -> float:
    payload = (workload.element_fn, workload.chunk(0, len(workload)))
    totals = dispatcher.run_tasks(reduce_chunk, [payload])
    return workload.finalize(totals[0] if totals else 0.0)


def run_racy(workload: Workload, workers: int, dispatcher: Dispatcher) -> float:
    cell = dispatcher.new_cell(AccessMode.UNGUARDED)
    dispatcher.run_tasks(racy_accumulate, _chunk_payloads(workload, workers), cell)
    return workload.finalize(cell.load())


def run_atomic(workload: Workload, workers: int, dispatcher: Dispatcher) -> float:
    cell = dispatcher.new_cell(AccessMode.ATOMIC)
    dispatcher.run_tasks(atomic_accumulate, _chunk_payloads(workload, workers), cell)
    return workload.finalize(cell.load())


def run_partitioned(workload: Workload, workers: int, dispatcher: Dispatcher) -> float:
    payloads = _chunk_payloads(workload, workers)
    slots = [0.0] * len(payloads)
    for index, partial in enumerate(dispatcher.run_tasks(reduce_chunk, payloads)):
        slots[index] = partial
    total = 0.0
    for partial in slots:
        total += partial
    return workload.finalize(total)


class ReductionStrategy(str, Enum):
    """Interchangeable reduction algorithms with a uniform ``run`` capability."""
    SERIAL = "serial"
    RACY = "racy"
    ATOMIC = "atomic"
    PARTITIONED = "partitioned"

    @property
    def correct_by_design(self) -> bool:
        return self is not ReductionStrategy.RACY

    def run(self, workload: Workload, workers: int, dispatcher: Dispatcher) -> float:
        return _RUNNERS[self](workload, workers, dispatcher)


_RUNNERS: Dict[ReductionStrategy, Callable[[Workload, int, Dispatcher], float]] = {
    ReductionStrategy.SERIAL: run_serial,
    ReductionStrategy.RACY: run_racy,
    ReductionStrategy.ATOMIC: run_atomic,
    ReductionStrategy.PARTITIONED: run_partitioned,
}
