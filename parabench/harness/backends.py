"""Concurrency backends that dispatch per-worker tasks and collect their results.

Every dispatcher applies the same contract: tasks are indexed by worker,
results come back in worker-index order, and no result is read until every
dispatched task has finished (the join barrier). A task that raises surfaces
as ``WorkerFailure`` carrying the lowest failing worker index.

Worker states go DISPATCHED on submit, RUNNING once the task body starts
and DONE when it returns. Process workers never report RUNNING: their start
happens in the child and is not observed by the parent.
"""

from __future__ import annotations

import multiprocessing
import pickle
import threading
from concurrent.futures import CancelledError, Executor, Future, ProcessPoolExecutor, ThreadPoolExecutor, wait
from concurrent.futures.process import BrokenProcessPool
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from parabench.benchmark.exceptions import SerializationError, WorkerFailure
from parabench.harness.accumulators import AccessMode, ProcessSharedAccumulator, SharedAccumulator
from parabench.utils.logger import get_logger

logger = get_logger(__name__)

Cell = Union[SharedAccumulator, ProcessSharedAccumulator]
# task(cell, *payload) -> partial result
Task = Callable[..., float]
StateCallback = Callable[[int, "RunState"], None]


class Backend(str, Enum):
    """Where the workers of a run execute."""
    NONE = "none"  # direct sequential calls in the caller
    THREADS = "threads"
    PROCESSES = "processes"

    @property
    def is_parallel(self) -> bool:
        return self is not Backend.NONE


class RunState(str, Enum):
    """Lifecycle of a run; workers only ever visit DISPATCHED, RUNNING and DONE."""
    IDLE = "idle"
    DISPATCHED = "dispatched"
    RUNNING = "running"
    DONE = "done"
    MERGED = "merged"
    REPORTED = "reported"


def _noop_state(index: int, state: RunState) -> None:
    pass


class Dispatcher:
    """Base dispatcher; subclasses implement ``_execute``."""

    backend: Backend

    def __init__(self, on_worker_state: Optional[StateCallback] = None):
        self._on_worker_state = on_worker_state or _noop_state
        self._pool_lock = threading.Lock()
        self._pool: Optional[Executor] = None
        self._aborted = False

    def abort(self) -> None:
        """Give up on the current run: cancel queued tasks and release the pool.

        Safe to call from another thread at any point, including before the
        pool exists; a pool created afterwards is shut down on attach.
        """
        with self._pool_lock:
            self._aborted = True
            pool = self._pool
        if pool is not None:
            self._shutdown(pool)

    def _attach(self, pool: Executor) -> None:
        with self._pool_lock:
            self._pool = pool
            aborted = self._aborted
        if aborted:
            self._shutdown(pool)

    def _shutdown(self, pool: Executor) -> None:
        pool.shutdown(wait=False, cancel_futures=True)

    def new_cell(self, mode: AccessMode) -> Cell:
        return SharedAccumulator(mode)

    def run_tasks(
        self,
        task: Task,
        payloads: Sequence[Tuple[Any, ...]],
        cell: Optional[Cell] = None,
    ) -> List[float]:
        """Run ``task(cell, *payload)`` once per payload and return results by index."""
        if not payloads:
            return []
        return self._execute(task, list(payloads), cell)

    def _execute(self, task: Task, payloads: List[Tuple[Any, ...]], cell: Optional[Cell]) -> List[float]:
        raise NotImplementedError

    def _collect(self, futures: List[Future]) -> List[float]:
        """Wait for every future, then return results or raise for the lowest failing index.

        When a worker process dies the whole pool breaks and every pending
        future carries ``BrokenProcessPool``, so the reported index is then the
        lowest unfinished worker, not necessarily the one that died.
        """
        # Join barrier: nothing is read before every future has finished.
        wait(futures)
        results: List[float] = []
        for index, future in enumerate(futures):
            if future.cancelled():
                raise WorkerFailure(index, CancelledError(f"worker {index} was cancelled"))
            error = future.exception()
            if error is not None:
                raise WorkerFailure(index, error) from error
            results.append(future.result())
        return results

    def _track(self, index: int, future: Future) -> None:
        future.add_done_callback(lambda _f, i=index: self._on_worker_state(i, RunState.DONE))

    def _run_worker(self, index: int, task: Task, cell: Optional[Cell], payload: Tuple[Any, ...]) -> float:
        self._on_worker_state(index, RunState.RUNNING)
        return task(cell, *payload)


class InlineDispatcher(Dispatcher):
    """Runs each worker's task to completion in the calling thread, in index order."""

    backend = Backend.NONE

    def _execute(self, task: Task, payloads: List[Tuple[Any, ...]], cell: Optional[Cell]) -> List[float]:
        results: List[float] = []
        for index, payload in enumerate(payloads):
            self._on_worker_state(index, RunState.RUNNING)
            try:
                results.append(task(cell, *payload))
            except Exception as exc:
                raise WorkerFailure(index, exc) from exc
            self._on_worker_state(index, RunState.DONE)
        return results


class ThreadDispatcher(Dispatcher):
    """One pool thread per worker; threads share the input read-only.

    ``abort`` only cancels tasks that have not started. A thread that is
    already running cannot be stopped and keeps the interpreter from exiting
    until its task returns.
    """

    backend = Backend.THREADS

    def _execute(self, task: Task, payloads: List[Tuple[Any, ...]], cell: Optional[Cell]) -> List[float]:
        futures: List[Future] = []
        with ThreadPoolExecutor(
            max_workers=len(payloads),
            thread_name_prefix="parabench-worker",
        ) as pool:
            self._attach(pool)
            for index, payload in enumerate(payloads):
                self._on_worker_state(index, RunState.DISPATCHED)
                future = pool.submit(self._run_worker, index, task, cell, payload)
                self._track(index, future)
                futures.append(future)
        return self._collect(futures)


# Cell installed in each worker process by the pool initializer.
_process_cell: Optional[ProcessSharedAccumulator] = None


def _install_process_cell(cell: Optional[ProcessSharedAccumulator]) -> None:
    global _process_cell
    _process_cell = cell


def _run_serialized(blob: bytes) -> float:
    task, payload = pickle.loads(blob)
    return task(_process_cell, *payload)


class ProcessDispatcher(Dispatcher):
    """One worker process per task; inputs cross the boundary as explicit pickles.

    Each task and its payload are serialized before the pool starts, so an
    unpicklable element function fails fast with ``SerializationError``
    instead of hanging a worker. Shared cells reach workers by inheritance
    through the pool initializer.

    ``abort`` terminates the worker processes, so an abandoned run does not
    keep the interpreter alive at exit.
    """

    backend = Backend.PROCESSES

    def __init__(self, on_worker_state: Optional[StateCallback] = None, context: Optional[Any] = None):
        super().__init__(on_worker_state)
        self._context = context or multiprocessing.get_context()

    def new_cell(self, mode: AccessMode) -> Cell:
        return ProcessSharedAccumulator(mode, context=self._context)

    def _execute(self, task: Task, payloads: List[Tuple[Any, ...]], cell: Optional[Cell]) -> List[float]:
        if cell is not None and not isinstance(cell, ProcessSharedAccumulator):
            raise TypeError("process workers need a ProcessSharedAccumulator")
        blobs = [self._serialize(index, task, payload) for index, payload in enumerate(payloads)]

        futures: List[Future] = []
        with ProcessPoolExecutor(
            max_workers=len(blobs),
            mp_context=self._context,
            initializer=_install_process_cell,
            initargs=(cell,),
        ) as pool:
            self._attach(pool)
            for index, blob in enumerate(blobs):
                self._on_worker_state(index, RunState.DISPATCHED)
                future = pool.submit(_run_serialized, blob)
                self._track(index, future)
                futures.append(future)
        try:
            return self._collect(futures)
        except WorkerFailure as failure:
            if isinstance(failure.cause, BrokenProcessPool):
                logger.error(f"Worker process {failure.index} terminated abruptly")
            raise

    def _shutdown(self, pool: Executor) -> None:
        # shutdown() drops the executor's process table, so read it first.
        processes = list((getattr(pool, "_processes", None) or {}).values())
        pool.shutdown(wait=False, cancel_futures=True)
        for process in processes:
            if process.is_alive():
                process.terminate()
        if processes:
            logger.warning(f"Terminated {len(processes)} worker process(es) of an abandoned run")

    @staticmethod
    def _serialize(index: int, task: Task, payload: Tuple[Any, ...]) -> bytes:
        try:
            return pickle.dumps((task, payload))
        except (pickle.PicklingError, AttributeError, TypeError) as exc:
            target = ", ".join(_describe(obj) for obj in (task, *payload) if callable(obj)) or "payload"
            raise SerializationError(
                f"Cannot send task for worker {index} to a process: {exc}",
                target=target,
                original_error=exc,
            ) from exc


def _describe(obj: Any) -> str:
    return getattr(obj, "__qualname__", None) or type(obj).__name__


_DISPATCHERS = {
    Backend.NONE: InlineDispatcher,
    Backend.THREADS: ThreadDispatcher,
    Backend.PROCESSES: ProcessDispatcher,
}


def make_dispatcher(backend: Union[Backend, str], on_worker_state: Optional[StateCallback] = None) -> Dispatcher:
    return _DISPATCHERS[Backend(backend)](on_worker_state)
