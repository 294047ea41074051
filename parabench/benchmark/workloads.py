"""Reduction workloads: an immutable input sequence and a per-element function.

Element and finalize functions are module-level so they pickle by reference
and can be shipped to process workers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np

from parabench.benchmark.exceptions import InvalidArgument


def sqrt_term(x: float) -> float:
    return math.sqrt(x)


def unit_term(x: float) -> float:
    return x


def in_unit_circle(point) -> float:
    """1.0 when the (x, y) sample lies strictly inside the unit circle."""
    x, y = point
    return 1.0 if x * x + y * y < 1.0 else 0.0


def identity_finalize(total: float, count: int) -> float:
    return total


def pi_finalize(total: float, count: int) -> float:
    """Turn a hit count into the Monte-Carlo estimate of pi."""
    if count == 0:
        return 0.0
    return 4.0 * (total / count)


@dataclass(frozen=True, eq=False)
class Workload:
    """A reduction ``finalize(sum(element_fn(x) for x in values), len(values))``.

    ``values`` is made read-only on construction; every strategy sees the same
    array for the lifetime of the workload.
    """

    name: str
    values: np.ndarray
    element_fn: Callable[[Any], float]
    finalize_fn: Callable[[float, int], float] = identity_finalize
    monte_carlo: bool = False

    def __post_init__(self) -> None:
        values = np.asarray(self.values).view()
        values.flags.writeable = False
        object.__setattr__(self, "values", values)

    def __len__(self) -> int:
        return int(self.values.shape[0])

    def chunk(self, start: int, stop: int) -> list:
        """Plain-Python copy of ``values[start:stop]`` for worker iteration."""
        return self.values[start:stop].tolist()

    def finalize(self, total: float) -> float:
        return self.finalize_fn(total, len(self))


def make_sqrt_sum(n: int = 1000) -> Workload:
    """``sqrt(1) + sqrt(2) + ... + sqrt(n)``."""
    _check_size(n)
    return Workload(
        name="sqrt-sum",
        values=np.arange(1, n + 1, dtype=np.float64),
        element_fn=sqrt_term,
    )


def make_increments(n: int = 1_000_000) -> Workload:
    """``n`` unit increments; the serial result is exactly ``n``."""
    _check_size(n)
    return Workload(
        name="increments",
        values=np.ones(n, dtype=np.float64),
        element_fn=unit_term,
    )


def make_monte_carlo_pi(num_points: int = 1_000_000, seed: Optional[int] = 42) -> Workload:
    """Seeded uniform (x, y) samples in the unit square.

    The samples are generated once here; every strategy run against this
    workload consumes the identical sample set.
    """
    _check_size(num_points)
    rng = np.random.default_rng(seed)
    return Workload(
        name="monte-carlo-pi",
        values=rng.random((num_points, 2)),
        element_fn=in_unit_circle,
        finalize_fn=pi_finalize,
        monte_carlo=True,
    )


WORKLOAD_FACTORIES: Dict[str, Callable[..., Workload]] = {
    "sqrt-sum": make_sqrt_sum,
    "increments": make_increments,
    "monte-carlo-pi": make_monte_carlo_pi,
}


def make_workload(name: str, size: int, seed: Optional[int] = None) -> Workload:
    """Build a named workload; ``seed`` only affects Monte-Carlo sampling."""
    factory = WORKLOAD_FACTORIES.get(name)
    if factory is None:
        raise InvalidArgument(
            f"Unknown workload '{name}'. Expected one of: {', '.join(sorted(WORKLOAD_FACTORIES))}",
            argument="workload",
            value=name,
        )
    if factory is make_monte_carlo_pi:
        return factory(size, seed=seed)
    return factory(size)


def _check_size(n: int) -> None:
    if isinstance(n, bool) or not isinstance(n, int) or n < 0:
        raise InvalidArgument(f"size must be a non-negative integer, got {n!r}", argument="size", value=n)
