"""Balanced, order-preserving splitting of an index range across workers."""

from __future__ import annotations

from typing import List, Tuple

from parabench.benchmark.exceptions import InvalidArgument

PartitionPlan = Tuple[range, ...]


def partition(n: int, workers: int) -> PartitionPlan:
    """Split ``[0, n)`` into at most ``workers`` contiguous half-open ranges.

    The first ``n % workers`` partitions receive one extra element, so sizes
    differ by at most one. Partition ``i`` always precedes partition ``i + 1``
    in index space, which keeps merges deterministic. Empty ranges are never
    emitted: with ``n < workers`` the plan has ``n`` partitions.

    Args:
        n: Length of the index domain (>= 0)
        workers: Requested worker count (>= 1)

    Returns:
        Tuple of ranges whose concatenation is exactly ``range(n)``.

    Raises:
        InvalidArgument: If ``workers`` is not a positive integer or ``n`` is negative.
    """
    if isinstance(workers, bool) or not isinstance(workers, int) or workers <= 0:
        raise InvalidArgument(
            f"workers must be a positive integer, got {workers!r}",
            argument="workers",
            value=workers,
        )
    if isinstance(n, bool) or not isinstance(n, int) or n < 0:
        raise InvalidArgument(
            f"n must be a non-negative integer, got {n!r}",
            argument="n",
            value=n,
        )
    if n == 0:
        return ()

    base, remainder = divmod(n, workers)
    plan: List[range] = []
    start = 0
    for index in range(min(workers, n)):
        size = base + 1 if index < remainder else base
        plan.append(range(start, start + size))
        start += size
    return tuple(plan)


def chunk_bounds(plan: PartitionPlan) -> List[Tuple[int, int]]:
    """Return ``(start, stop)`` pairs for display and logging."""
    return [(chunk.start, chunk.stop) for chunk in plan]
