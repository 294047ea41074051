"""Pydantic models for benchmark records and comparison reports.

All models include schemaVersion for forward compatibility.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from parabench.harness.backends import Backend
from parabench.harness.strategies import ReductionStrategy


class RunStatus(str, Enum):
    """Outcome of one (strategy, backend) run."""
    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class TimingStats(BaseModel):
    """Wall-clock statistics over the measured repeats of one run."""

    mean_ms: float = Field(..., description="Mean elapsed time in milliseconds")
    median_ms: float = Field(..., description="Median elapsed time in milliseconds")
    std_ms: float = Field(..., description="Standard deviation in milliseconds")
    min_ms: float = Field(..., description="Minimum elapsed time in milliseconds")
    max_ms: float = Field(..., description="Maximum elapsed time in milliseconds")
    iterations: int = Field(..., description="Number of measured repeats")
    warmup_iterations: int = Field(0, description="Number of unmeasured warmup runs")
    raw_times_ms: Optional[List[float]] = Field(default=None, description="Raw timing measurements")

    schemaVersion: str = Field("1.0", description="Schema version for forward compatibility")

    model_config = ConfigDict(frozen=True)

    @field_validator("raw_times_ms", mode="before")
    @classmethod
    def validate_raw_times_ms(cls, v):
        """Coerce measurements to a flat list of floats."""
        if v is None:
            return None
        if isinstance(v, (int, float)):
            return [float(v)]
        return [float(item) for item in v] or None

    @classmethod
    def from_seconds(cls, samples_s: List[float], warmup: int = 0) -> TimingStats:
        times_ms = np.asarray(samples_s, dtype=np.float64) * 1000.0
        return cls(
            mean_ms=float(np.mean(times_ms)),
            median_ms=float(np.median(times_ms)),
            std_ms=float(np.std(times_ms)),
            min_ms=float(np.min(times_ms)),
            max_ms=float(np.max(times_ms)),
            iterations=len(times_ms),
            warmup_iterations=warmup,
            raw_times_ms=times_ms.tolist(),
        )


class BenchmarkRecord(BaseModel):
    """Result of running one strategy on one backend. Immutable once created."""

    strategy: ReductionStrategy = Field(..., description="Reduction strategy that was run")
    backend: Backend = Field(..., description="Concurrency backend used")
    workers: int = Field(..., description="Requested worker count")
    status: RunStatus = Field(..., description="Run outcome")

    elapsed_seconds: Optional[float] = Field(
        None, description="Best (minimum) wall-clock time of the measured repeats, or time waited on timeout"
    )
    result: Optional[float] = Field(None, description="Reduction result of the last measured repeat")
    timing: Optional[TimingStats] = Field(None, description="Timing statistics over repeats")

    agrees_with_serial: Optional[bool] = Field(
        None, description="Agreement with the serial reference (correct-by-design strategies only)"
    )
    deviated: Optional[bool] = Field(
        None, description="Whether a racy result differed from the serial reference"
    )

    error: Optional[str] = Field(None, description="Error text for failed or timed-out runs")
    failed_worker: Optional[int] = Field(None, description="Index of the worker that raised, if any")
    skip_reason: Optional[str] = Field(None, description="Why the combination was not run")

    schemaVersion: str = Field("1.0", description="Schema version for forward compatibility")

    model_config = ConfigDict(frozen=True)

    @property
    def elapsed_ms(self) -> Optional[float]:
        if self.elapsed_seconds is None:
            return None
        return self.elapsed_seconds * 1000.0

    @property
    def counts_for_agreement(self) -> bool:
        return self.status == RunStatus.OK and self.strategy.correct_by_design


class ComparisonReport(BaseModel):
    """Ordered records of one comparison plus the agreement verdict."""

    workload: str = Field(..., description="Workload name")
    size: int = Field(..., description="Input sequence length")
    workers: int = Field(..., description="Worker count used for every run")
    tolerance: float = Field(..., description="Relative tolerance for deterministic workloads")
    plausible_range: Optional[Tuple[float, float]] = Field(
        None, description="Closed band a Monte-Carlo estimate must fall in; None for deterministic workloads"
    )
    seed: Optional[int] = Field(None, description="Seed used for Monte-Carlo sampling")
    reference_result: Optional[float] = Field(None, description="Serial reference value")
    records: List[BenchmarkRecord] = Field(default_factory=list, description="Records in run order")
    agreement_passed: bool = Field(..., description="All correct-by-design results agree with serial")

    schemaVersion: str = Field("1.0", description="Schema version for forward compatibility")

    model_config = ConfigDict(frozen=True)

    def records_for(self, strategy: ReductionStrategy) -> List[BenchmarkRecord]:
        return [record for record in self.records if record.strategy == strategy]

    def by_status(self) -> Dict[RunStatus, List[BenchmarkRecord]]:
        grouped: Dict[RunStatus, List[BenchmarkRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.status, []).append(record)
        return grouped


class ScalingPoint(BaseModel):
    """Best time of one strategy/backend at one worker count, relative to serial."""

    strategy: ReductionStrategy
    backend: Backend
    workers: int
    elapsed_ms: Optional[float] = None
    speedup: Optional[float] = Field(None, description="serial elapsed / this elapsed")
    status: RunStatus

    model_config = ConfigDict(frozen=True)
