"""Centralized default values for comparison runs.

This module is the single source of truth for defaults used throughout the
harness. Values can be overridden with ``PARABENCH_*`` environment variables,
by CLI flags, or by passing values directly to ``BenchmarkConfig``.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

ENV_PREFIX = "PARABENCH_"

DEFAULT_TOLERANCE = 1e-9
# Closed interval a Monte-Carlo pi estimate must fall in.
DEFAULT_MONTE_CARLO_LOWER = 3.0
DEFAULT_MONTE_CARLO_UPPER = 3.3


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _optional_int(raw: str) -> Optional[int]:
    if raw.strip().lower() in ("", "none"):
        return None
    return int(raw)


@dataclass
class BenchmarkDefaults:
    """Default values for harness configuration.

    Every field maps to ``PARABENCH_<FIELD>`` in the environment (for example
    ``PARABENCH_WORKERS=8``); list fields take comma separated values.
    """

    # Execution defaults
    workers: int = 4
    repeats: int = 1
    warmup: int = 0

    # Comparison defaults
    timeout_seconds: float = 60.0
    tolerance: float = DEFAULT_TOLERANCE
    mc_lower: float = DEFAULT_MONTE_CARLO_LOWER
    mc_upper: float = DEFAULT_MONTE_CARLO_UPPER
    strategies: List[str] = field(default_factory=lambda: ["serial", "racy", "atomic", "partitioned"])
    backends: List[str] = field(default_factory=lambda: ["none", "threads", "processes"])

    # Reproducibility defaults
    seed: Optional[int] = 42

    # Output defaults
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> BenchmarkDefaults:
        """Create BenchmarkDefaults, applying any ``PARABENCH_*`` overrides."""
        defaults = cls()
        parsers: dict[str, Callable[[str], object]] = {
            "workers": int,
            "repeats": int,
            "warmup": int,
            "timeout_seconds": float,
            "tolerance": float,
            "mc_lower": float,
            "mc_upper": float,
            "strategies": _split_list,
            "backends": _split_list,
            "seed": _optional_int,
            "log_level": str.upper,
        }
        for name, parse in parsers.items():
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            try:
                setattr(defaults, name, parse(raw))
            except ValueError as exc:
                raise ValueError(f"Invalid {ENV_PREFIX}{name.upper()}={raw!r}: {exc}") from exc
        return defaults

    def to_dict(self) -> dict:
        """Convert defaults to dictionary."""
        return asdict(self)


# Global instance - can be overridden for testing or custom configurations
_defaults = BenchmarkDefaults.from_env()


def get_defaults() -> BenchmarkDefaults:
    """Get the global BenchmarkDefaults instance."""
    return _defaults


def set_defaults(defaults: BenchmarkDefaults) -> None:
    """Set the global BenchmarkDefaults instance (useful for testing)."""
    global _defaults
    _defaults = defaults


def get_default_value(attr_name: str, fallback: T) -> T:
    """Get a default from the global BenchmarkDefaults, with fallback."""
    return getattr(get_defaults(), attr_name, fallback)
