"""
Combination grid for power simulations.

A grid is the crossing of distinct sample sizes with distinct effect sizes.
Both inputs are deduplicated and sorted ascending, then crossed with the
sample size as the outer loop, so combination ids are stable for any
ordering of the same input values.
"""

import math
import numbers
from dataclasses import dataclass
from typing import Iterable, List, Sequence

import numpy as np

from powersim.errors import ConfigurationError


@dataclass(frozen=True)
class Combination:
    combination_id: int
    sample_size: int
    effect_size: float


@dataclass(frozen=True)
class Trial:
    combination_id: int
    sample_size: int
    effect_size: float
    iteration: int


def _as_list(values, name: str) -> list:
    if values is None or isinstance(values, (str, bytes)):
        raise ConfigurationError(f"{name} must be a sequence of numbers")
    if np.isscalar(values):
        values = [values]
    if isinstance(values, np.ndarray):
        values = values.ravel().tolist()
    values = list(values)
    if len(values) == 0:
        raise ConfigurationError(f"{name} must not be empty")
    return values


def normalize_sample_sizes(sample_sizes: Iterable) -> List[int]:
    values = _as_list(sample_sizes, "sample_sizes")
    cleaned = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ConfigurationError(f"Sample size {value!r} is not a number")
        if not math.isfinite(value) or value != int(value) or value < 1:
            raise ConfigurationError(f"Sample size {value!r} is not a positive integer")
        cleaned.append(int(value))
    return sorted(set(cleaned))


def normalize_effect_sizes(effect_sizes: Iterable) -> List[float]:
    values = _as_list(effect_sizes, "effect_sizes")
    cleaned = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise ConfigurationError(f"Effect size {value!r} is not a number")
        if not math.isfinite(value):
            raise ConfigurationError(f"Effect size {value!r} is not finite")
        cleaned.append(value)
    return sorted(set(cleaned))


def build_combinations(sample_sizes: Sequence, effect_sizes: Sequence) -> List[Combination]:
    """Cross sample sizes with effect sizes and number the pairs from 1."""
    sizes = normalize_sample_sizes(sample_sizes)
    effects = normalize_effect_sizes(effect_sizes)
    combinations = []
    for sample_size in sizes:
        for effect_size in effects:
            combinations.append(
                Combination(
                    combination_id=len(combinations) + 1,
                    sample_size=sample_size,
                    effect_size=effect_size,
                )
            )
    return combinations


def expand_trials(combinations: Sequence[Combination], iterations: int) -> List[Trial]:
    """Repeat every combination ``iterations`` times, grouped by combination."""
    if isinstance(iterations, bool) or not isinstance(iterations, numbers.Integral) or iterations < 1:
        raise ConfigurationError(f"iterations must be a positive integer, got {iterations!r}")
    return [
        Trial(
            combination_id=combo.combination_id,
            sample_size=combo.sample_size,
            effect_size=combo.effect_size,
            iteration=iteration,
        )
        for combo in combinations
        for iteration in range(1, int(iterations) + 1)
    ]

