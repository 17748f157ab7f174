"""
Trial evaluators.

Each evaluator simulates one experiment for a (sample_size, effect_size)
combination and returns a flat record with the p-value of the test:

    {"sample_size": ..., "effect_size": ..., "combination_id": ..., "p_value": ...}

Effect sizes are expressed in standard deviation units (Cohen's d). Passing
``seed`` makes a run reproducible: the generator is derived from the seed,
the combination id and the iteration index the harness supplies, so every
trial still draws its own sample.
"""

from typing import Any, Dict, Optional

import numpy as np
from scipy.stats import mannwhitneyu, ttest_ind, ttest_rel

from powersim.analysis.power.registry import register_evaluator


def _rng(seed: Optional[int], combination_id: int, iteration: Optional[int]) -> np.random.Generator:
    if seed is None:
        return np.random.default_rng()
    entropy = [int(seed), int(combination_id)]
    if iteration is not None:
        entropy.append(int(iteration))
    return np.random.default_rng(entropy)


def _record(sample_size, effect_size, combination_id, p_value) -> Dict[str, Any]:
    return {
        "sample_size": sample_size,
        "effect_size": effect_size,
        "combination_id": combination_id,
        "p_value": float(p_value),
    }


def simulate_ttest(
    sample_size: int,
    effect_size: float,
    combination_id: int,
    equal_var: bool = False,
    alternative: str = "two-sided",
    seed: Optional[int] = None,
    iteration: Optional[int] = None,
) -> Dict[str, Any]:
    """Two independent groups, N(0, 1) vs N(effect_size, 1); Welch t-test unless equal_var."""
    rng = _rng(seed, combination_id, iteration)
    group_a = rng.normal(loc=0.0, scale=1.0, size=sample_size)
    group_b = rng.normal(loc=effect_size, scale=1.0, size=sample_size)
    # group B first so a positive effect rejects under alternative="greater"
    _, p_value = ttest_ind(group_b, group_a, equal_var=equal_var, alternative=alternative)
    return _record(sample_size, effect_size, combination_id, p_value)


def simulate_paired_ttest(
    sample_size: int,
    effect_size: float,
    combination_id: int,
    correlation: float = 0.5,
    alternative: str = "two-sided",
    seed: Optional[int] = None,
    iteration: Optional[int] = None,
) -> Dict[str, Any]:
    """Paired measurements with unit variances and the given within-pair correlation."""
    if not -1.0 < correlation < 1.0:
        raise ValueError(f"correlation must lie in (-1, 1), got {correlation}")
    rng = _rng(seed, combination_id, iteration)
    cov = [[1.0, correlation], [correlation, 1.0]]
    draws = rng.multivariate_normal(mean=[0.0, effect_size], cov=cov, size=sample_size)
    _, p_value = ttest_rel(draws[:, 1], draws[:, 0], alternative=alternative)
    return _record(sample_size, effect_size, combination_id, p_value)


def simulate_mannwhitney(
    sample_size: int,
    effect_size: float,
    combination_id: int,
    alternative: str = "two-sided",
    seed: Optional[int] = None,
    iteration: Optional[int] = None,
) -> Dict[str, Any]:
    """Same data as simulate_ttest, tested with the Mann-Whitney U test."""
    rng = _rng(seed, combination_id, iteration)
    group_a = rng.normal(loc=0.0, scale=1.0, size=sample_size)
    group_b = rng.normal(loc=effect_size, scale=1.0, size=sample_size)
    _, p_value = mannwhitneyu(group_b, group_a, alternative=alternative)
    return _record(sample_size, effect_size, combination_id, p_value)


def simulate_bernoulli(
    sample_size: int,
    effect_size: float,
    combination_id: int,
    probability: Optional[float] = None,
    seed: Optional[int] = None,
    iteration: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Calibration stub with a known rejection rate.

    Rejects (p_value = 0) with ``probability``, or with ``effect_size`` when no
    probability is given, and otherwise returns p_value = 1. Any alpha in
    (0, 1) therefore yields a true power equal to that probability.
    """
    p = effect_size if probability is None else probability
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"Rejection probability must lie in [0, 1], got {p}")
    rng = _rng(seed, combination_id, iteration)
    rejected = rng.random() < p
    return _record(sample_size, effect_size, combination_id, 0.0 if rejected else 1.0)


register_evaluator("ttest", simulate_ttest)
register_evaluator("paired_ttest", simulate_paired_ttest)
register_evaluator("mannwhitney", simulate_mannwhitney)
register_evaluator("bernoulli", simulate_bernoulli)
