"""
Aggregation of simulated trials into power estimates.

All functions group by (sample_size, effect_size), so they do not depend on
the row order of the trial table.
"""

import math
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm
from statsmodels.stats.power import TTestIndPower

GROUP_KEYS = ["sample_size", "effect_size"]

# scipy alternative names -> statsmodels names
_ALTERNATIVES = {
    "two-sided": "two-sided",
    "greater": "larger",
    "less": "smaller",
    "larger": "larger",
    "smaller": "smaller",
}


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for the proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = float(norm.ppf(1.0 - alpha / 2.0))
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    return max(0.0, center - half), min(1.0, center + half)


def summarize_power(
    results: pd.DataFrame,
    alpha: float = 0.05,
    outcome: str = "p_value",
    ci_alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Empirical power per combination.

    A trial counts as a rejection when ``outcome < alpha``. Missing outcomes
    (NaN p-values) count as non-rejections and are reported in ``n_missing``.

    Returns one row per (sample_size, effect_size), sorted by both, with
    columns combination_id, n_trials, n_rejected, n_missing, power, mc_se,
    ci_low and ci_high.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
    missing = [c for c in GROUP_KEYS + ["combination_id", outcome] if c not in results.columns]
    if missing:
        raise ValueError(f"Results are missing columns {missing}")

    frame = results.assign(
        _rejected=(results[outcome] < alpha).astype(int),
        _missing=results[outcome].isna().astype(int),
    )
    summary = (
        frame.groupby(GROUP_KEYS, sort=True)
        .agg(
            combination_id=("combination_id", "first"),
            n_trials=(outcome, "size"),
            n_rejected=("_rejected", "sum"),
            n_missing=("_missing", "sum"),
        )
        .reset_index()
    )
    summary["power"] = summary["n_rejected"] / summary["n_trials"]
    summary["mc_se"] = np.sqrt(summary["power"] * (1.0 - summary["power"]) / summary["n_trials"])

    bounds = [
        binomial_wilson_ci(int(k), int(n), ci_alpha)
        for k, n in zip(summary["n_rejected"], summary["n_trials"])
    ]
    summary["ci_low"] = [low for low, _ in bounds]
    summary["ci_high"] = [high for _, high in bounds]
    return summary


def power_heatmap(summary: pd.DataFrame, value: str = "power") -> pd.DataFrame:
    """Sample sizes as rows, effect sizes as columns. Each column is a power curve."""
    return summary.pivot(index="sample_size", columns="effect_size", values=value).sort_index()


def analytic_power(
    sample_size: int,
    effect_size: float,
    alpha: float = 0.05,
    alternative: str = "two-sided",
) -> float:
    """Closed-form power of the two-sample t-test with equal group sizes."""
    if alternative not in _ALTERNATIVES:
        raise ValueError(f"Unknown alternative {alternative!r}")
    if sample_size < 2:
        return float("nan")
    return float(
        TTestIndPower().power(
            effect_size=effect_size,
            nobs1=sample_size,
            alpha=alpha,
            ratio=1.0,
            alternative=_ALTERNATIVES[alternative],
        )
    )


def add_analytic_power(
    summary: pd.DataFrame,
    alpha: float = 0.05,
    alternative: str = "two-sided",
) -> pd.DataFrame:
    """Add the theoretical t-test power and its gap to the simulated estimate."""
    out = summary.copy()
    out["analytic_power"] = [
        analytic_power(int(n), float(d), alpha=alpha, alternative=alternative)
        for n, d in zip(out["sample_size"], out["effect_size"])
    ]
    out["power_delta"] = out["power"] - out["analytic_power"]
    return out


def minimum_sample_size(
    summary: pd.DataFrame,
    target_power: float = 0.8,
    effect_size: Optional[float] = None,
) -> pd.DataFrame:
    """
    Smallest simulated sample size reaching ``target_power`` for each effect size.

    Effect sizes that never reach the target get NaN for sample_size and power.
    """
    if not 0.0 < target_power < 1.0:
        raise ValueError(f"target_power must lie in (0, 1), got {target_power}")
    frame = summary if effect_size is None else summary[summary["effect_size"] == effect_size]

    rows = []
    for effect, group in frame.groupby("effect_size", sort=True):
        reached = group[group["power"] >= target_power].sort_values("sample_size")
        if reached.empty:
            rows.append({"effect_size": effect, "sample_size": np.nan, "power": np.nan})
        else:
            best = reached.iloc[0]
            rows.append({
                "effect_size": effect,
                "sample_size": int(best["sample_size"]),
                "power": float(best["power"]),
            })
    return pd.DataFrame(rows, columns=["effect_size", "sample_size", "power"])
