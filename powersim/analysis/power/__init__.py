"""
Statistical power simulation module.
Estimates the power of a test by simulating it over sample size x effect size grids.
"""

from .harness import GridEvaluator, analyse_power, evaluate
from .registry import register_evaluator, registered_evaluators
from .summary import (
    add_analytic_power,
    analytic_power,
    binomial_wilson_ci,
    minimum_sample_size,
    power_heatmap,
    summarize_power,
)
from . import evaluators

__all__ = [
    'GridEvaluator',
    'analyse_power',
    'evaluate',
    'register_evaluator',
    'registered_evaluators',
    'add_analytic_power',
    'analytic_power',
    'binomial_wilson_ci',
    'minimum_sample_size',
    'power_heatmap',
    'summarize_power',
    'evaluators',
]
