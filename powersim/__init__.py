"""
Empirical statistical power simulation.

Runs a stochastic experiment over a grid of sample sizes and effect sizes
and collects one record per trial.
"""

import logging

from powersim.analysis.power import (
    analyse_power,
    evaluate,
    register_evaluator,
    summarize_power,
)
from powersim.config import settings
from powersim.errors import (
    ConfigurationError,
    EvaluationError,
    PowerSimError,
    SchemaMismatchError,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())


def configure_logging(level=None) -> logging.Logger:
    """Set the package logger to ``level``, or to ``settings.log_level`` when omitted."""
    package_logger = logging.getLogger(__name__)
    level = level or settings.log_level
    package_logger.setLevel(level.upper() if isinstance(level, str) else level)
    return package_logger


configure_logging()

__all__ = [
    'analyse_power',
    'configure_logging',
    'evaluate',
    'register_evaluator',
    'summarize_power',
    'ConfigurationError',
    'EvaluationError',
    'PowerSimError',
    'SchemaMismatchError',
]
