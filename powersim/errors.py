"""
Exceptions raised by the power simulation harness.
"""

from typing import Any, Dict, List, Optional


class PowerSimError(RuntimeError):
    """Base class for harness failures."""


class ConfigurationError(PowerSimError, ValueError):
    """Raised before any trial runs when the requested run cannot be set up."""


class SchemaMismatchError(PowerSimError):
    """Raised when an evaluator returns records that cannot be stacked into one table."""

    def __init__(self, message: str, combination_id: Optional[int] = None, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.combination_id = combination_id
        self.fields = fields


class EvaluationError(PowerSimError):
    """
    Raised when the evaluator fails on one or more trials.

    The trial context of the first failure is kept on the exception. With the
    "collect" error policy, ``failures`` lists every failed trial and
    ``partial`` holds the rows that did succeed.

    Extra attributes default to None so the exception survives pickling
    across process pool boundaries.
    """

    def __init__(
        self,
        message: str,
        combination_id: Optional[int] = None,
        sample_size: Optional[int] = None,
        effect_size: Optional[float] = None,
        iteration: Optional[int] = None,
        error_type: Optional[str] = None,
        failures: Optional[List[Dict[str, Any]]] = None,
        partial: Any = None,
    ):
        super().__init__(message)
        self.combination_id = combination_id
        self.sample_size = sample_size
        self.effect_size = effect_size
        self.iteration = iteration
        self.error_type = error_type
        self.failures = failures or []
        self.partial = partial

    @classmethod
    def for_trial(cls, trial, exc: BaseException) -> "EvaluationError":
        error_type = type(exc).__name__
        return cls(
            f"Evaluator failed on combination {trial.combination_id} "
            f"(sample_size={trial.sample_size}, effect_size={trial.effect_size}, "
            f"iteration={trial.iteration}): {error_type}: {exc}",
            combination_id=trial.combination_id,
            sample_size=trial.sample_size,
            effect_size=trial.effect_size,
            iteration=trial.iteration,
            error_type=error_type,
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "combination_id": self.combination_id,
            "sample_size": self.sample_size,
            "effect_size": self.effect_size,
            "iteration": self.iteration,
            "error_type": self.error_type,
            "message": str(self),
        }
