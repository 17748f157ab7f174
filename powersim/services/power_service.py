import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Union

import numpy as np
import pandas as pd
from pydantic import ValidationError

from powersim.analysis.power.harness import analyse_power
from powersim.analysis.power.summary import (
    add_analytic_power,
    minimum_sample_size,
    power_heatmap,
    summarize_power,
)
from powersim.config import settings
from powersim.errors import ConfigurationError
from powersim.schemas.power import EVALUATOR_PARAMS, PowerAnalysisResponse, PowerGridRequest

logger = logging.getLogger(__name__)

MIN_STABLE_ITERATIONS = 100
# widest acceptable Wilson interval for a power estimate
MAX_CI_WIDTH = 0.2


def _jsonable(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    clean = frame.astype(object).where(pd.notna(frame), None)
    return [
        {k: (v.item() if isinstance(v, np.generic) else v) for k, v in row.items()}
        for row in clean.to_dict(orient="records")
    ]


class PowerAnalysisService:
    """Validates a grid request, runs the simulation and summarizes it."""

    def __init__(self):
        self.warnings = []

    def run_analysis(self, request: Union[PowerGridRequest, Dict[str, Any]]) -> PowerAnalysisResponse:
        self.warnings = []
        request = self._validate(request)
        params = self._evaluator_params(request)
        alpha = request.alpha if request.alpha is not None else settings.default_alpha
        iterations = request.iterations or settings.default_iterations

        trials = analyse_power(
            request.sample_sizes,
            request.effect_sizes,
            request.evaluator,
            iterations=iterations,
            worker_count=request.worker_count,
            backend=request.backend,
            on_error=request.on_error,
            **params,
        )
        results = self._summarize(trials, request, params, alpha, iterations)

        return PowerAnalysisResponse(
            evaluator=request.evaluator,
            code_version=settings.code_version,
            params=params,
            results=results,
            created_at=datetime.now(timezone.utc),
        )

    def _validate(self, request) -> PowerGridRequest:
        if isinstance(request, PowerGridRequest):
            return request
        try:
            return PowerGridRequest.model_validate(request)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid power analysis request: {exc}") from exc

    def _evaluator_params(self, request: PowerGridRequest) -> Dict[str, Any]:
        raw = request.params or {}
        model = EVALUATOR_PARAMS.get(request.evaluator)
        if model is None:
            # custom evaluators get their params forwarded untouched
            return dict(raw)
        try:
            return model.model_validate(raw).model_dump()
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid parameters for evaluator {request.evaluator!r}: {exc}") from exc

    def _summarize(
        self,
        trials: pd.DataFrame,
        request: PowerGridRequest,
        params: Dict[str, Any],
        alpha: float,
        iterations: int,
    ) -> Dict[str, Any]:
        summary = summarize_power(trials, alpha=alpha)

        analytic = request.evaluator == "ttest"
        if analytic:
            summary = add_analytic_power(summary, alpha=alpha, alternative=params.get("alternative", "two-sided"))

        min_n = minimum_sample_size(summary, target_power=request.target_power)
        heatmap = power_heatmap(summary)

        self._check_warnings(summary, iterations, analytic)

        return {
            "summary": "Power simulation completed",
            "n_trials": int(len(trials)),
            "n_combinations": int(len(summary)),
            "alpha": alpha,
            "power": _jsonable(summary),
            "min_sample_size": _jsonable(min_n),
            "charts": {
                "heatmap": {
                    "sample_sizes": [int(n) for n in heatmap.index],
                    "effect_sizes": [float(d) for d in heatmap.columns],
                    "power": [[None if pd.isna(v) else float(v) for v in row] for row in heatmap.to_numpy()],
                },
            },
            "warnings": list(self.warnings),
        }

    def _check_warnings(self, summary: pd.DataFrame, iterations: int, analytic: bool):
        if iterations < MIN_STABLE_ITERATIONS:
            self.warnings.append(
                f"Few iterations per combination (<{MIN_STABLE_ITERATIONS}): power estimates are noisy"
            )

        wide = int(((summary["ci_high"] - summary["ci_low"]) > MAX_CI_WIDTH).sum())
        if wide:
            self.warnings.append(
                f"Monte Carlo error is large in {wide} combinations "
                f"(confidence interval wider than {MAX_CI_WIDTH}): increase iterations"
            )

        n_missing = int(summary["n_missing"].sum())
        if n_missing:
            self.warnings.append(f"{n_missing} trials produced no p-value and were counted as non-rejections")

        if analytic:
            tolerance = 3.0 * summary["mc_se"] + 0.01
            off = summary[(summary["power_delta"].abs() > tolerance) & summary["analytic_power"].notna()]
            if len(off) > 0:
                self.warnings.append(
                    f"Simulated power deviates from the analytic t-test power in {len(off)} combinations"
                )

        for message in self.warnings:
            logger.warning(message)
