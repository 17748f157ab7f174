from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, PositiveInt


class TTestParams(BaseModel):
    equal_var: bool = False
    alternative: str = "two-sided"
    seed: Optional[int] = None


class PairedTTestParams(BaseModel):
    correlation: float = Field(default=0.5, gt=-1.0, lt=1.0)
    alternative: str = "two-sided"
    seed: Optional[int] = None


class MannWhitneyParams(BaseModel):
    alternative: str = "two-sided"
    seed: Optional[int] = None


class BernoulliParams(BaseModel):
    probability: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    seed: Optional[int] = None


EVALUATOR_PARAMS = {
    "ttest": TTestParams,
    "paired_ttest": PairedTTestParams,
    "mannwhitney": MannWhitneyParams,
    "bernoulli": BernoulliParams,
}


class PowerGridRequest(BaseModel):
    sample_sizes: List[PositiveInt] = Field(min_length=1)
    effect_sizes: List[float] = Field(min_length=1)
    evaluator: str = "ttest"
    iterations: Optional[PositiveInt] = None
    worker_count: Optional[PositiveInt] = None
    backend: Optional[str] = None
    on_error: Optional[str] = None
    alpha: Optional[float] = Field(default=None, gt=0.0, lt=1.0)
    target_power: float = Field(default=0.8, gt=0.0, lt=1.0)
    params: Optional[Dict[str, Any]] = None


class PowerAnalysisResponse(BaseModel):
    evaluator: str
    code_version: Optional[str]
    params: Optional[Dict[str, Any]]
    results: Optional[Dict[str, Any]]
    created_at: datetime
