"""
Grid evaluator for empirical power simulations.

The evaluator function is called once per (combination, iteration) trial:

    evaluator(sample_size, effect_size, combination_id, **evaluator_kwargs)

and must return one flat record per call. Evaluators that declare an
``iteration`` parameter also receive the 1-based iteration index, which lets
seeded evaluators draw a different sample for every trial.

Trials run either sequentially or on a worker pool that lives only for the
duration of one call. Row order of the returned table is not defined for
parallel runs; aggregate by grouping.
"""

import inspect
import logging
import math
import multiprocessing
import numbers
import pickle
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from powersim.analysis.power.grid import Trial, build_combinations, expand_trials
from powersim.analysis.power.records import REQUIRED_FIELDS, RecordSchema, stack_records, to_record
from powersim.analysis.power.registry import EvaluatorRef, resolve_evaluator, to_reference
from powersim.config import settings
from powersim.errors import ConfigurationError, EvaluationError

logger = logging.getLogger(__name__)

BACKENDS = ("process", "thread")
ERROR_POLICIES = ("raise", "collect")

# chunks per worker when no chunk size is given
CHUNKS_PER_WORKER = 4

ITERATION_ARG = "iteration"


@dataclass
class ChunkResult:
    records: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)


def accepts_iteration(evaluator: Callable) -> bool:
    """True when the evaluator declares an ``iteration`` keyword."""
    try:
        params = inspect.signature(evaluator).parameters
    except (TypeError, ValueError):
        return False
    param = params.get(ITERATION_ARG)
    return param is not None and param.kind in (
        inspect.Parameter.POSITIONAL_OR_KEYWORD,
        inspect.Parameter.KEYWORD_ONLY,
    )


def run_trial(
    evaluator: Callable,
    trial: Trial,
    evaluator_kwargs: Dict[str, Any],
    pass_iteration: bool = False,
) -> Dict[str, Any]:
    if pass_iteration:
        evaluator_kwargs = {**evaluator_kwargs, ITERATION_ARG: trial.iteration}
    try:
        value = evaluator(trial.sample_size, trial.effect_size, trial.combination_id, **evaluator_kwargs)
    except Exception as exc:
        raise EvaluationError.for_trial(trial, exc) from exc
    return to_record(value, trial.combination_id)


def run_chunk(
    evaluator: EvaluatorRef,
    trials: Sequence[Trial],
    evaluator_kwargs: Dict[str, Any],
    fail_fast: bool = True,
) -> ChunkResult:
    """Evaluate a batch of trials. Inside pool workers ``evaluator`` is an import reference."""
    func = resolve_evaluator(evaluator)
    pass_iteration = accepts_iteration(func)
    result = ChunkResult()
    for trial in trials:
        try:
            result.records.append(run_trial(func, trial, evaluator_kwargs, pass_iteration))
        except EvaluationError as err:
            if fail_fast:
                raise
            result.failures.append(err.describe())
    return result


def _chunks(trials: List[Trial], chunk_size: int) -> List[List[Trial]]:
    return [trials[i:i + chunk_size] for i in range(0, len(trials), chunk_size)]


class GridEvaluator:
    """
    Runs an evaluator over the sample size x effect size grid.

    Args:
        evaluator: callable, registered evaluator name, or "module:function" path
        iterations: trials per combination
        worker_count: 1 for a sequential run, otherwise the pool size
        backend: "process" or "thread" pool (parallel runs only)
        chunk_size: trials handed to a worker per task
        on_error: "raise" aborts on the first failing trial, "collect" runs
            every trial and reports all failures together
        evaluator_kwargs: forwarded to every evaluator call, in both modes
    """

    def __init__(
        self,
        evaluator: EvaluatorRef,
        iterations: Optional[int] = None,
        worker_count: Optional[int] = None,
        backend: Optional[str] = None,
        chunk_size: Optional[int] = None,
        on_error: Optional[str] = None,
        evaluator_kwargs: Optional[Dict[str, Any]] = None,
    ):
        self.evaluator = evaluator
        self.iterations = settings.default_iterations if iterations is None else iterations
        self.worker_count = settings.default_worker_count if worker_count is None else worker_count
        self.backend = backend or settings.parallel_backend
        self.chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        self.on_error = on_error or settings.error_policy
        self.evaluator_kwargs = dict(evaluator_kwargs or {})
        self._validate()

    def _validate(self):
        if (
            isinstance(self.iterations, bool)
            or not isinstance(self.iterations, numbers.Integral)
            or self.iterations < 1
        ):
            raise ConfigurationError(f"iterations must be a positive integer, got {self.iterations!r}")
        if (
            isinstance(self.worker_count, bool)
            or not isinstance(self.worker_count, numbers.Integral)
            or self.worker_count < 1
        ):
            raise ConfigurationError(f"worker_count must be a positive integer, got {self.worker_count!r}")
        if self.backend not in BACKENDS:
            raise ConfigurationError(f"Unknown backend {self.backend!r}, expected one of {BACKENDS}")
        if self.on_error not in ERROR_POLICIES:
            raise ConfigurationError(f"Unknown error policy {self.on_error!r}, expected one of {ERROR_POLICIES}")
        if self.chunk_size is not None and (
            isinstance(self.chunk_size, bool)
            or not isinstance(self.chunk_size, numbers.Integral)
            or self.chunk_size < 1
        ):
            raise ConfigurationError(f"chunk_size must be a positive integer, got {self.chunk_size!r}")
        clashing = sorted(set(self.evaluator_kwargs) & {*REQUIRED_FIELDS, ITERATION_ARG})
        if clashing:
            raise ConfigurationError(f"Extra evaluator arguments {clashing} clash with trial arguments")

        if self.worker_count > 1:
            # workers re-import the evaluator by name
            self._dispatch_ref = to_reference(self.evaluator)
            if self.backend == "process":
                method = settings.mp_start_method
                if method and method not in multiprocessing.get_all_start_methods():
                    raise ConfigurationError(
                        f"Unknown multiprocessing start method {method!r}, "
                        f"expected one of {multiprocessing.get_all_start_methods()}"
                    )
                try:
                    pickle.dumps(self.evaluator_kwargs)
                except Exception as exc:
                    raise ConfigurationError(
                        f"Extra evaluator arguments cannot be sent to worker processes: {exc}"
                    ) from exc
        else:
            self._dispatch_ref = None
            resolve_evaluator(self.evaluator)

    def run(self, sample_sizes: Sequence, effect_sizes: Sequence) -> pd.DataFrame:
        combinations = build_combinations(sample_sizes, effect_sizes)
        trials = expand_trials(combinations, self.iterations)
        logger.debug(
            "Power grid: %d combinations x %d iterations = %d trials",
            len(combinations), self.iterations, len(trials),
        )

        start = time.perf_counter()
        if self.worker_count > 1:
            chunk_results = self._run_parallel(trials)
        else:
            chunk_results = [
                run_chunk(self.evaluator, trials, self.evaluator_kwargs, fail_fast=self.on_error == "raise")
            ]
        results = self._collect(chunk_results, len(trials))
        logger.info(
            "Evaluated %d trials over %d combinations in %.2fs (workers=%d)",
            len(trials), len(combinations), time.perf_counter() - start, self.worker_count,
        )
        return results

    def _effective_chunk_size(self, n_trials: int) -> int:
        if self.chunk_size is not None:
            return int(self.chunk_size)
        return max(1, math.ceil(n_trials / (self.worker_count * CHUNKS_PER_WORKER)))

    def _make_executor(self, max_workers: int):
        if self.backend == "thread":
            return ThreadPoolExecutor(max_workers=max_workers)
        context = None
        if settings.mp_start_method:
            context = multiprocessing.get_context(settings.mp_start_method)
        return ProcessPoolExecutor(max_workers=max_workers, mp_context=context)

    def _run_parallel(self, trials: List[Trial]) -> List[ChunkResult]:
        chunks = _chunks(trials, self._effective_chunk_size(len(trials)))
        max_workers = min(self.worker_count, len(chunks))
        fail_fast = self.on_error == "raise"
        logger.debug(
            "Dispatching %d chunks to %d %s workers", len(chunks), max_workers, self.backend
        )

        executor = self._make_executor(max_workers)
        futures = []
        results = []
        try:
            for chunk in chunks:
                futures.append(
                    executor.submit(run_chunk, self._dispatch_ref, chunk, self.evaluator_kwargs, fail_fast)
                )
            for future in as_completed(futures):
                results.append(future.result())
        except BaseException as exc:
            cancelled = sum(f.cancel() for f in futures)
            logger.warning("Aborting power run after %s; %d pending chunks cancelled", type(exc).__name__, cancelled)
            raise
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        return results

    def _collect(self, chunk_results: List[ChunkResult], n_trials: int) -> pd.DataFrame:
        schema = RecordSchema()
        records = []
        failures = []
        for chunk in chunk_results:
            for record in chunk.records:
                records.append(schema.check(record))
            failures.extend(chunk.failures)

        table = stack_records(records, schema.fields)
        if failures:
            first = failures[0]
            logger.warning("%d of %d trials failed", len(failures), n_trials)
            raise EvaluationError(
                f"{len(failures)} of {n_trials} trials failed; first failure: {first['message']}",
                combination_id=first["combination_id"],
                sample_size=first["sample_size"],
                effect_size=first["effect_size"],
                iteration=first["iteration"],
                error_type=first["error_type"],
                failures=failures,
                partial=table,
            )
        return table


def analyse_power(
    sample_sizes: Sequence,
    effect_sizes: Sequence,
    evaluator: EvaluatorRef,
    iterations: Optional[int] = None,
    worker_count: Optional[int] = None,
    *,
    backend: Optional[str] = None,
    chunk_size: Optional[int] = None,
    on_error: Optional[str] = None,
    **evaluator_kwargs,
) -> pd.DataFrame:
    """
    Run ``evaluator`` for every sample size x effect size combination.

    Returns one row per trial: the evaluator's record, which always carries
    sample_size, effect_size and combination_id. Keyword arguments other than
    the harness options are passed to every evaluator call.

    Raises:
        ConfigurationError: invalid grid or options, or an evaluator that
            pool workers cannot import (lambdas, nested functions)
        EvaluationError: the evaluator raised for at least one trial
        SchemaMismatchError: records are not flat or disagree on fields
    """
    grid_evaluator = GridEvaluator(
        evaluator,
        iterations=iterations,
        worker_count=worker_count,
        backend=backend,
        chunk_size=chunk_size,
        on_error=on_error,
        evaluator_kwargs=evaluator_kwargs,
    )
    return grid_evaluator.run(sample_sizes, effect_sizes)


evaluate = analyse_power
