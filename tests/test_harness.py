import multiprocessing
import threading

import pytest
import pandas as pd

from powersim import analyse_power, evaluate
from powersim.analysis.power.harness import GridEvaluator
from powersim.errors import ConfigurationError, EvaluationError, SchemaMismatchError

import power_stubs


def _rows(df: pd.DataFrame):
    return sorted(map(tuple, df[sorted(df.columns)].itertuples(index=False, name=None)))


def test_two_sample_sizes_single_iteration():
    results = analyse_power([10, 20], [0.5], power_stubs.identity_stub, iterations=1)

    assert list(results.columns) == ["sample_size", "effect_size", "combination_id", "value"]
    assert results.values.tolist() == [[10, 0.5, 1, 10.5], [20, 0.5, 2, 20.5]]


def test_effect_sizes_with_repeats():
    results = analyse_power([5], [1, 2], power_stubs.identity_stub, iterations=3)

    assert len(results) == 6
    assert set(results.loc[results["effect_size"] == 1, "combination_id"]) == {1}
    assert set(results.loc[results["effect_size"] == 2, "combination_id"]) == {2}


def test_row_count_and_id_coverage(small_grid):
    results = analyse_power(
        small_grid["sample_sizes"], small_grid["effect_sizes"], power_stubs.identity_stub, iterations=4
    )

    assert len(results) == 3 * 2 * 4
    counts = results["combination_id"].value_counts().sort_index()
    assert counts.index.tolist() == list(range(1, 7))
    assert (counts == 4).all()


def test_each_id_maps_to_one_combination(small_grid):
    results = analyse_power(
        small_grid["sample_sizes"], small_grid["effect_sizes"], power_stubs.identity_stub, iterations=3
    )

    per_id = results.groupby("combination_id")[["sample_size", "effect_size"]].nunique()
    assert (per_id == 1).all().all()
    first = results.groupby("combination_id")[["sample_size", "effect_size"]].first()
    assert first.loc[1].tolist() == [10, 0.0]
    assert first.loc[6].tolist() == [30, 0.5]


def test_extra_arguments_forwarded_in_both_modes():
    sequential = analyse_power(
        [10, 20], [0.5, 1.0], power_stubs.kwargs_stub, iterations=2, offset=1.5, label="run"
    )
    parallel = analyse_power(
        [10, 20], [0.5, 1.0], power_stubs.kwargs_stub, iterations=2,
        worker_count=3, backend="thread", offset=1.5, label="run",
    )

    assert (sequential["label"] == "run").all()
    assert sequential.loc[0, "value"] == 10 * 0.5 + 1.5
    assert _rows(sequential) == _rows(parallel)


def _per_combination_counts(df: pd.DataFrame):
    return df["combination_id"].value_counts().sort_index().to_dict()


def test_sequential_and_thread_pool_agree():
    kwargs = dict(iterations=5, seed=11)
    sequential = analyse_power([10, 20, 40], [0.2, 0.5], power_stubs.seeded_stub, **kwargs)
    parallel = analyse_power(
        [10, 20, 40], [0.2, 0.5], power_stubs.seeded_stub, worker_count=4, backend="thread", chunk_size=2, **kwargs
    )

    expected = {cid: 5 for cid in range(1, 7)}
    assert _per_combination_counts(sequential) == expected
    assert _per_combination_counts(parallel) == expected
    # every trial draws its own value, so a lost or repeated trial changes the rows
    assert (sequential.groupby("combination_id")["p_value"].nunique() == 5).all()
    assert _rows(sequential) == _rows(parallel)


def test_sequential_and_process_pool_agree():
    sequential = analyse_power([10, 20], [0.3, 0.8], "ttest", iterations=3, seed=7)
    parallel = analyse_power([10, 20], [0.3, 0.8], "ttest", iterations=3, worker_count=2, chunk_size=1, seed=7)

    expected = {cid: 3 for cid in range(1, 5)}
    assert _per_combination_counts(sequential) == expected
    assert _per_combination_counts(parallel) == expected
    assert (parallel.groupby("combination_id")["p_value"].nunique() == 3).all()
    assert _rows(sequential) == _rows(parallel)


def test_iteration_index_passed_to_evaluators_that_declare_it():
    sequential = analyse_power([10, 20], [0.5], power_stubs.iteration_stub, iterations=3)
    parallel = analyse_power(
        [10, 20], [0.5], power_stubs.iteration_stub, iterations=3, worker_count=2, backend="thread", chunk_size=1
    )

    for results in (sequential, parallel):
        per_id = results.groupby("combination_id")["iteration"].apply(sorted).to_dict()
        assert per_id == {1: [1, 2, 3], 2: [1, 2, 3]}
    assert _rows(sequential) == _rows(parallel)


def test_iteration_not_passed_to_evaluators_without_it():
    results = analyse_power([10], [0.5], power_stubs.kwargs_stub, iterations=2, offset=1.0)

    assert "iteration" not in results.columns
    assert results["value"].tolist() == [6.0, 6.0]


def test_evaluator_by_import_path():
    results = analyse_power(
        [10], [0.5], "power_stubs:identity_stub", iterations=2, worker_count=2, backend="thread"
    )

    assert results["value"].tolist() == [10.5, 10.5]


def test_evaluate_alias():
    assert evaluate is analyse_power


def test_record_shapes_are_accepted():
    for stub in (power_stubs.series_stub, power_stubs.frame_stub, power_stubs.dataclass_stub):
        results = analyse_power([10, 20], [0.5], stub, iterations=1)
        assert results["value"].tolist() == [10.5, 20.5]


def test_lambda_rejected_for_parallel_runs():
    with pytest.raises(ConfigurationError):
        analyse_power([10], [0.5], lambda n, d, i: {}, iterations=1, worker_count=2)


def test_closure_rejected_for_parallel_runs():
    def local_evaluator(sample_size, effect_size, combination_id):
        return power_stubs.identity_stub(sample_size, effect_size, combination_id)

    with pytest.raises(ConfigurationError):
        analyse_power([10], [0.5], local_evaluator, iterations=1, worker_count=2, backend="thread")


def test_closure_allowed_for_sequential_runs():
    def local_evaluator(sample_size, effect_size, combination_id):
        return power_stubs.identity_stub(sample_size, effect_size, combination_id)

    results = analyse_power([10], [0.5], local_evaluator, iterations=2)
    assert len(results) == 2


@pytest.mark.parametrize(
    "options",
    [
        {"worker_count": 0},
        {"worker_count": 2.5},
        {"backend": "gpu"},
        {"on_error": "ignore"},
        {"chunk_size": 0},
    ],
)
def test_invalid_options(options):
    with pytest.raises(ConfigurationError):
        analyse_power([10], [0.5], power_stubs.identity_stub, iterations=1, **options)


def test_unknown_evaluator_name():
    with pytest.raises(ConfigurationError):
        analyse_power([10], [0.5], "no_such_evaluator", iterations=1)


def test_extra_argument_clashing_with_trial_field():
    with pytest.raises(ConfigurationError):
        GridEvaluator(power_stubs.identity_stub, iterations=1, evaluator_kwargs={"combination_id": 3})


def test_configuration_error_runs_no_trials():
    calls = []

    def counting(sample_size, effect_size, combination_id):
        calls.append(combination_id)
        return power_stubs.identity_stub(sample_size, effect_size, combination_id)

    with pytest.raises(ConfigurationError):
        analyse_power([10, 20], [0.5], counting, iterations=0)
    assert calls == []


def test_failure_carries_trial_context():
    with pytest.raises(EvaluationError) as excinfo:
        analyse_power([10, 20], [0.5], power_stubs.failing_stub, iterations=2)

    err = excinfo.value
    assert err.combination_id == 2
    assert err.sample_size == 20
    assert err.effect_size == 0.5
    assert err.iteration == 1
    assert err.error_type == "RuntimeError"
    assert isinstance(err.__cause__, RuntimeError)


def test_fail_fast_in_thread_pool_releases_workers():
    before = threading.active_count()

    with pytest.raises(EvaluationError) as excinfo:
        analyse_power(
            [10, 20, 30, 40], [0.5, 1.0], power_stubs.failing_stub,
            iterations=5, worker_count=4, backend="thread", chunk_size=1, delay=0.001,
        )

    assert excinfo.value.combination_id == 2
    assert threading.active_count() == before


def test_fail_fast_in_process_pool_releases_workers():
    with pytest.raises(EvaluationError) as excinfo:
        analyse_power([10, 20], [0.5], "ttest", iterations=4, worker_count=2, alternative="sideways")

    assert excinfo.value.error_type == "ValueError"
    assert multiprocessing.active_children() == []


def test_collect_policy_reports_every_failure():
    with pytest.raises(EvaluationError) as excinfo:
        analyse_power(
            [10, 20, 30], [0.5], power_stubs.failing_stub,
            iterations=3, on_error="collect", worker_count=2, backend="thread",
        )

    err = excinfo.value
    assert len(err.failures) == 3
    assert {f["combination_id"] for f in err.failures} == {2}
    assert len(err.partial) == 6
    assert set(err.partial["combination_id"]) == {1, 3}


def test_collect_policy_sequential():
    with pytest.raises(EvaluationError) as excinfo:
        analyse_power([10, 20], [0.5], power_stubs.failing_stub, iterations=2, on_error="collect")

    assert len(excinfo.value.failures) == 2
    assert len(excinfo.value.partial) == 2


def test_schema_drift_is_rejected():
    with pytest.raises(SchemaMismatchError):
        analyse_power([10, 20], [0.5], power_stubs.drifting_schema_stub, iterations=1)


def test_schema_drift_is_rejected_in_parallel():
    with pytest.raises(SchemaMismatchError):
        analyse_power(
            [10, 20, 30], [0.5], power_stubs.drifting_schema_stub,
            iterations=2, worker_count=2, backend="thread",
        )


def test_nested_record_is_rejected():
    with pytest.raises(SchemaMismatchError):
        analyse_power([10], [0.5], power_stubs.nested_stub, iterations=1)


def test_record_without_identity_fields_is_rejected():
    with pytest.raises(SchemaMismatchError):
        analyse_power([10], [0.5], power_stubs.missing_fields_stub, iterations=1)


def test_defaults_come_from_settings(restore_settings):
    restore_settings.default_iterations = 3
    restore_settings.default_worker_count = 2
    restore_settings.parallel_backend = "thread"

    results = analyse_power([10], [0.5, 1.0], power_stubs.identity_stub)

    assert len(results) == 6


def test_iteration_is_reserved_for_the_harness():
    with pytest.raises(ConfigurationError):
        GridEvaluator(power_stubs.iteration_stub, iterations=1, evaluator_kwargs={"iteration": 3})


def test_unknown_start_method_rejected_before_any_trial(restore_settings):
    restore_settings.mp_start_method = "teleport"

    with pytest.raises(ConfigurationError, match="start method"):
        analyse_power([10], [0.5], power_stubs.identity_stub, iterations=2, worker_count=2)
    # only the process backend uses the start method
    results = analyse_power([10], [0.5], power_stubs.identity_stub, iterations=2, worker_count=2, backend="thread")
    assert len(results) == 2
