import itertools
import time
import pytest
import numpy as np
import pandas as pd
from typing import Dict, Any
from unittest.mock import patch

from scplacebo import SCM, InSpacePlacebo, InTimePlacebo
from scplacebo.config_models import InSpacePlaceboResults, InTimePlaceboResults
from scplacebo.exceptions import (
    ScplaceboCancelledError,
    ScplaceboConfigError,
    ScplaceboDataError,
    ScplaceboEstimationError,
)
from scplacebo.utils import placeboutils
from scplacebo.utils.datautils import prepare_panel
from scplacebo.utils.placeboutils import (
    PlaceboTask,
    _rank_p_value,
    in_space_placebo,
    run_iterations,
    screen_fake_times,
)


def _failing_for_donors(treated_unit_to_keep):
    """scm_pipeline replacement that only succeeds for one unit."""
    real_pipeline = placeboutils.scm_pipeline

    def _pipeline(panel, treated_unit, *args, **kwargs):
        if treated_unit != treated_unit_to_keep:
            raise RuntimeError("solver exploded")
        return real_pipeline(panel, treated_unit, *args, **kwargs)

    return _pipeline


# === rank-based p-value ===

def test_rank_p_value_counts_ratios_at_least_as_large():
    result = _rank_p_value(np.array([2.0, 1.0, 3.0, np.nan]), 2.0)
    assert result == {"p_value": pytest.approx(2 / 3), "treated_rank": 2, "ranked_units": 3}


def test_rank_p_value_most_extreme_treated():
    result = _rank_p_value(np.array([9.0, 1.0, 3.0, 2.0]), 9.0)
    assert result["p_value"] == pytest.approx(0.25)
    assert result["treated_rank"] == 1


def test_rank_p_value_undefined():
    assert _rank_p_value(np.array([np.nan, 1.0, 2.0]), np.nan)["p_value"] is None
    assert _rank_p_value(np.array([2.0, np.nan]), 2.0)["p_value"] is None


# === worker pool ===

def _tasks(n):
    return [PlaceboTask(label=i, treated_unit=i, treatment_time=0, donor_units=[]) for i in range(n)]


def _slow_square(task):
    time.sleep(0.01 * (5 - task.label))
    if task.label == 3:
        raise ValueError("bad unit")
    return {"value": task.label ** 2}


@pytest.mark.parametrize("parallel", [False, True])
def test_run_iterations_keeps_task_order_and_records_failures(parallel):
    outcomes = run_iterations(_tasks(5), _slow_square, parallel=parallel, cores=3)
    assert [o.task.label for o in outcomes] == [0, 1, 2, 3, 4]
    assert [o.result["value"] for o in outcomes if o.succeeded] == [0, 1, 4, 16]
    assert not outcomes[3].succeeded
    assert "ValueError: bad unit" in outcomes[3].error


@pytest.mark.parametrize("parallel", [False, True])
def test_run_iterations_progress(parallel):
    calls = []
    run_iterations(_tasks(4), lambda task: {}, parallel=parallel, cores=2,
                   progress_callback=lambda done, total, label: calls.append((done, total)))
    assert sorted(calls) == [(1, 4), (2, 4), (3, 4), (4, 4)]


@pytest.mark.parametrize("parallel", [False, True])
def test_run_iterations_cancel(parallel):
    counter = itertools.count()
    with pytest.raises(ScplaceboCancelledError, match="cancelled"):
        run_iterations(_tasks(6), lambda task: {}, parallel=parallel, cores=1,
                       should_stop=lambda: next(counter) >= 2)


# === in-space placebo ===

def test_in_space_summary_and_gaps(noisy_config: Dict[str, Any]):
    results = InSpacePlacebo(noisy_config).fit()

    assert isinstance(results, InSpacePlaceboResults)
    assert list(results.summary.columns) == [
        "unit", "rmspe_pre", "rmspe_post", "ratio", "is_real_treated",
        "converged", "donor_pool_size", "treated_in_donor_pool",
    ]
    assert list(results.summary["unit"]) == ["u0", "u1", "u2", "u3", "u4", "u5"]
    assert results.summary["is_real_treated"].tolist() == [True] + [False] * 5
    assert results.summary["donor_pool_size"].tolist() == [5, 4, 4, 4, 4, 4]
    assert not results.summary["treated_in_donor_pool"].any()

    assert results.attempted_count == 5
    assert results.successful_count == 5
    assert results.failed_units == {}

    assert list(results.gaps.columns) == ["unit", "time", "gap", "is_real_treated"]
    assert len(results.gaps) == 6 * 12


def test_in_space_p_value(noisy_config: Dict[str, Any]):
    results = InSpacePlacebo(noisy_config).fit()
    assert results.ranked_units == 6
    assert results.p_value == pytest.approx(results.treated_rank / results.ranked_units)
    assert 1 / 6 <= results.p_value <= 1.0
    assert results.inference.method == "in-space placebo"
    assert results.inference.p_value == results.p_value


def test_in_space_self_consistency(noisy_config: Dict[str, Any]):
    """The treated unit's placebo ratio equals the ratio of the plain analysis."""
    placebo = InSpacePlacebo(noisy_config).fit()
    analysis = SCM(noisy_config).fit()

    treated_row = placebo.summary[placebo.summary["is_real_treated"]].iloc[0]
    assert treated_row["ratio"] == pytest.approx(analysis.fit_diagnostics.rmspe_ratio, rel=1e-6)
    assert treated_row["rmspe_pre"] == pytest.approx(analysis.rmspe, rel=1e-6)
    assert placebo.treated_ratio == pytest.approx(treated_row["ratio"])


def test_in_space_readmits_treated_when_pool_too_small(three_unit_config: Dict[str, Any]):
    results = InSpacePlacebo(three_unit_config).fit()
    donors = results.summary[~results.summary["is_real_treated"]]
    assert donors["treated_in_donor_pool"].all()
    assert donors["donor_pool_size"].tolist() == [2, 2]


def test_in_space_repeated_donor_rejected(noisy_config: Dict[str, Any]):
    with pytest.raises(ScplaceboConfigError, match="listed more than once"):
        InSpacePlacebo({**noisy_config, "donor_units": ["u1", "u1", "u2"]}).fit()


def test_in_space_placebo_runs_each_donor_once(noisy_panel: pd.DataFrame):
    panel = prepare_panel(noisy_panel, "unit", "period", "y")
    raw = in_space_placebo(panel, "u0", 9, donor_units=["u1", "u2", "u1", "u3"])
    assert sorted(raw["summary"]["unit"]) == ["u0", "u1", "u2", "u3"]


def test_in_space_include_treated_in_pools(noisy_config: Dict[str, Any]):
    results = InSpacePlacebo({**noisy_config, "exclude_treated_from_donor": False}).fit()
    donors = results.summary[~results.summary["is_real_treated"]]
    assert donors["treated_in_donor_pool"].all()
    assert donors["donor_pool_size"].tolist() == [5] * 5


def test_in_space_failed_donor_is_skipped(noisy_panel: pd.DataFrame, noisy_config: Dict[str, Any]):
    extra = noisy_panel[noisy_panel["unit"] == "u1"].copy()
    extra["unit"] = "u6"
    extra.loc[extra["period"] == 3, "y"] = np.nan
    df = pd.concat([noisy_panel, extra], ignore_index=True)

    results = InSpacePlacebo({**noisy_config, "df": df}).fit()
    assert results.attempted_count == 6
    assert results.successful_count == 5
    assert list(results.failed_units) == ["u6"]
    assert "ScplaceboDataError" in results.failed_units["u6"]
    assert "u6" not in results.summary["unit"].tolist()


def test_in_space_all_donor_runs_fail(noisy_config: Dict[str, Any]):
    with patch("scplacebo.utils.placeboutils.scm_pipeline", side_effect=_failing_for_donors("u0")):
        with pytest.raises(ScplaceboEstimationError, match="All 5 placebo runs failed"):
            InSpacePlacebo(noisy_config).fit()


def test_in_space_treated_failure_is_hard(noisy_panel: pd.DataFrame, noisy_config: Dict[str, Any]):
    df = noisy_panel.copy()
    df.loc[(df["unit"] == "u0") & (df["period"] == 2), "y"] = np.nan
    with pytest.raises(ScplaceboDataError, match="Treated unit 'u0'"):
        InSpacePlacebo({**noisy_config, "df": df}).fit()


def test_in_space_requires_post_period(noisy_config: Dict[str, Any]):
    with pytest.raises(ScplaceboConfigError, match="No post-treatment periods"):
        InSpacePlacebo({**noisy_config, "treatment_time": 13}).fit()


def test_in_space_progress_and_cancel(noisy_config: Dict[str, Any]):
    calls = []
    InSpacePlacebo({**noisy_config, "progress_callback": lambda *args: calls.append(args)}).fit()
    assert calls[0] == (1, 6, "u0")
    assert calls[-1] == (6, 6, "u5")

    counter = itertools.count()
    with pytest.raises(ScplaceboCancelledError):
        InSpacePlacebo({**noisy_config, "should_stop": lambda: next(counter) >= 3}).fit()


def test_in_space_parallel_matches_sequential(noisy_config: Dict[str, Any]):
    sequential = InSpacePlacebo(noisy_config).fit()
    parallel = InSpacePlacebo({**noisy_config, "parallel": True, "cores": 3}).fit()
    pd.testing.assert_frame_equal(sequential.summary, parallel.summary, atol=1e-6)
    assert sequential.p_value == parallel.p_value


# === in-time placebo ===

def test_screen_fake_times(noisy_panel: pd.DataFrame):
    panel = prepare_panel(noisy_panel, "unit", "period", "y")
    screening = screen_fake_times(panel, 9, [8, 3, 4, 6, 9, 4.5, 4])
    assert screening["valid"] == [4, 6]
    assert set(screening["skipped"]) == {3, 4.5, 8, 9}
    assert "only 2 pre-treatment periods" in screening["skipped"][3]
    assert "only 1 post-treatment periods" in screening["skipped"][8]
    assert "not before the real treatment time" in screening["skipped"][9]
    assert "not a time value" in screening["skipped"][4.5]


def test_in_time_skips_short_fake_dates(noisy_config: Dict[str, Any]):
    """A fake date with only 2 pre periods is skipped, the batch still runs."""
    results = InTimePlacebo({**noisy_config, "fake_treatment_times": [3, 5]}).fit()

    assert isinstance(results, InTimePlaceboResults)
    assert list(results.skipped_times) == [3]
    assert results.attempted_count == 1
    assert results.successful_count == 1
    assert results.summary["fake_treatment_time"].tolist() == [5]


def test_in_time_summary_paths_and_gaps(noisy_config: Dict[str, Any]):
    results = InTimePlacebo({**noisy_config, "fake_treatment_times": [6, 4]}).fit()

    assert list(results.summary.columns) == [
        "fake_treatment_time", "rmspe_pre", "rmspe_post", "ratio", "ratio_rank",
        "converged", "pre_periods_count", "post_periods_count",
    ]
    assert results.summary["fake_treatment_time"].tolist() == [4, 6]
    assert results.summary["pre_periods_count"].tolist() == [3, 5]
    assert results.summary["post_periods_count"].tolist() == [5, 3]
    assert sorted(results.summary["ratio_rank"].tolist()) == [1, 2]

    # no run sees the real post-treatment periods
    assert results.paths["time"].max() == 8
    assert results.gaps["time"].max() == 8
    assert len(results.paths) == 2 * 8
    assert list(results.paths.columns) == ["fake_treatment_time", "time", "treated_outcome", "synthetic_outcome"]
    assert results.real_treatment_time == 9


def test_in_time_no_valid_fake_time(noisy_config: Dict[str, Any]):
    with pytest.raises(ScplaceboConfigError, match="No valid fake treatment times"):
        InTimePlacebo({**noisy_config, "fake_treatment_times": [2, 8, 10]}).fit()


def test_in_time_all_runs_fail(noisy_config: Dict[str, Any]):
    with patch("scplacebo.utils.placeboutils.scm_pipeline", side_effect=_failing_for_donors("nobody")):
        with pytest.raises(ScplaceboEstimationError, match="All 2 fake treatment time runs failed"):
            InTimePlacebo({**noisy_config, "fake_treatment_times": [4, 6]}).fit()


def test_in_time_partial_failure_is_recorded(noisy_config: Dict[str, Any]):
    real_pipeline = placeboutils.scm_pipeline

    def _pipeline(panel, treated_unit, treatment_time, *args, **kwargs):
        if treatment_time == 6:
            raise RuntimeError("solver exploded")
        return real_pipeline(panel, treated_unit, treatment_time, *args, **kwargs)

    with patch("scplacebo.utils.placeboutils.scm_pipeline", side_effect=_pipeline):
        results = InTimePlacebo({**noisy_config, "fake_treatment_times": [4, 6]}).fit()

    assert results.successful_count == 1
    assert results.attempted_count == 2
    assert "RuntimeError: solver exploded" in results.failed_times[6]
