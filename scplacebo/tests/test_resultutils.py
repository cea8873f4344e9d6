import pytest
import numpy as np
import pandas as pd
from numpy.testing import assert_allclose

from scplacebo.utils.resultutils import (
    effects,
    build_scm_results,
    build_in_space_results,
    build_in_time_results,
)
from scplacebo.utils.datautils import prepare_panel
from scplacebo.utils.estutils import scm_pipeline
from scplacebo.config_models import SCMResults, InSpacePlaceboResults, InTimePlaceboResults


def test_effects_calculate_basic():
    observed = np.array([10.0, 12.0, 11.0, 20.0, 22.0])
    counterfactual = np.array([10.0, 11.0, 12.0, 15.0, 16.0])
    post = np.array([False, False, False, True, True])

    treatment_effects, fit = effects.calculate(observed, counterfactual, post)

    assert treatment_effects["ATT"] == pytest.approx(5.5)
    assert treatment_effects["TTE"] == pytest.approx(11.0)
    assert treatment_effects["Percent ATT"] == pytest.approx(100 * 5.5 / 15.5)
    assert_allclose(treatment_effects["ATT_Time"], [5.0, 6.0])
    assert fit["T0 RMSPE"] == pytest.approx(np.sqrt(2 / 3))
    assert fit["T1 RMSPE"] == pytest.approx(np.sqrt((25 + 36) / 2))
    assert fit["RMSPE Ratio"] == pytest.approx(np.sqrt(30.5) / np.sqrt(2 / 3))
    # pre variance of observed: mean of (-1, 1, 0)^2 = 2/3
    assert fit["R-Squared"] == pytest.approx(1 - (2 / 3) / (2 / 3))
    assert fit["Pre-Periods"] == 3
    assert fit["Post-Periods"] == 2


def test_effects_calculate_no_post_periods():
    treatment_effects, fit = effects.calculate(np.array([1.0, 2.0]), np.array([1.0, 2.5]), np.array([False, False]))
    assert np.isnan(treatment_effects["ATT"])
    assert np.isnan(treatment_effects["TTE"])
    assert np.isnan(fit["T1 RMSPE"])
    assert np.isnan(fit["RMSPE Ratio"])
    assert fit["Post-Periods"] == 0


def test_effects_calculate_ignores_missing_gaps():
    observed = np.array([1.0, 2.0, 5.0, 7.0])
    counterfactual = np.array([1.0, 2.0, np.nan, 4.0])
    post = np.array([False, False, True, True])
    treatment_effects, fit = effects.calculate(observed, counterfactual, post)
    assert treatment_effects["ATT"] == pytest.approx(3.0)
    assert fit["T0 RMSPE"] == 0.0
    assert np.isnan(fit["RMSPE Ratio"])


def test_effects_calculate_zero_counterfactual_percent():
    treatment_effects, _ = effects.calculate(
        np.array([1.0, 1.0, 2.0]), np.array([1.0, 1.0, 0.0]), np.array([False, False, True])
    )
    assert np.isnan(treatment_effects["Percent ATT"])


def test_build_scm_results(three_unit_panel):
    panel = prepare_panel(three_unit_panel, "unit", "year", "gdp")
    raw = scm_pipeline(panel, "A", 2005, ["B", "C"])
    results = build_scm_results(raw, parameters_used={"ridge": 1e-8})

    assert isinstance(results, SCMResults)
    assert list(results.weights) == ["B", "C"]
    assert results.effects.att == pytest.approx(5.0, abs=1e-3)
    assert results.effects.total_effect == pytest.approx(15.0, abs=1e-2)
    assert results.fit_diagnostics.pre_periods == 5
    assert results.fit_diagnostics.post_periods == 3
    # exact pre-period fit: ratio undefined
    assert results.fit_diagnostics.rmspe_ratio is None or results.fit_diagnostics.rmspe_ratio > 1e3
    assert results.fit_diagnostics.additional_metrics["used_default_predictors"] is True
    assert results.weight_summary.summary_stats["sum"] == pytest.approx(1.0)
    assert results.method_details.method_name == "SCM"
    assert results.method_details.parameters_used == {"ridge": 1e-8}
    assert_allclose(results.time_series.estimated_gap, results.outcome_path["gap"])
    assert "raw_results" not in results.model_dump(exclude={"outcome_path", "predictor_balance"})


def test_build_in_space_results():
    raw = {
        "summary": pd.DataFrame({"unit": ["A"]}),
        "gaps": pd.DataFrame({"unit": ["A"], "time": [1], "gap": [0.0], "is_real_treated": [True]}),
        "p_value": 0.5,
        "treated_ratio": 3.0,
        "treated_rank": 1,
        "ranked_units": 2,
        "successful_count": 1,
        "attempted_count": 2,
        "failed_units": {"C": "ScplaceboDataError: missing"},
    }
    results = build_in_space_results(raw, "A", 5)
    assert isinstance(results, InSpacePlaceboResults)
    assert results.inference.method == "in-space placebo"
    assert results.inference.p_value == 0.5
    assert results.inference.details["ranked_units"] == 2
    assert results.failed_units == {"C": "ScplaceboDataError: missing"}


def test_build_in_space_results_nan_ratio():
    raw = {
        "summary": pd.DataFrame(), "gaps": pd.DataFrame(), "p_value": None, "treated_ratio": np.nan,
        "treated_rank": None, "ranked_units": 2, "successful_count": 2, "attempted_count": 2,
        "failed_units": {},
    }
    results = build_in_space_results(raw, "A", 5)
    assert results.treated_ratio is None
    assert results.p_value is None


def test_build_in_time_results():
    raw = {
        "summary": pd.DataFrame(), "gaps": pd.DataFrame(), "paths": pd.DataFrame(),
        "successful_count": 1, "attempted_count": 1,
        "skipped_times": {2: "only 1 pre-treatment periods (minimum 3)"}, "failed_times": {},
    }
    results = build_in_time_results(raw, "A", 8)
    assert isinstance(results, InTimePlaceboResults)
    assert results.real_treatment_time == 8
    assert 2 in results.skipped_times
