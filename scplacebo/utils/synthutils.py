from typing import Any, Dict, Sequence

import numpy as np
import pandas as pd

from scplacebo.utils.datautils import PanelData

OUTCOME_PATH_COLUMNS = ["time", "treated_outcome", "synthetic_outcome", "gap", "post_treatment"]


def synthesize_outcome(
    panel: PanelData,
    treated_unit: Any,
    treatment_time: Any,
    donor_names: Sequence[Any],
    weights: np.ndarray,
    missing_donor_policy: str = "zero",
) -> pd.DataFrame:
    """
    Apply donor weights to the full donor outcome series.

    Parameters
    ----------
    panel : PanelData
        The panel, over its full time range.
    treated_unit : Any
        Identifier of the treated unit.
    treatment_time : Any
        First post-treatment time value.
    donor_names : Sequence[Any]
        Donors aligned with ``weights``.
    weights : np.ndarray
        Donor weights, zeros included. Shape (J,).
    missing_donor_policy : {"zero", "propagate"}, default="zero"
        With "zero", a positively weighted donor with no observation at a
        period contributes nothing to that period. With "propagate", that
        period's synthetic value is NaN. Zero-weight donors never matter.

    Returns
    -------
    pd.DataFrame
        One row per time value observed for the treated unit, with columns
        ``time, treated_outcome, synthetic_outcome, gap, post_treatment``.
    """
    if missing_donor_policy not in ("zero", "propagate"):
        raise ValueError(f"Unknown missing_donor_policy '{missing_donor_policy}'.")
    weights = np.asarray(weights, dtype=float)
    donor_names = list(donor_names)
    if weights.shape[0] != len(donor_names):
        raise ValueError(f"Got {weights.shape[0]} weights for {len(donor_names)} donors.")

    times = panel.unit_times(treated_unit)
    treated = panel.wide(panel.outcome, [treated_unit])[treated_unit].reindex(times).to_numpy(dtype=float)

    active = weights > 0
    donor_outcomes = (
        panel.wide(panel.outcome, [d for d, a in zip(donor_names, active) if a])
        .reindex(times)
        .to_numpy(dtype=float)
    )
    if missing_donor_policy == "zero":
        donor_outcomes = np.nan_to_num(donor_outcomes, nan=0.0)
    synthetic = donor_outcomes @ weights[active]

    return pd.DataFrame({
        "time": times,
        "treated_outcome": treated,
        "synthetic_outcome": synthetic,
        "gap": treated - synthetic,
        "post_treatment": times >= treatment_time,
    })


def rmspe(gaps: np.ndarray) -> float:
    """Root mean squared gap over the non-missing entries; NaN when there are none."""
    gaps = np.asarray(gaps, dtype=float)
    gaps = gaps[np.isfinite(gaps)]
    if gaps.size == 0:
        return np.nan
    return float(np.sqrt(np.mean(gaps ** 2)))


def rmspe_ratio(rmspe_post: float, rmspe_pre: float) -> float:
    """Post/pre RMSPE ratio, NaN when the pre-period fit is exact or undefined."""
    if not np.isfinite(rmspe_pre) or rmspe_pre == 0 or not np.isfinite(rmspe_post):
        return np.nan
    return float(rmspe_post / rmspe_pre)


def path_rmspe(outcome_path: pd.DataFrame) -> Dict[str, float]:
    """Pre-period RMSPE, post-period RMSPE and their ratio for an outcome path."""
    post = outcome_path["post_treatment"].to_numpy(dtype=bool)
    gaps = outcome_path["gap"].to_numpy(dtype=float)
    pre_value = rmspe(gaps[~post])
    post_value = rmspe(gaps[post])
    return {
        "rmspe_pre": pre_value,
        "rmspe_post": post_value,
        "ratio": rmspe_ratio(post_value, pre_value),
    }


def predictor_rmspe(treated_predictors: np.ndarray, fitted_predictors: np.ndarray) -> float:
    """RMSPE of the fit in predictor space."""
    return rmspe(np.asarray(treated_predictors, dtype=float) - np.asarray(fitted_predictors, dtype=float))
