import logging
from dataclasses import dataclass, field
from typing import Any, List, Sequence

import numpy as np
import pandas as pd

from scplacebo.config_models import PredictorSpec, RegularPredictor, SpecialPredictor
from scplacebo.exceptions import ScplaceboConfigError, ScplaceboDataError
from scplacebo.utils.datautils import PanelData, MIN_DONORS, MIN_PRE_PERIODS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PredictorMatrix:
    """Predictor values of the treated unit and of the donor pool.

    Attributes
    ----------
    treated : np.ndarray
        Treated-unit predictor vector. Shape (K,).
    donors : np.ndarray
        Donor predictor matrix, one row per donor. Shape (J, K).
    donor_names : List[Any]
        Donor identifiers aligned with the rows of ``donors``.
    labels : List[str]
        Predictor labels aligned with the columns.
    excluded_donors : List[Any]
        Donors dropped because one of their aggregates was missing.
    used_default : bool
        True when the outcome-trajectory fallback produced the columns.
    """
    treated: np.ndarray
    donors: np.ndarray
    donor_names: List[Any]
    labels: List[str]
    excluded_donors: List[Any] = field(default_factory=list)
    used_default: bool = False

    @property
    def n_predictors(self) -> int:
        return int(self.treated.shape[0])


def _unit_means(panel: PanelData, variable: str, times: np.ndarray, units: Sequence[Any]) -> pd.Series:
    """Per-unit mean of ``variable`` over rows whose time is in ``times``, ignoring NaN."""
    frame = panel.df[panel.df[panel.time].isin(times)]
    means = frame.groupby(panel.unitid, sort=False)[variable].mean()
    return means.reindex(list(units))


def default_predictors(panel: PanelData, pre_times: np.ndarray) -> List[SpecialPredictor]:
    """One single-period special predictor on the outcome for each pre-treatment time."""
    return [SpecialPredictor(variable=panel.outcome, start=t, end=t) for t in pre_times]


def build_predictor_matrix(
    panel: PanelData,
    treated_unit: Any,
    treatment_time: Any,
    donor_units: Sequence[Any],
    predictor_specs: Sequence[PredictorSpec] = (),
) -> PredictorMatrix:
    """Aggregate the predictor specification into the matrices used by the weight solver.

    Regular predictors are pre-period means. Special predictors are means over
    their window intersected with the pre-period; a window that misses the
    pre-period contributes no column. When no column results, the outcome at
    every pre-treatment time becomes one column each.

    Donors with a missing aggregate are dropped from the pool.

    Raises
    ------
    ScplaceboConfigError
        Fewer than 2 pre-treatment periods or fewer than 2 donors supplied.
    ScplaceboDataError
        The treated unit has a missing aggregate, or fewer than 2 donors
        remain after dropping incomplete donors.
    """
    pre_times = panel.pre_times(treatment_time)
    if len(pre_times) < MIN_PRE_PERIODS:
        raise ScplaceboConfigError(
            f"Insufficient pre-treatment data: need at least {MIN_PRE_PERIODS} pre-treatment periods, "
            f"got {len(pre_times)}."
        )
    donor_units = list(donor_units)
    if len(set(donor_units)) != len(donor_units):
        raise ScplaceboConfigError("Donor units must be distinct.")
    if len(donor_units) < MIN_DONORS:
        raise ScplaceboConfigError(
            f"Need at least {MIN_DONORS} donor units for synthetic control, got {len(donor_units)}."
        )

    units = [treated_unit] + donor_units
    columns: List[pd.Series] = []
    labels: List[str] = []

    for spec in predictor_specs:
        if isinstance(spec, RegularPredictor):
            columns.append(_unit_means(panel, spec.variable, pre_times, units))
            labels.append(spec.label)
            continue
        try:
            window = pre_times[(pre_times >= spec.start) & (pre_times <= spec.end)]
        except TypeError as e:
            raise ScplaceboConfigError(
                f"Special predictor {spec.label} window cannot be compared with the time column: {e}"
            ) from e
        if len(window) == 0:
            logger.info("Special predictor %s has no pre-treatment periods in its window; dropped.", spec.label)
            continue
        columns.append(_unit_means(panel, spec.variable, window, units))
        labels.append(spec.label)

    used_default = not columns
    if used_default:
        for spec in default_predictors(panel, pre_times):
            columns.append(_unit_means(panel, spec.variable, np.array([spec.start]), units))
            labels.append(spec.label)

    table = pd.concat(columns, axis=1, keys=list(range(len(columns))))
    table.columns = labels
    table.index = units

    treated_row = table.iloc[0]
    if treated_row.isna().any():
        missing = [labels[i] for i, flag in enumerate(treated_row.isna().to_numpy()) if flag]
        raise ScplaceboDataError(
            f"Treated unit '{treated_unit}' has missing values for predictors: {', '.join(missing)}"
        )

    donor_table = table.iloc[1:]
    complete = ~donor_table.isna().any(axis=1).to_numpy()
    excluded = [u for u, ok in zip(donor_units, complete) if not ok]
    if excluded:
        logger.warning("Dropping donors with missing predictor values: %s", excluded)
    kept_names = [u for u, ok in zip(donor_units, complete) if ok]
    if len(kept_names) < MIN_DONORS:
        raise ScplaceboDataError(
            f"Need at least {MIN_DONORS} donor units with complete predictor data, "
            f"got {len(kept_names)} after excluding {len(excluded)}."
        )

    return PredictorMatrix(
        treated=treated_row.to_numpy(dtype=float),
        donors=donor_table.to_numpy(dtype=float)[complete],
        donor_names=kept_names,
        labels=labels,
        excluded_donors=excluded,
        used_default=used_default,
    )


def predictor_balance(matrix: PredictorMatrix, weights: np.ndarray) -> pd.DataFrame:
    """Treated versus synthetic predictor values."""
    synthetic = matrix.donors.T @ weights
    return pd.DataFrame({
        "predictor": matrix.labels,
        "treated": matrix.treated,
        "synthetic": synthetic,
        "difference": matrix.treated - synthetic,
        "donor_mean": matrix.donors.mean(axis=0),
    })
