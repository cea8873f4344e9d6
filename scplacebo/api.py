"""Functional interface for callers that hold a DataFrame and column roles."""

from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import pandas as pd

from .config_models import (
    InSpacePlaceboConfig,
    InSpacePlaceboResults,
    InTimePlaceboConfig,
    InTimePlaceboResults,
    SCMConfig,
    SCMResults,
    SpecialPredictor,
)
from .estimators.placebo import InSpacePlacebo, InTimePlacebo
from .estimators.scm import SCM
from .utils.datautils import check_panel_balance, validate_panel

SpecialPredictorInput = Union[SpecialPredictor, Dict[str, Any]]

__all__ = [
    "run_analysis",
    "run_in_space_placebo",
    "run_in_time_placebo",
    "check_panel_balance",
    "validate_panel",
]


def _base_fields(
    panel: pd.DataFrame,
    unit_col: str,
    time_col: str,
    outcome_col: str,
    treated_unit: Any,
    treatment_time: Any,
    regular_predictors: Optional[Sequence[str]],
    special_predictors: Optional[Sequence[SpecialPredictorInput]],
    donor_units: Optional[Sequence[Any]],
    options: Dict[str, Any],
) -> Dict[str, Any]:
    fields = {
        "df": panel,
        "unitid": unit_col,
        "time": time_col,
        "outcome": outcome_col,
        "treated_unit": treated_unit,
        "treatment_time": treatment_time,
        "regular_predictors": list(regular_predictors or []),
        "special_predictors": list(special_predictors or []),
        "donor_units": list(donor_units) if donor_units is not None else None,
    }
    fields.update(options)
    return fields


def run_analysis(
    panel: pd.DataFrame,
    unit_col: str,
    time_col: str,
    outcome_col: str,
    treated_unit: Any,
    treatment_time: Any,
    regular_predictors: Optional[Sequence[str]] = None,
    special_predictors: Optional[Sequence[SpecialPredictorInput]] = None,
    donor_units: Optional[Sequence[Any]] = None,
    **options: Any,
) -> SCMResults:
    """
    Synthetic control analysis of one treated unit.

    Special predictors may be given as :class:`SpecialPredictor` models or as
    dicts such as ``{"var": "gdp", "start": 1990, "end": 1995}``. Extra
    keyword ``options`` (``ridge``, ``weight_tol``, ``solver``,
    ``missing_donor_policy``) go to :class:`SCMConfig`.

    Returns
    -------
    SCMResults
        ``weights``, ``outcome_path``, ``predictor_balance``, ``rmspe``,
        ``donor_units`` and ``converged``, plus effect and fit summaries.
    """
    config = SCMConfig(**_base_fields(
        panel, unit_col, time_col, outcome_col, treated_unit, treatment_time,
        regular_predictors, special_predictors, donor_units, options,
    ))
    return SCM(config).fit()


def run_in_space_placebo(
    panel: pd.DataFrame,
    unit_col: str,
    time_col: str,
    outcome_col: str,
    treated_unit: Any,
    treatment_time: Any,
    regular_predictors: Optional[Sequence[str]] = None,
    special_predictors: Optional[Sequence[SpecialPredictorInput]] = None,
    donor_units: Optional[Sequence[Any]] = None,
    exclude_treated_from_donor: bool = True,
    parallel: bool = False,
    cores: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    **options: Any,
) -> InSpacePlaceboResults:
    """
    In-space placebo test: every donor in turn plays the treated unit.

    Returns
    -------
    InSpacePlaceboResults
        Per-unit ``summary`` table, long ``gaps`` table, ``p_value``,
        ``successful_count`` and ``attempted_count``.
    """
    fields = _base_fields(
        panel, unit_col, time_col, outcome_col, treated_unit, treatment_time,
        regular_predictors, special_predictors, donor_units, options,
    )
    config = InSpacePlaceboConfig(
        **fields,
        exclude_treated_from_donor=exclude_treated_from_donor,
        parallel=parallel,
        cores=cores,
        progress_callback=progress_callback,
        should_stop=should_stop,
    )
    return InSpacePlacebo(config).fit()


def run_in_time_placebo(
    panel: pd.DataFrame,
    unit_col: str,
    time_col: str,
    outcome_col: str,
    treated_unit: Any,
    real_treatment_time: Any,
    candidate_fake_times: List[Any],
    regular_predictors: Optional[Sequence[str]] = None,
    special_predictors: Optional[Sequence[SpecialPredictorInput]] = None,
    donor_units: Optional[Sequence[Any]] = None,
    min_pre_periods: int = 3,
    min_post_periods: int = 2,
    parallel: bool = False,
    cores: Optional[int] = None,
    progress_callback: Optional[Callable[[int, int, Any], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
    **options: Any,
) -> InTimePlaceboResults:
    """
    In-time placebo test: backdate the treatment to each candidate fake time.

    Returns
    -------
    InTimePlaceboResults
        Per-date ``summary`` table, long ``gaps`` and ``paths`` tables,
        ``successful_count`` and ``attempted_count``.
    """
    fields = _base_fields(
        panel, unit_col, time_col, outcome_col, treated_unit, real_treatment_time,
        regular_predictors, special_predictors, donor_units, options,
    )
    config = InTimePlaceboConfig(
        **fields,
        fake_treatment_times=list(candidate_fake_times),
        min_pre_periods=min_pre_periods,
        min_post_periods=min_post_periods,
        parallel=parallel,
        cores=cores,
        progress_callback=progress_callback,
        should_stop=should_stop,
    )
    return InTimePlacebo(config).fit()
