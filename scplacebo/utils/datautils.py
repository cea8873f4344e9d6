from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from scplacebo.exceptions import ScplaceboConfigError, ScplaceboDataError

MIN_DONORS = 2
MIN_PRE_PERIODS = 2


@dataclass(frozen=True)
class PanelData:
    """Immutable long-format panel with its column roles.

    Rows are unit x time observations. Completeness is not required: a missing
    unit x time cell simply has no row (or a NaN value), and every aggregation
    over the panel excludes missing values. Duplicated unit x time rows
    collapse to their mean.

    Attributes
    ----------
    df : pd.DataFrame
        Private copy of the long panel.
    unitid : str
        Unit identifier column.
    time : str
        Time column. Values must be totally ordered.
    outcome : str
        Outcome column.
    """
    df: pd.DataFrame
    unitid: str
    time: str
    outcome: str

    @property
    def units(self) -> List[Any]:
        """Unit identifiers in order of first appearance."""
        return list(pd.unique(self.df[self.unitid]))

    @property
    def times(self) -> np.ndarray:
        """Sorted distinct time values."""
        return np.sort(pd.unique(self.df[self.time]))

    def pre_times(self, treatment_time: Any) -> np.ndarray:
        times = self.times
        return times[times < treatment_time]

    def post_times(self, treatment_time: Any) -> np.ndarray:
        times = self.times
        return times[times >= treatment_time]

    def unit_times(self, unit: Any) -> np.ndarray:
        """Sorted distinct time values observed for ``unit``."""
        mask = self.df[self.unitid] == unit
        return np.sort(pd.unique(self.df.loc[mask, self.time]))

    def wide(self, variable: str, units: Optional[Sequence[Any]] = None) -> pd.DataFrame:
        """Pivot ``variable`` to a time x unit frame, averaging duplicated cells.

        Every panel time appears in the index and every requested unit in the
        columns, with NaN for cells that have no observation.
        """
        frame = self.df
        if units is not None:
            frame = frame[frame[self.unitid].isin(list(units))]
        wide = frame.pivot_table(
            index=self.time, columns=self.unitid, values=variable, aggfunc="mean", dropna=False
        )
        columns = list(units) if units is not None else self.units
        return wide.reindex(index=self.times, columns=columns)

    def truncate(self, before: Any) -> "PanelData":
        """Panel restricted to time values strictly before ``before``."""
        kept = self.df[self.df[self.time] < before]
        return PanelData(df=kept.reset_index(drop=True), unitid=self.unitid, time=self.time, outcome=self.outcome)


def prepare_panel(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str,
                  outcome_column_name: str) -> PanelData:
    """Build a :class:`PanelData` from a long DataFrame.

    Parameters
    ----------
    df : pd.DataFrame
        Panel in long format.
    unit_id_column_name, time_period_column_name, outcome_column_name : str
        Column roles.

    Returns
    -------
    PanelData
        Panel sorted by unit then time, holding its own copy of the data.

    Raises
    ------
    ScplaceboDataError
        If the frame is empty or the time values cannot be ordered.
    ScplaceboConfigError
        If a role column is missing.
    """
    if df.empty:
        raise ScplaceboDataError("Input DataFrame 'df' cannot be empty.")
    missing = {unit_id_column_name, time_period_column_name, outcome_column_name} - set(df.columns)
    if missing:
        raise ScplaceboConfigError(f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing))}")
    try:
        ordered = df.sort_values([unit_id_column_name, time_period_column_name], kind="mergesort")
    except TypeError as e:
        raise ScplaceboDataError(f"Time values in column '{time_period_column_name}' are not orderable: {e}") from e
    return PanelData(
        df=ordered.reset_index(drop=True).copy(),
        unitid=unit_id_column_name,
        time=time_period_column_name,
        outcome=outcome_column_name,
    )


def resolve_donor_pool(panel: PanelData, treated_unit: Any, donor_units: Optional[Sequence[Any]] = None) -> List[Any]:
    """Donor pool: ``donor_units`` when given, otherwise every unit other than the treated unit.

    Repeated ids are kept once, at their first position.
    """
    if donor_units is None:
        return [u for u in panel.units if u != treated_unit]
    return [u for u in dict.fromkeys(donor_units) if u != treated_unit]


def check_treatment_setup(panel: PanelData, treated_unit: Any, treatment_time: Any,
                          donor_pool: Sequence[Any]) -> Dict[str, Any]:
    """Validate a treatment specification against the panel before any optimization.

    Returns
    -------
    Dict[str, Any]
        ``pre_times`` and ``post_times`` arrays.

    Raises
    ------
    ScplaceboConfigError
        If the treated unit is absent, the donor pool has fewer than 2 units,
        or fewer than 2 pre-treatment periods exist.
    """
    if treated_unit not in set(panel.units):
        raise ScplaceboConfigError(f"Treated unit '{treated_unit}' not found in the panel.")
    if len(donor_pool) < MIN_DONORS:
        raise ScplaceboConfigError(
            f"Need at least {MIN_DONORS} donor units for synthetic control, got {len(donor_pool)}."
        )
    try:
        pre_times = panel.pre_times(treatment_time)
        post_times = panel.post_times(treatment_time)
    except TypeError as e:
        raise ScplaceboConfigError(
            f"Treatment time {treatment_time!r} is not comparable with the time column: {e}"
        ) from e
    if len(pre_times) < MIN_PRE_PERIODS:
        raise ScplaceboConfigError(
            f"Insufficient pre-treatment data: need at least {MIN_PRE_PERIODS} pre-treatment periods, "
            f"got {len(pre_times)}."
        )
    return {"pre_times": pre_times, "post_times": post_times}


def check_panel_balance(df: pd.DataFrame, unit_id_column_name: str, time_period_column_name: str) -> Dict[str, Any]:
    """Summarize how complete a panel is.

    Unlike a strict balance check, an unbalanced panel is not an error here:
    the synthetic control core tolerates missing unit x time cells.

    Returns
    -------
    Dict[str, Any]
        ``balanced`` (bool), ``expected_obs`` (units x times), ``actual_obs``
        (distinct unit x time pairs), ``unit_counts`` (DataFrame with one row
        per unit and its ``n_periods``) and ``missing_share``.

    Examples
    --------
    >>> df = pd.DataFrame({"u": ["a", "a", "b"], "t": [1, 2, 1]})
    >>> check_panel_balance(df, "u", "t")["missing_share"]
    0.25
    """
    missing = {unit_id_column_name, time_period_column_name} - set(df.columns)
    if missing:
        raise ScplaceboConfigError(f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing))}")

    pairs = df[[unit_id_column_name, time_period_column_name]].drop_duplicates()
    unit_counts = (
        pairs.groupby(unit_id_column_name, sort=False)
        .size()
        .rename("n_periods")
        .reset_index()
    )
    expected_obs = int(df[unit_id_column_name].nunique() * df[time_period_column_name].nunique())
    actual_obs = int(len(pairs))
    missing_share = (expected_obs - actual_obs) / expected_obs if expected_obs > 0 else 0.0

    return {
        "balanced": actual_obs == expected_obs,
        "expected_obs": expected_obs,
        "actual_obs": actual_obs,
        "unit_counts": unit_counts,
        "missing_share": missing_share,
    }


def validate_panel(df: Optional[pd.DataFrame]) -> Dict[str, Any]:
    """Light structural checks on an uploaded dataset.

    Returns ``{"valid": bool, "messages": List[str]}``. Only a missing/empty
    frame or fewer than three columns make the dataset invalid; the other
    messages are advisory.
    """
    if df is None or len(df) == 0:
        return {"valid": False, "messages": ["No data found"]}

    messages: List[str] = []
    valid = True

    if df.shape[1] < 3:
        messages.append("Dataset should have at least 3 columns (unit, time, outcome)")
        valid = False

    empty_columns = [
        str(col) for col in df.columns
        if df[col].isna().all() or (df[col].dtype == object and (df[col].fillna("") == "").all())
    ]
    if empty_columns:
        messages.append(f"Empty columns found: {', '.join(empty_columns)}")

    if len(df) < 10:
        messages.append("Dataset has very few observations. Synthetic control typically requires more data.")

    return {"valid": valid, "messages": messages}
