from typing import List, Optional, Any, Dict, Union, Literal, Callable, Tuple
import warnings
import pandas as pd
import numpy as np
from pydantic import BaseModel, Field, AliasChoices, model_validator
from scplacebo.exceptions import ScplaceboDataError, ScplaceboConfigError


# --- Predictor Specification ---

class RegularPredictor(BaseModel):
    """A variable aggregated as its mean over the entire pre-treatment period."""
    kind: Literal["regular"] = "regular"
    variable: str = Field(..., description="Column name of the predictor variable.")

    class Config:
        extra = "forbid"
        frozen = True

    @property
    def label(self) -> str:
        return self.variable


class SpecialPredictor(BaseModel):
    """
    A variable aggregated over a custom time window.

    The window ``[start, end]`` is intersected with the pre-treatment period
    before aggregating; an empty intersection drops the predictor.
    """
    kind: Literal["special"] = "special"
    variable: str = Field(
        ...,
        validation_alias=AliasChoices("variable", "var"),
        description="Column name of the predictor variable.",
    )
    start: Any = Field(..., description="First time value of the window (inclusive).")
    end: Any = Field(..., description="Last time value of the window (inclusive).")
    op: Literal["mean"] = Field(default="mean", description="Aggregation operator. Only 'mean' is supported.")

    class Config:
        extra = "forbid"
        frozen = True

    @model_validator(mode="after")
    def check_window(self) -> "SpecialPredictor":
        try:
            inverted = self.start > self.end
        except TypeError as e:
            raise ScplaceboConfigError(
                f"Special predictor '{self.variable}' has incomparable window bounds "
                f"({self.start!r}, {self.end!r})."
            ) from e
        if inverted:
            raise ScplaceboConfigError(
                f"Special predictor '{self.variable}' has start ({self.start}) after end ({self.end})."
            )
        return self

    @property
    def label(self) -> str:
        if self.start == self.end:
            return f"special.{self.variable}.{self.start}"
        return f"special.{self.variable}.{self.start}.{self.end}"


PredictorSpec = Union[RegularPredictor, SpecialPredictor]


# --- Estimator configurations ---

class BaseSCConfig(BaseModel):
    """
    Base Pydantic model for synthetic control configurations.
    Holds the panel, the column roles, the treatment specification and the
    predictor specification shared by the analysis and both placebo procedures.
    """
    df: pd.DataFrame = Field(..., description="Input panel data (units x time) in long format.")
    outcome: str = Field(..., description="Name of the outcome variable column in the DataFrame.")
    unitid: str = Field(..., description="Name of the unit identifier column in the DataFrame.")
    time: str = Field(..., description="Name of the time period column in the DataFrame.")
    treated_unit: Any = Field(..., description="Identifier of the treated unit.")
    treatment_time: Any = Field(..., description="First post-treatment time value. Pre-period is every time strictly before it.")
    donor_units: Optional[List[Any]] = Field(default=None, description="Optional restriction of the donor pool. Defaults to every unit other than the treated unit.")
    regular_predictors: List[str] = Field(default_factory=list, description="Variables aggregated as pre-treatment means.")
    special_predictors: List[SpecialPredictor] = Field(default_factory=list, description="Variables aggregated over custom time windows.")
    ridge: float = Field(default=1e-8, ge=0, description="Diagonal ridge added to the quadratic term for conditioning.")
    weight_tol: float = Field(default=1e-8, gt=0, description="Weights below this value are clamped to zero.")
    solver: str = Field(default="CLARABEL", description="cvxpy solver used for the weight optimization.")
    missing_donor_policy: Literal["zero", "propagate"] = Field(
        default="zero",
        description="How a missing donor outcome enters the synthetic path: 'zero' drops its contribution for that period, 'propagate' makes the period missing.",
    )

    class Config:
        arbitrary_types_allowed = True
        extra = "forbid"

    @model_validator(mode="after")
    def check_df_and_columns(self) -> "BaseSCConfig":
        df = self.df

        if df.empty:
            raise ScplaceboDataError("Input DataFrame 'df' cannot be empty.")

        role_columns = {self.unitid, self.time, self.outcome}
        missing_columns = role_columns - set(df.columns)
        if missing_columns:
            raise ScplaceboConfigError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )

        predictor_variables = set(self.regular_predictors) | {p.variable for p in self.special_predictors}
        missing_predictors = predictor_variables - set(df.columns)
        if missing_predictors:
            raise ScplaceboConfigError(
                f"Predictor variables not found in DataFrame 'df': {', '.join(sorted(missing_predictors))}"
            )

        missing_info = {col: int(df[col].isna().sum()) for col in (self.unitid, self.time) if df[col].isna().any()}
        if missing_info:
            details = ", ".join(f"{col}: {count}" for col, count in missing_info.items())
            raise ScplaceboDataError(f"Missing values detected in identifier columns -> {details}.")

        for col in sorted(predictor_variables | {self.outcome}):
            if not pd.api.types.is_numeric_dtype(df[col]):
                raise ScplaceboDataError(f"Column '{col}' must be numeric (found dtype {df[col].dtype}).")

        units = set(df[self.unitid].unique())
        if self.treated_unit not in units:
            raise ScplaceboConfigError(f"Treated unit '{self.treated_unit}' not found in column '{self.unitid}'.")

        if self.donor_units is not None:
            if self.treated_unit in self.donor_units:
                raise ScplaceboConfigError("The treated unit cannot be part of the donor pool.")
            unknown = [u for u in self.donor_units if u not in units]
            if unknown:
                raise ScplaceboConfigError(f"Donor units not found in the panel: {unknown}")
            repeated = sorted({str(u) for u in self.donor_units if self.donor_units.count(u) > 1})
            if repeated:
                raise ScplaceboConfigError(f"Donor units listed more than once: {repeated}")

        duplicate_count = int(df.duplicated(subset=[self.unitid, self.time]).sum())
        if duplicate_count > 0:
            warnings.warn(
                f"Duplicate ({self.unitid}, {self.time}) pairs found: {duplicate_count}. "
                "Duplicated observations are averaged.",
                UserWarning,
            )

        return self

    @property
    def predictor_specs(self) -> Tuple[PredictorSpec, ...]:
        """Ordered predictor specification: regular entries first, then special entries."""
        regular = tuple(RegularPredictor(variable=v) for v in self.regular_predictors)
        return regular + tuple(self.special_predictors)

    def solver_options(self) -> Dict[str, Any]:
        return {
            "ridge": self.ridge,
            "weight_tol": self.weight_tol,
            "solver": self.solver,
            "missing_donor_policy": self.missing_donor_policy,
        }


class SCMConfig(BaseSCConfig):
    """Configuration for a single synthetic control analysis."""
    pass


class BasePlaceboConfig(BaseSCConfig):
    """Fields shared by the placebo procedures: worker pool and batch hooks."""
    parallel: bool = Field(default=False, description="Whether to run placebo iterations on a thread pool.")
    cores: Optional[int] = Field(default=None, ge=1, description="Number of worker threads. Defaults to all available cores if None and parallel is True.")
    progress_callback: Optional[Callable[[int, int, Any], None]] = Field(
        default=None, exclude=True, description="Called as (completed, total, label) after each iteration."
    )
    should_stop: Optional[Callable[[], bool]] = Field(
        default=None, exclude=True, description="Polled before each iteration; returning True aborts the batch."
    )


class InSpacePlaceboConfig(BasePlaceboConfig):
    """Configuration for the in-space (across donors) placebo test."""
    exclude_treated_from_donor: bool = Field(
        default=True,
        description="Keep the real treated unit out of placebo donor pools unless fewer than 2 donors would remain.",
    )


class InTimePlaceboConfig(BasePlaceboConfig):
    """Configuration for the in-time (backdated treatment) placebo test."""
    fake_treatment_times: List[Any] = Field(..., min_length=1, description="Candidate fake treatment times.")
    min_pre_periods: int = Field(default=3, ge=2, description="Minimum periods before a fake treatment time.")
    min_post_periods: int = Field(default=2, ge=1, description="Minimum periods between a fake and the real treatment time.")


# --- Pydantic Models for Standardized Results ---

class EffectsResults(BaseModel):
    """Standardized model for reporting treatment effects."""
    att: Optional[float] = Field(default=None, description="Average post-treatment gap of the treated unit.")
    att_percent: Optional[float] = Field(default=None, description="ATT as a percentage of the mean post-treatment synthetic outcome.")
    total_effect: Optional[float] = Field(default=None, description="Sum of post-treatment gaps.")
    additional_effects: Optional[Dict[str, Any]] = Field(default=None, description="Other effect measures.")

    class Config:
        extra = 'allow'


class FitDiagnosticsResults(BaseModel):
    """Standardized model for reporting goodness-of-fit diagnostics."""
    rmspe_pre: Optional[float] = Field(default=None, description="Root mean squared prediction error in the pre-treatment period.")
    rmspe_post: Optional[float] = Field(default=None, description="Root mean squared prediction error in the post-treatment period.")
    rmspe_ratio: Optional[float] = Field(default=None, description="Post/pre RMSPE ratio (NaN when the pre-period fit is exact).")
    r_squared_pre: Optional[float] = Field(default=None, description="R-squared of the synthetic path in the pre-treatment period.")
    pre_periods: Optional[int] = Field(default=None, description="Number of pre-treatment periods.")
    post_periods: Optional[int] = Field(default=None, description="Number of post-treatment periods.")
    additional_metrics: Optional[Dict[str, Any]] = Field(default=None, description="Other fit metrics.")

    class Config:
        extra = 'allow'


class TimeSeriesResults(BaseModel):
    """Standardized model for reporting key time series vectors."""
    observed_outcome: Optional[np.ndarray] = Field(default=None, description="Observed outcome vector for the treated unit.")
    counterfactual_outcome: Optional[np.ndarray] = Field(default=None, description="Synthetic outcome vector.")
    estimated_gap: Optional[np.ndarray] = Field(default=None, description="Observed minus synthetic.")
    time_periods: Optional[np.ndarray] = Field(default=None, description="Time periods corresponding to the series.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'allow'


class WeightsResults(BaseModel):
    """Standardized model for reporting donor weights."""
    donor_weights: Optional[Dict[str, float]] = Field(default=None, description="Donors with a non-zero weight.")
    summary_stats: Optional[Dict[str, Any]] = Field(default=None, description="Summary statistics about weights (e.g., cardinality).")

    class Config:
        extra = 'allow'


class InferenceResults(BaseModel):
    """Standardized model for reporting statistical inference results."""
    p_value: Optional[float] = Field(default=None, description="Rank-based permutation p-value.")
    method: Optional[str] = Field(default=None, description="Inference method, e.g. 'in-space placebo'.")
    details: Optional[Any] = Field(default=None, description="Further inference details.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'allow'


class MethodDetailsResults(BaseModel):
    """Standardized model for reporting details about the estimation run."""
    method_name: Optional[str] = Field(default=None, description="Name of the method.")
    parameters_used: Optional[Dict[str, Any]] = Field(default=None, description="Key parameters used for this result set.")
    solver_status: Optional[str] = Field(default=None, description="Raw status reported by the optimizer.")

    class Config:
        extra = 'allow'


class SCMResults(BaseModel):
    """
    Result of a synthetic control analysis.

    The flat fields are the primary outputs; the nested models hold the
    standardized summaries.
    """
    weights: Dict[Any, float] = Field(..., description="Weight of every donor (zeros included), in donor order.")
    outcome_path: pd.DataFrame = Field(..., description="Columns time, treated_outcome, synthetic_outcome, gap, post_treatment.")
    predictor_balance: pd.DataFrame = Field(..., description="Columns predictor, treated, synthetic, difference, donor_mean.")
    rmspe: float = Field(..., description="Pre-treatment RMSPE.")
    donor_units: List[Any] = Field(..., description="Donors entering the optimization, aligned with the weights.")
    converged: bool = Field(..., description="False when the optimizer failed and uniform weights were used.")
    excluded_donors: List[Any] = Field(default_factory=list, description="Donors dropped for missing predictor values.")
    treated_unit: Any = None
    treatment_time: Any = None

    effects: Optional[EffectsResults] = None
    fit_diagnostics: Optional[FitDiagnosticsResults] = None
    time_series: Optional[TimeSeriesResults] = None
    weight_summary: Optional[WeightsResults] = None
    method_details: Optional[MethodDetailsResults] = None
    raw_results: Optional[Dict[str, Any]] = Field(default=None, exclude=True, description="Raw pipeline output.")

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'


class InSpacePlaceboResults(BaseModel):
    """Result of an in-space placebo test."""
    summary: pd.DataFrame = Field(..., description="One row per unit tested.")
    gaps: pd.DataFrame = Field(..., description="Long table of gap series per unit.")
    p_value: Optional[float] = Field(default=None, description="Share of valid ratios at least as large as the treated ratio.")
    treated_ratio: Optional[float] = None
    treated_rank: Optional[int] = Field(default=None, description="Number of valid ratios at least as large as the treated ratio.")
    ranked_units: int = Field(default=0, description="Number of units with a valid ratio.")
    successful_count: int = Field(..., description="Successful placebo (donor) runs.")
    attempted_count: int = Field(..., description="Attempted placebo (donor) runs.")
    failed_units: Dict[Any, str] = Field(default_factory=dict)
    treated_unit: Any = None
    treatment_time: Any = None
    inference: Optional[InferenceResults] = None

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'


class InTimePlaceboResults(BaseModel):
    """Result of an in-time placebo test."""
    summary: pd.DataFrame = Field(..., description="One row per fake treatment time tested.")
    gaps: pd.DataFrame = Field(..., description="Long table of gap series per fake treatment time.")
    paths: pd.DataFrame = Field(..., description="Long table of treated and synthetic paths per fake treatment time.")
    successful_count: int
    attempted_count: int
    skipped_times: Dict[Any, str] = Field(default_factory=dict)
    failed_times: Dict[Any, str] = Field(default_factory=dict)
    treated_unit: Any = None
    real_treatment_time: Any = None

    class Config:
        arbitrary_types_allowed = True
        extra = 'forbid'
