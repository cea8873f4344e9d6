from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd

from scplacebo.config_models import (
    EffectsResults,
    FitDiagnosticsResults,
    InferenceResults,
    InSpacePlaceboResults,
    InTimePlaceboResults,
    MethodDetailsResults,
    SCMResults,
    TimeSeriesResults,
    WeightsResults,
)
from scplacebo.utils.synthutils import rmspe, rmspe_ratio


def _optional_float(value: Any) -> Optional[float]:
    """Python float, or None for NaN/None."""
    if value is None:
        return None
    value = float(value)
    return value if np.isfinite(value) else None


class effects:
    @staticmethod
    def calculate(
        observed_outcome_series: np.ndarray,
        counterfactual_outcome_series: np.ndarray,
        post_treatment_mask: np.ndarray,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Treatment effects and fit statistics of an outcome path.

        Missing gaps (a treated or synthetic value is NaN) are left out of
        every statistic.

        Parameters
        ----------
        observed_outcome_series : np.ndarray
            Treated-unit outcome, one entry per period.
        counterfactual_outcome_series : np.ndarray
            Synthetic outcome aligned with ``observed_outcome_series``.
        post_treatment_mask : np.ndarray
            Boolean mask of post-treatment periods.

        Returns
        -------
        tuple
            ``(treatment_effects_dict, fit_statistics_dict)``. The first holds
            ``ATT``, ``Percent ATT``, ``TTE`` and ``ATT_Time``; the second
            ``T0 RMSPE``, ``T1 RMSPE``, ``RMSPE Ratio``, ``R-Squared``,
            ``Pre-Periods`` and ``Post-Periods``.

        Examples
        --------
        >>> te, fit = effects.calculate(
        ...     np.array([1.0, 2.0, 5.0]), np.array([1.0, 2.0, 3.0]), np.array([False, False, True])
        ... )
        >>> te["ATT"], fit["T0 RMSPE"]
        (2.0, 0.0)
        """
        observed = np.asarray(observed_outcome_series, dtype=float)
        counterfactual = np.asarray(counterfactual_outcome_series, dtype=float)
        post = np.asarray(post_treatment_mask, dtype=bool)
        gap = observed - counterfactual
        valid = np.isfinite(gap)

        # --- Pre-treatment fit ---
        pre_valid = ~post & valid
        pre_rmspe = rmspe(gap[~post])
        observed_pre = observed[pre_valid]
        pre_variance = np.mean((observed_pre - observed_pre.mean()) ** 2) if observed_pre.size > 0 else np.nan
        if observed_pre.size > 0 and pre_variance > 0:
            r_squared_pre = 1 - np.mean(gap[pre_valid] ** 2) / pre_variance
        else:
            r_squared_pre = np.nan

        # --- Post-treatment effects ---
        post_valid = post & valid
        if post_valid.any():
            att = float(np.mean(gap[post_valid]))
            mean_counterfactual_post = float(np.mean(counterfactual[post_valid]))
            att_percent = 100 * att / mean_counterfactual_post if mean_counterfactual_post != 0 else np.nan
            total_effect = float(np.sum(gap[post_valid]))
        else:
            att = att_percent = total_effect = np.nan
        post_rmspe = rmspe(gap[post])

        treatment_effects_dict = {
            "ATT": att,
            "Percent ATT": att_percent,
            "TTE": total_effect,
            "ATT_Time": gap[post],
        }
        fit_statistics_dict = {
            "T0 RMSPE": pre_rmspe,
            "T1 RMSPE": post_rmspe,
            "RMSPE Ratio": rmspe_ratio(post_rmspe, pre_rmspe),
            "R-Squared": r_squared_pre,
            "Pre-Periods": int((~post).sum()),
            "Post-Periods": int(post.sum()),
        }
        return treatment_effects_dict, fit_statistics_dict


def build_scm_results(raw: Dict[str, Any], parameters_used: Optional[Dict[str, Any]] = None,
                      method_name: str = "SCM") -> SCMResults:
    """Package the output of :func:`scm_pipeline` into :class:`SCMResults`."""
    path: pd.DataFrame = raw["outcome_path"]
    donors = list(raw["donor_units"])
    weights = {donor: float(w) for donor, w in zip(donors, raw["weights"])}

    treatment_effects, fit_statistics = effects.calculate(
        path["treated_outcome"].to_numpy(),
        path["synthetic_outcome"].to_numpy(),
        path["post_treatment"].to_numpy(),
    )

    effects_model = EffectsResults(
        att=_optional_float(treatment_effects["ATT"]),
        att_percent=_optional_float(treatment_effects["Percent ATT"]),
        total_effect=_optional_float(treatment_effects["TTE"]),
        additional_effects={"att_time": treatment_effects["ATT_Time"]},
    )
    fit_model = FitDiagnosticsResults(
        rmspe_pre=_optional_float(fit_statistics["T0 RMSPE"]),
        rmspe_post=_optional_float(fit_statistics["T1 RMSPE"]),
        rmspe_ratio=_optional_float(fit_statistics["RMSPE Ratio"]),
        r_squared_pre=_optional_float(fit_statistics["R-Squared"]),
        pre_periods=fit_statistics["Pre-Periods"],
        post_periods=fit_statistics["Post-Periods"],
        additional_metrics={
            "predictor_rmspe": raw["predictor_rmspe"],
            "predictor_labels": list(raw["predictor_matrix"].labels),
            "used_default_predictors": raw["predictor_matrix"].used_default,
        },
    )
    time_series_model = TimeSeriesResults(
        observed_outcome=path["treated_outcome"].to_numpy(dtype=float),
        counterfactual_outcome=path["synthetic_outcome"].to_numpy(dtype=float),
        estimated_gap=path["gap"].to_numpy(dtype=float),
        time_periods=path["time"].to_numpy(),
    )
    nonzero = {str(d): w for d, w in weights.items() if w > 0}
    weights_model = WeightsResults(
        donor_weights=nonzero,
        summary_stats={
            "cardinality": len(nonzero),
            "max_weight": max(weights.values()),
            "sum": float(sum(weights.values())),
        },
    )
    solution = raw["solution"]
    method_model = MethodDetailsResults(
        method_name=method_name,
        parameters_used=parameters_used,
        solver_status=solution.solver_status if solution.converged else f"fallback ({solution.error})",
    )

    return SCMResults(
        weights=weights,
        outcome_path=path,
        predictor_balance=raw["predictor_balance"],
        rmspe=float(raw["rmspe_pre"]),
        donor_units=donors,
        converged=bool(raw["converged"]),
        excluded_donors=list(raw["excluded_donors"]),
        treated_unit=raw["treated_unit"],
        treatment_time=raw["treatment_time"],
        effects=effects_model,
        fit_diagnostics=fit_model,
        time_series=time_series_model,
        weight_summary=weights_model,
        method_details=method_model,
        raw_results=raw,
    )


def build_in_space_results(raw: Dict[str, Any], treated_unit: Any, treatment_time: Any) -> InSpacePlaceboResults:
    """Package the output of :func:`in_space_placebo`."""
    inference = InferenceResults(
        p_value=raw["p_value"],
        method="in-space placebo",
        details={
            "treated_ratio": _optional_float(raw["treated_ratio"]),
            "treated_rank": raw["treated_rank"],
            "ranked_units": raw["ranked_units"],
        },
    )
    return InSpacePlaceboResults(
        summary=raw["summary"],
        gaps=raw["gaps"],
        p_value=raw["p_value"],
        treated_ratio=_optional_float(raw["treated_ratio"]),
        treated_rank=raw["treated_rank"],
        ranked_units=raw["ranked_units"],
        successful_count=raw["successful_count"],
        attempted_count=raw["attempted_count"],
        failed_units=raw["failed_units"],
        treated_unit=treated_unit,
        treatment_time=treatment_time,
        inference=inference,
    )


def build_in_time_results(raw: Dict[str, Any], treated_unit: Any, real_treatment_time: Any) -> InTimePlaceboResults:
    """Package the output of :func:`in_time_placebo`."""
    return InTimePlaceboResults(
        summary=raw["summary"],
        gaps=raw["gaps"],
        paths=raw["paths"],
        successful_count=raw["successful_count"],
        attempted_count=raw["attempted_count"],
        skipped_times=raw["skipped_times"],
        failed_times=raw["failed_times"],
        treated_unit=treated_unit,
        real_treatment_time=real_treatment_time,
    )
