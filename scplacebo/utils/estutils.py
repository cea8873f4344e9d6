import logging
from typing import Any, Dict, Optional, Sequence

from scplacebo.config_models import PredictorSpec
from scplacebo.exceptions import ScplaceboEstimationError
from scplacebo.utils.datautils import PanelData, check_treatment_setup
from scplacebo.utils.optutils import Opt
from scplacebo.utils.predictorutils import build_predictor_matrix, predictor_balance
from scplacebo.utils.synthutils import path_rmspe, predictor_rmspe, synthesize_outcome

logger = logging.getLogger(__name__)


def scm_pipeline(
    panel: PanelData,
    treated_unit: Any,
    treatment_time: Any,
    donor_units: Sequence[Any],
    predictor_specs: Sequence[PredictorSpec] = (),
    ridge: float = 1e-8,
    weight_tol: float = 1e-8,
    solver: str = "CLARABEL",
    missing_donor_policy: str = "zero",
) -> Dict[str, Any]:
    """
    One synthetic control run: predictor matrix, donor weights, outcome path.

    Every analysis and every placebo iteration goes through this function.
    It only reads ``panel``.

    Parameters
    ----------
    panel : PanelData
        Panel to estimate on.
    treated_unit : Any
        Unit playing the treated role in this run.
    treatment_time : Any
        First post-treatment time value of this run.
    donor_units : Sequence[Any]
        Donor pool of this run.
    predictor_specs : Sequence[PredictorSpec], optional
        Ordered predictor specification. Empty means outcome-trajectory matching.
    ridge, weight_tol, solver, missing_donor_policy
        Passed to the weight solver and outcome synthesizer.

    Returns
    -------
    Dict[str, Any]
        Keys ``weights`` (np.ndarray), ``donor_units``, ``excluded_donors``,
        ``converged``, ``solution`` (WeightSolution), ``predictor_matrix``,
        ``predictor_balance``, ``outcome_path``, ``rmspe_pre``, ``rmspe_post``,
        ``ratio``, ``predictor_rmspe``, ``pre_periods``, ``post_periods``.

    Raises
    ------
    ScplaceboConfigError
        Invalid treatment setup (see :func:`check_treatment_setup`).
    ScplaceboDataError
        Missing treated predictors or too few complete donors.
    ScplaceboEstimationError
        The weight solver could not define the problem.
    """
    periods = check_treatment_setup(panel, treated_unit, treatment_time, donor_units)

    matrix = build_predictor_matrix(panel, treated_unit, treatment_time, donor_units, predictor_specs)

    solution = Opt.SCweights(
        matrix.treated,
        matrix.donors,
        ridge=ridge,
        weight_tol=weight_tol,
        solver=solver,
    )
    if not solution.ok:
        raise ScplaceboEstimationError(f"Weight optimization failed for unit '{treated_unit}': {solution.error}")

    outcome_path = synthesize_outcome(
        panel,
        treated_unit,
        treatment_time,
        matrix.donor_names,
        solution.weights,
        missing_donor_policy=missing_donor_policy,
    )
    fit = path_rmspe(outcome_path)

    logger.debug(
        "Fitted unit %r at %r: %d donors, %d predictors, converged=%s, pre RMSPE=%.6g",
        treated_unit, treatment_time, len(matrix.donor_names), matrix.n_predictors,
        solution.converged, fit["rmspe_pre"],
    )

    return {
        "treated_unit": treated_unit,
        "treatment_time": treatment_time,
        "weights": solution.weights,
        "donor_units": list(matrix.donor_names),
        "excluded_donors": list(matrix.excluded_donors),
        "converged": solution.converged,
        "solution": solution,
        "predictor_matrix": matrix,
        "predictor_balance": predictor_balance(matrix, solution.weights),
        "outcome_path": outcome_path,
        "rmspe_pre": fit["rmspe_pre"],
        "rmspe_post": fit["rmspe_post"],
        "ratio": fit["ratio"],
        "predictor_rmspe": predictor_rmspe(matrix.treated, solution.fitted_predictors),
        "pre_periods": int(len(periods["pre_times"])),
        "post_periods": int(len(periods["post_times"])),
    }


def pipeline_options(config: Any, predictor_specs: Optional[Sequence[PredictorSpec]] = None) -> Dict[str, Any]:
    """Keyword arguments of :func:`scm_pipeline` taken from a configuration model."""
    options = dict(config.solver_options())
    options["predictor_specs"] = tuple(config.predictor_specs if predictor_specs is None else predictor_specs)
    return options
