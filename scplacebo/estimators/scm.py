import logging
from typing import Any, Dict, List, Optional, Union

import pandas as pd

from ..config_models import SCMConfig, SCMResults, SpecialPredictor
from ..exceptions import (
    ScplaceboConfigError,
    ScplaceboDataError,
    ScplaceboEstimationError,
)
from ..utils.datautils import prepare_panel, resolve_donor_pool
from ..utils.estutils import pipeline_options, scm_pipeline
from ..utils.resultutils import build_scm_results

logger = logging.getLogger(__name__)


class SCM:
    """
    Classical synthetic control method.

    Builds a synthetic version of the treated unit as a convex combination of
    donor units whose pre-treatment predictors best match the treated unit's:

    .. math::
        \\mathbf{w}^\\ast = \\operatorname*{argmin}_{\\mathbf{w} \\in \\Delta^{J}}
        \\big\\| \\mathbf{x}_1 - \\mathbf{X}_0^\\top \\mathbf{w} \\big\\|_2^2,
        \\qquad
        \\Delta^{J} = \\Big\\{ \\mathbf{w} \\in \\mathbb{R}_+^{J} : \\textstyle\\sum_j w_j = 1 \\Big\\}

    The predictors are pre-period means of ``regular_predictors``, window means
    of ``special_predictors``, or, when neither is configured, the outcome at
    every pre-treatment period. The weights are then applied to the donors'
    full outcome series to produce the synthetic path and its gap.

    Attributes
    ----------
    config : SCMConfig
        Configuration object for the estimator.
    df : pd.DataFrame
        Input panel data in long format.
    outcome : str
        Name of the outcome variable column.
    unitid : str
        Name of the unit identifier column.
    time : str
        Name of the time period column.
    treated_unit : Any
        Identifier of the treated unit.
    treatment_time : Any
        First post-treatment time value.
    donor_units : Optional[List[Any]]
        Optional donor pool restriction.

    Methods
    -------
    fit()
        Estimates donor weights and the synthetic outcome path.

    References
    ----------
    Abadie, Alberto, and Javier Gardeazabal. 2003.
        "The Economic Costs of Conflict: A Case Study of the Basque Country."
        American Economic Review 93 (1): 113-132.
    Abadie, Alberto, Alexis Diamond, and Jens Hainmueller. 2010.
        "Synthetic Control Methods for Comparative Case Studies."
        Journal of the American Statistical Association 105 (490): 493-505.

    Examples
    --------
    >>> from scplacebo import SCM
    >>> import pandas as pd, numpy as np
    >>> data = pd.DataFrame({
    ...     'unit': np.repeat(['A', 'B', 'C'], 6),
    ...     'year': np.tile(np.arange(2000, 2006), 3),
    ...     'gdp': np.r_[np.arange(6) + 2.0, np.arange(6) + 1.0, np.arange(6) + 3.0],
    ... })
    >>> config = {'df': data, 'outcome': 'gdp', 'unitid': 'unit', 'time': 'year',
    ...           'treated_unit': 'A', 'treatment_time': 2005}
    >>> results = SCM(config).fit()  # doctest: +SKIP
    >>> round(results.weights['B'], 2)  # doctest: +SKIP
    0.5
    """

    def __init__(self, config: Union[SCMConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = SCMConfig(**config)  # convert dict to config object
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.treated_unit: Any = config.treated_unit
        self.treatment_time: Any = config.treatment_time
        self.donor_units: Optional[List[Any]] = config.donor_units
        self.regular_predictors: List[str] = config.regular_predictors
        self.special_predictors: List[SpecialPredictor] = config.special_predictors

    def fit(self) -> SCMResults:
        """
        Runs the synthetic control analysis.

        Returns
        -------
        SCMResults
            Weights for every donor, outcome path, predictor balance,
            pre-treatment RMSPE, donor list, convergence flag and the
            standardized effect and fit summaries.

        Raises
        ------
        ScplaceboConfigError
            Fewer than 2 pre-treatment periods, fewer than 2 donors, or an
            absent treated unit.
        ScplaceboDataError
            Missing predictor data for the treated unit or too few complete donors.
        ScplaceboEstimationError
            Any other failure during estimation.
        """
        try:
            panel = prepare_panel(self.df, self.unitid, self.time, self.outcome)
            donor_pool = resolve_donor_pool(panel, self.treated_unit, self.donor_units)
            options = pipeline_options(self.config)

            logger.info(
                "Fitting SCM for %r at %r with %d candidate donors.",
                self.treated_unit, self.treatment_time, len(donor_pool),
            )
            raw = scm_pipeline(panel, self.treated_unit, self.treatment_time, donor_pool, **options)

            parameters_used = self.config.model_dump(
                exclude={"df", "special_predictors"}, mode="python"
            )
            parameters_used["special_predictors"] = [p.label for p in self.special_predictors]
            results = build_scm_results(raw, parameters_used=parameters_used)

        except (ScplaceboDataError, ScplaceboConfigError, ScplaceboEstimationError) as e:
            raise e
        except KeyError as e:
            raise ScplaceboEstimationError(f"Missing expected key in data structures: {e}") from e
        except ValueError as e:
            raise ScplaceboEstimationError(f"ValueError during SCM estimation: {e}") from e
        except Exception as e:
            raise ScplaceboEstimationError(f"An unexpected error occurred during SCM fitting: {e}") from e

        logger.info(
            "SCM finished: converged=%s, pre RMSPE=%.6g, %d donors with positive weight.",
            results.converged, results.rmspe, sum(w > 0 for w in results.weights.values()),
        )
        return results
