from typing import Any, Dict, Union

import pandas as pd

from ..config_models import (
    InSpacePlaceboConfig,
    InSpacePlaceboResults,
    InTimePlaceboConfig,
    InTimePlaceboResults,
)
from ..exceptions import (
    ScplaceboConfigError,
    ScplaceboDataError,
    ScplaceboEstimationError,
)
from ..utils.datautils import prepare_panel
from ..utils.estutils import pipeline_options
from ..utils.placeboutils import in_space_placebo, in_time_placebo
from ..utils.resultutils import build_in_space_results, build_in_time_results


class InSpacePlacebo:
    """
    In-space placebo test for a synthetic control estimate.

    Treatment is reassigned, in turn, to every donor unit, each fitted with
    the remaining donors. The post/pre RMSPE ratio of the real treated unit
    is then ranked among all ratios; the permutation p-value is the share of
    units whose ratio is at least as large:

    .. math::
        p = \\frac{1}{N} \\sum_{i=1}^{N} \\mathbf{1}\\{ r_i \\ge r_1 \\},
        \\qquad r_i = \\frac{\\mathrm{RMSPE}_{i,\\text{post}}}{\\mathrm{RMSPE}_{i,\\text{pre}}}

    Units with an exact pre-period fit have no defined ratio and are left
    out of the ranking.

    Attributes
    ----------
    config : InSpacePlaceboConfig
        Configuration object for the test.
    df : pd.DataFrame
        Input panel data.

    Methods
    -------
    fit()
        Runs every placebo iteration and returns the per-unit summary,
        gap series and p-value.

    References
    ----------
    Abadie, Alberto, Alexis Diamond, and Jens Hainmueller. 2015.
        "Comparative Politics and the Synthetic Control Method."
        American Journal of Political Science 59 (2): 495-510.
    """

    def __init__(self, config: Union[InSpacePlaceboConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = InSpacePlaceboConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.treated_unit: Any = config.treated_unit
        self.treatment_time: Any = config.treatment_time

    def fit(self) -> InSpacePlaceboResults:
        """
        Runs the in-space placebo test.

        Returns
        -------
        InSpacePlaceboResults

        Raises
        ------
        ScplaceboConfigError, ScplaceboDataError
            Invalid setup, or the real treated unit's own run failed on its data.
        ScplaceboEstimationError
            Every donor run failed, or another failure occurred.
        ScplaceboCancelledError
            The batch was aborted through ``should_stop``.
        """
        try:
            panel = prepare_panel(self.df, self.unitid, self.time, self.outcome)
            raw = in_space_placebo(
                panel,
                self.treated_unit,
                self.treatment_time,
                donor_units=self.config.donor_units,
                exclude_treated_from_donor=self.config.exclude_treated_from_donor,
                parallel=self.config.parallel,
                cores=self.config.cores,
                progress_callback=self.config.progress_callback,
                should_stop=self.config.should_stop,
                **pipeline_options(self.config),
            )
            return build_in_space_results(raw, self.treated_unit, self.treatment_time)

        except (ScplaceboDataError, ScplaceboConfigError, ScplaceboEstimationError) as e:
            raise e
        except KeyError as e:
            raise ScplaceboEstimationError(f"Missing expected key in data structures: {e}") from e
        except Exception as e:
            raise ScplaceboEstimationError(f"An unexpected error occurred during the in-space placebo: {e}") from e


class InTimePlacebo:
    """
    In-time placebo test for a synthetic control estimate.

    The real treated unit is refitted with its treatment backdated to each
    candidate fake time, using only data before the real treatment time.
    A fake date is tried only when it leaves at least ``min_pre_periods``
    periods before it and ``min_post_periods`` periods between it and the
    real treatment. Large post/pre ratios at fake dates cast doubt on the
    real estimate.

    Attributes
    ----------
    config : InTimePlaceboConfig
        Configuration object for the test. ``treatment_time`` is the real
        treatment time.
    df : pd.DataFrame
        Input panel data.

    Methods
    -------
    fit()
        Runs every usable fake date and returns the per-date summary, gaps
        and outcome paths.
    """

    def __init__(self, config: Union[InTimePlaceboConfig, Dict[str, Any]]) -> None:
        if isinstance(config, dict):
            config = InTimePlaceboConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcome: str = config.outcome
        self.unitid: str = config.unitid
        self.time: str = config.time
        self.treated_unit: Any = config.treated_unit
        self.real_treatment_time: Any = config.treatment_time

    def fit(self) -> InTimePlaceboResults:
        """
        Runs the in-time placebo test.

        Returns
        -------
        InTimePlaceboResults

        Raises
        ------
        ScplaceboConfigError
            Invalid setup or no usable fake treatment time.
        ScplaceboEstimationError
            Every fake-date run failed, or another failure occurred.
        ScplaceboCancelledError
            The batch was aborted through ``should_stop``.
        """
        try:
            panel = prepare_panel(self.df, self.unitid, self.time, self.outcome)
            raw = in_time_placebo(
                panel,
                self.treated_unit,
                self.real_treatment_time,
                self.config.fake_treatment_times,
                donor_units=self.config.donor_units,
                min_pre_periods=self.config.min_pre_periods,
                min_post_periods=self.config.min_post_periods,
                parallel=self.config.parallel,
                cores=self.config.cores,
                progress_callback=self.config.progress_callback,
                should_stop=self.config.should_stop,
                **pipeline_options(self.config),
            )
            return build_in_time_results(raw, self.treated_unit, self.real_treatment_time)

        except (ScplaceboDataError, ScplaceboConfigError, ScplaceboEstimationError) as e:
            raise e
        except KeyError as e:
            raise ScplaceboEstimationError(f"Missing expected key in data structures: {e}") from e
        except Exception as e:
            raise ScplaceboEstimationError(f"An unexpected error occurred during the in-time placebo: {e}") from e
