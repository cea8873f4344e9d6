from .estimators.scm import SCM
from .estimators.placebo import InSpacePlacebo, InTimePlacebo
from .api import (
    run_analysis,
    run_in_space_placebo,
    run_in_time_placebo,
    check_panel_balance,
    validate_panel,
)

# Define __all__ to specify the public API of the scplacebo package
__all__ = [
    "SCM",
    "InSpacePlacebo",
    "InTimePlacebo",
    "run_analysis",
    "run_in_space_placebo",
    "run_in_time_placebo",
    "check_panel_balance",
    "validate_panel",
]
