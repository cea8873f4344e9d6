# optutils.py

import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import cvxpy as cp
import numpy as np

from scplacebo.utils.datautils import MIN_DONORS

logger = logging.getLogger(__name__)

_ACCEPTED_STATUSES = (cp.OPTIMAL, cp.OPTIMAL_INACCURATE)


class SolverStatus(str, Enum):
    """Outcome class of a weight optimization."""
    OPTIMAL = "optimal"
    FALLBACK = "fallback"
    FAILED = "failed"


@dataclass(frozen=True)
class WeightSolution:
    """Result of :meth:`Opt.SCweights`.

    ``OPTIMAL`` carries the optimizer's weights. ``FALLBACK`` carries uniform
    weights after a numerical failure, with ``converged`` False. ``FAILED``
    means the inputs could not define a problem at all; ``weights`` is None
    and ``error`` says why.
    """
    status: SolverStatus
    weights: Optional[np.ndarray]
    converged: bool
    fitted_predictors: Optional[np.ndarray] = None
    solver_status: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not SolverStatus.FAILED


class Opt:
    @staticmethod
    def uniform_weights(n_donors: int) -> np.ndarray:
        return np.full(n_donors, 1.0 / n_donors)

    @staticmethod
    def clamp_and_normalize(weights: np.ndarray, tol: float = 1e-8) -> Optional[np.ndarray]:
        """
        Zero out entries below ``tol`` and rescale the rest to sum to one.

        Returns None when nothing usable is left (all entries clamped, or a
        non-finite sum), so the caller can revert to uniform weights.
        """
        w = np.asarray(weights, dtype=float).copy()
        w[~np.isfinite(w)] = 0.0
        w[w < tol] = 0.0
        total = w.sum()
        if not np.isfinite(total) or total <= tol:
            return None
        return w / total

    @staticmethod
    def SCweights(
        treated_predictors: np.ndarray,
        donor_predictors: np.ndarray,
        *,
        ridge: float = 1e-8,
        weight_tol: float = 1e-8,
        solver: str = "CLARABEL",
    ) -> WeightSolution:
        """
        Classical synthetic control weights.

        Solves

        .. math::
            \\min_{w} \\; \\lVert x_1 - X_0^\\top w \\rVert_2^2 + \\rho \\lVert w \\rVert_2^2
            \\quad \\text{s.t.} \\quad w \\ge 0, \\; \\mathbf{1}^\\top w = 1

        which is the quadratic program with :math:`D = X_0 X_0^\\top + \\rho I`
        and :math:`d = X_0 x_1`. The ridge :math:`\\rho` keeps :math:`D` positive
        definite when there are fewer predictors than donors.

        Parameters
        ----------
        treated_predictors : np.ndarray
            Treated-unit predictor vector :math:`x_1`. Shape (K,).
        donor_predictors : np.ndarray
            Donor predictor matrix :math:`X_0`, one row per donor. Shape (J, K).
        ridge : float, default=1e-8
            Diagonal conditioning term.
        weight_tol : float, default=1e-8
            Weights below this value are set to zero before renormalizing.
        solver : str, default="CLARABEL"
            cvxpy solver name.

        Returns
        -------
        WeightSolution
            Never raises for numerical problems: a solver exception, a
            non-optimal status or an unusable solution all produce the uniform
            ``FALLBACK`` with ``converged=False`` and a ``UserWarning``.
        """
        x1 = np.asarray(treated_predictors, dtype=float)
        X0 = np.asarray(donor_predictors, dtype=float)

        # ---------- Input checks ----------
        if x1.ndim != 1 or X0.ndim != 2 or X0.shape[1] != x1.shape[0]:
            return WeightSolution(
                status=SolverStatus.FAILED, weights=None, converged=False,
                error=f"Dimension mismatch: treated vector {x1.shape}, donor matrix {X0.shape}.",
            )
        J, K = X0.shape
        if J < MIN_DONORS:
            return WeightSolution(
                status=SolverStatus.FAILED, weights=None, converged=False,
                error=f"Need at least {MIN_DONORS} donors, got {J}.",
            )
        if K < 1:
            return WeightSolution(
                status=SolverStatus.FAILED, weights=None, converged=False,
                error="Predictor matrix has no columns.",
            )
        if not (np.isfinite(x1).all() and np.isfinite(X0).all()):
            return WeightSolution(
                status=SolverStatus.FAILED, weights=None, converged=False,
                error="Predictor values must be finite.",
            )

        # ---------- Solve ----------
        w = cp.Variable(J)
        objective = cp.Minimize(cp.sum_squares(x1 - X0.T @ w) + ridge * cp.sum_squares(w))
        constraints = [w >= 0, cp.sum(w) == 1]
        problem = cp.Problem(objective, constraints)

        raw_status: Optional[str] = None
        failure: Optional[str] = None
        try:
            problem.solve(solver=solver, verbose=False)
            raw_status = problem.status
        except Exception as e:
            failure = f"{type(e).__name__}: {e}"

        weights = None
        if failure is None:
            if raw_status not in _ACCEPTED_STATUSES:
                failure = f"solver status {raw_status}"
            elif w.value is None:
                failure = "solver returned no solution"
            else:
                weights = Opt.clamp_and_normalize(w.value, weight_tol)
                if weights is None:
                    failure = "solution weights vanished after clamping"

        if failure is not None:
            warnings.warn(
                f"Weight optimization failed ({failure}); using uniform weights over {J} donors.",
                UserWarning,
            )
            logger.warning("Weight optimization failed (%s); falling back to uniform weights.", failure)
            weights = Opt.uniform_weights(J)
            return WeightSolution(
                status=SolverStatus.FALLBACK,
                weights=weights,
                converged=False,
                fitted_predictors=X0.T @ weights,
                solver_status=raw_status,
                error=failure,
            )

        return WeightSolution(
            status=SolverStatus.OPTIMAL,
            weights=weights,
            converged=True,
            fitted_predictors=X0.T @ weights,
            solver_status=raw_status,
        )
