"""Trust-region minimization through scipy.optimize.least_squares."""

import logging
import numpy as np
from typing import Tuple

from scipy.optimize import least_squares

from .evaluator import ProgramEvaluator, SolverTimeout
from .minimizer import IterationRecorder, MinimizerAbort, MinimizerOutcome
from .options import DoglegType, SolverOptions, TrustRegionStrategyType
from .summary import TerminationType

logger = logging.getLogger(__name__)

EPS = np.finfo(float).eps

_STATUS_MESSAGES = {
    1: "Gradient tolerance reached.",
    2: "Function tolerance reached.",
    3: "Parameter tolerance reached.",
    4: "Function and parameter tolerance reached.",
}


def engine_method(options: SolverOptions, bounded: bool = False) -> Tuple[str, str]:
    """Pick the least_squares method and trust-region subproblem solver.

    Bounded problems always go to dogbox. trf stalls 1e-10 inside a bound
    when the start point lies on it.

    Args:
        options: Solver options
        bounded: Whether any free component has a finite bound

    Returns:
        Tuple of (method, tr_solver)
    """
    tr_solver = "exact" if options.linear_solver_type.is_dense else "lsmr"
    if options.trust_region_strategy_type == TrustRegionStrategyType.DOGLEG:
        if options.dogleg_type == DoglegType.SUBSPACE_DOGLEG:
            tr_solver = "lsmr"
        else:
            return "dogbox", tr_solver
    return ("dogbox" if bounded else "trf"), tr_solver


class TrustRegionMinimizer:
    """Drives least_squares over a ProgramEvaluator.

    least_squares calls ``fun`` once at the start point and once per trial
    step, and ``jac`` at every accepted point. Every trial step is counted as
    an iteration: successful if it decreased the cost, unsuccessful otherwise.
    """

    def __init__(self, evaluator: ProgramEvaluator, options: SolverOptions):
        self.evaluator = evaluator
        self.options = options
        self.recorder: IterationRecorder = None

        self._mask: np.ndarray = None
        self._x_full: np.ndarray = None
        self._num_fun_calls = 0
        self._num_jac_calls = 0
        self._consecutive_invalid_steps = 0

    def _expand(self, x_reduced: np.ndarray) -> np.ndarray:
        x = self._x_full.copy()
        x[self._mask] = x_reduced
        return x

    def minimize(self, x0: np.ndarray, cost0: float) -> MinimizerOutcome:
        """Minimize from a feasible x0 whose cost has already been evaluated.

        Args:
            x0: Packed start point
            cost0: Cost at x0

        Returns:
            Minimizer outcome at the best accepted point
        """
        options = self.options
        self.recorder = IterationRecorder(options, self.evaluator, x0, cost0)

        # least_squares rejects lower == upper, so such components are held fixed
        lower, upper = self.evaluator.bounds()
        self._mask = lower < upper
        self._x_full = np.where(self._mask, x0, lower)
        bounded = bool(np.any(np.isfinite(lower[self._mask])) or np.any(np.isfinite(upper[self._mask])))
        method, tr_solver = engine_method(options, bounded)
        label = f"{method}/{tr_solver}"

        if options.max_num_iterations == 0:
            return MinimizerOutcome(TerminationType.NO_CONVERGENCE, "Maximum number of iterations reached.",
                                    x0, cost0, label)
        if not np.any(self._mask):
            return MinimizerOutcome(TerminationType.CONVERGENCE, "All parameters are fixed by their bounds.",
                                    self._x_full, cost0, label)

        bounds = (lower[self._mask], upper[self._mask]) if bounded else (-np.inf, np.inf)

        # Only trf understands the regularize switch; dogbox hands tr_options to lsmr as is
        tr_options = {}
        if method == "trf" and tr_solver == "lsmr":
            tr_options["regularize"] = options.trust_region_strategy_type == TrustRegionStrategyType.LEVENBERG_MARQUARDT

        logger.debug("Starting least_squares method=%s tr_solver=%s with %d parameters",
                     method, tr_solver, int(np.sum(self._mask)))

        try:
            result = least_squares(
                fun=self._residual_function,
                x0=self._x_full[self._mask],
                jac=self._jacobian_function,
                bounds=bounds,
                method=method,
                ftol=max(options.function_tolerance, EPS),
                xtol=max(options.parameter_tolerance, EPS),
                gtol=max(options.gradient_tolerance, EPS),
                max_nfev=options.max_num_iterations + 1,
                tr_solver=tr_solver,
                tr_options=tr_options,
                verbose=0
            )
        except SolverTimeout:
            return self._outcome(TerminationType.NO_CONVERGENCE, "Maximum solver time reached.", label)
        except MinimizerAbort as abort:
            return self._outcome(abort.termination_type, abort.message, label)

        if result.status in _STATUS_MESSAGES:
            return self._outcome(TerminationType.CONVERGENCE, _STATUS_MESSAGES[result.status], label)
        if result.status == 0:
            return self._outcome(TerminationType.NO_CONVERGENCE, "Maximum number of iterations reached.", label)
        return self._outcome(TerminationType.FAILURE, f"Minimizer failed: {result.message}", label)

    def _outcome(self, termination_type: TerminationType, message: str, label: str) -> MinimizerOutcome:
        return MinimizerOutcome(termination_type, message, self.recorder.x, self.recorder.cost, label)

    def _residual_function(self, x_reduced: np.ndarray) -> np.ndarray:
        """Residual function for scipy.optimize.least_squares.

        Args:
            x_reduced: Free parameters

        Returns:
            Robustified residual vector; all NaN if evaluation failed
        """
        self._num_fun_calls += 1
        x = self._expand(x_reduced)
        evaluation = self.evaluator.evaluate(x)

        # The first call is the start point, already recorded
        if self._num_fun_calls == 1:
            return evaluation.residuals

        if not evaluation.ok:
            self.recorder.reject(x, np.inf)
            self._consecutive_invalid_steps += 1
            if self._consecutive_invalid_steps > self.options.max_num_consecutive_invalid_steps:
                raise MinimizerAbort(
                    TerminationType.FAILURE,
                    "Number of consecutive invalid steps more than "
                    "max_num_consecutive_invalid_steps: "
                    f"{self.options.max_num_consecutive_invalid_steps}",
                )
            return evaluation.residuals

        self._consecutive_invalid_steps = 0
        # Same acceptance rule as least_squares: strict decrease of 1/2 |f|^2
        cost = 0.5 * float(evaluation.residuals @ evaluation.residuals)
        if cost < self.recorder.cost:
            self.recorder.accept(x, cost)
        else:
            self.recorder.reject(x, cost)
        return evaluation.residuals

    def _jacobian_function(self, x_reduced: np.ndarray, f: np.ndarray = None):
        """Jacobian function for scipy.optimize.least_squares.

        Args:
            x_reduced: Free parameters at an accepted point
            f: Residuals at x_reduced, unused

        Returns:
            Jacobian of the robustified residuals, dense or CSR
        """
        x = self._expand(x_reduced)
        evaluation = self.evaluator.evaluate(x, need_jacobian=True)
        if not evaluation.ok:
            raise MinimizerAbort(TerminationType.FAILURE, "Residual and Jacobian evaluation failed.")

        self.recorder.dump(self._num_jac_calls, evaluation, x)
        self._num_jac_calls += 1

        jacobian = evaluation.jacobian
        if np.all(self._mask):
            return jacobian
        return jacobian[:, np.flatnonzero(self._mask)]
