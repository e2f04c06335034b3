"""Line-search minimization over the robustified cost.

Search directions are computed here; step lengths come from
scipy.optimize.line_search (WOLFE) or from a backtracking Armijo search
with polynomial interpolation (ARMIJO).
"""

import logging
import warnings
import numpy as np
from collections import deque
from typing import Deque, Optional, Tuple

from scipy.optimize import line_search as wolfe_line_search

from .evaluator import Evaluation, ProgramEvaluator, SolverTimeout
from .minimizer import IterationRecorder, MinimizerAbort, MinimizerOutcome
from .options import (
    LineSearchDirectionType,
    LineSearchInterpolationType,
    LineSearchType,
    NonlinearConjugateGradientType,
    SolverOptions,
)
from .summary import TerminationType

logger = logging.getLogger(__name__)

EPS = np.finfo(float).eps

# Powell's restart test for nonlinear conjugate gradients
_NCG_RESTART_THRESHOLD = 0.1


class _CachedObjective:
    """Cost and gradient at a point, memoized for the most recent point."""

    def __init__(self, evaluator: ProgramEvaluator):
        self.evaluator = evaluator
        self.num_evaluations = 0
        self._key: Optional[bytes] = None
        self._evaluation: Optional[Evaluation] = None

    def __call__(self, x: np.ndarray) -> Evaluation:
        key = np.asarray(x, dtype=np.float64).tobytes()
        if key != self._key:
            self.num_evaluations += 1
            self._evaluation = self.evaluator.evaluate(x, need_jacobian=True)
            self._key = key
        return self._evaluation

    def cost(self, x: np.ndarray) -> float:
        return self(x).cost

    def gradient(self, x: np.ndarray) -> np.ndarray:
        evaluation = self(x)
        if not evaluation.ok:
            return np.full(len(x), np.nan)
        return evaluation.gradient()


class _Direction:
    """Search direction state for one of the supported direction types."""

    def __init__(self, options: SolverOptions, num_parameters: int):
        self.kind = options.line_search_direction_type
        self.ncg_type = options.nonlinear_conjugate_gradient_type
        self.rank = options.max_lbfgs_rank
        self.scale_initial_hessian = options.use_approximate_eigenvalue_bfgs_scaling
        self.num_parameters = num_parameters
        self.reset()

    def reset(self) -> None:
        self.previous_direction: Optional[np.ndarray] = None
        self.previous_gradient: Optional[np.ndarray] = None
        self.pairs: Deque[Tuple[np.ndarray, np.ndarray]] = deque(maxlen=self.rank)
        self.inverse_hessian: Optional[np.ndarray] = None

    def update(self, step: np.ndarray, gradient_change: np.ndarray) -> None:
        """Feed the accepted step s and gradient change y into the quasi-Newton model."""
        sy = float(step @ gradient_change)
        if sy <= EPS * float(gradient_change @ gradient_change):
            # Curvature condition fails; keep the current model
            return

        if self.kind == LineSearchDirectionType.LBFGS:
            self.pairs.append((step, gradient_change))
        elif self.kind == LineSearchDirectionType.BFGS:
            if self.inverse_hessian is None:
                scale = sy / float(gradient_change @ gradient_change) if self.scale_initial_hessian else 1.0
                self.inverse_hessian = scale * np.eye(self.num_parameters)
            rho = 1.0 / sy
            V = np.eye(self.num_parameters) - rho * np.outer(gradient_change, step)
            self.inverse_hessian = V.T @ self.inverse_hessian @ V + rho * np.outer(step, step)

    def compute(self, gradient: np.ndarray) -> np.ndarray:
        if self.kind == LineSearchDirectionType.STEEPEST_DESCENT:
            direction = -gradient
        elif self.kind == LineSearchDirectionType.NONLINEAR_CONJUGATE_GRADIENT:
            direction = self._conjugate_gradient(gradient)
        elif self.kind == LineSearchDirectionType.LBFGS:
            direction = -self._lbfgs_product(gradient)
        else:
            H = self.inverse_hessian
            direction = -gradient if H is None else -(H @ gradient)

        self.previous_gradient = gradient
        self.previous_direction = direction
        return direction

    def _conjugate_gradient(self, gradient: np.ndarray) -> np.ndarray:
        g_prev, d_prev = self.previous_gradient, self.previous_direction
        if g_prev is None:
            return -gradient

        gg = float(gradient @ gradient)
        if abs(float(gradient @ g_prev)) >= _NCG_RESTART_THRESHOLD * gg:
            return -gradient

        y = gradient - g_prev
        if self.ncg_type == NonlinearConjugateGradientType.FLETCHER_REEVES:
            numerator, denominator = gg, float(g_prev @ g_prev)
        elif self.ncg_type == NonlinearConjugateGradientType.POLAK_RIBIERE:
            numerator, denominator = float(gradient @ y), float(g_prev @ g_prev)
        else:
            numerator, denominator = float(gradient @ y), float(d_prev @ y)
        if denominator == 0.0:
            return -gradient
        beta = numerator / denominator

        direction = -gradient + beta * d_prev
        if float(direction @ gradient) >= 0.0:
            return -gradient
        return direction

    def _lbfgs_product(self, gradient: np.ndarray) -> np.ndarray:
        """Two-loop recursion: approximate inverse Hessian times gradient."""
        q = gradient.copy()
        alphas = []
        for s, y in reversed(self.pairs):
            rho = 1.0 / float(s @ y)
            alpha = rho * float(s @ q)
            q -= alpha * y
            alphas.append((rho, alpha))

        if self.pairs and self.scale_initial_hessian:
            s, y = self.pairs[-1]
            q *= float(s @ y) / float(y @ y)

        for (s, y), (rho, alpha) in zip(self.pairs, reversed(alphas)):
            beta = rho * float(y @ q)
            q += (alpha - beta) * s
        return q


class LineSearchMinimizer:
    """Line-search minimizer over a ProgramEvaluator."""

    def __init__(self, evaluator: ProgramEvaluator, options: SolverOptions):
        self.evaluator = evaluator
        self.options = options
        self.recorder: Optional[IterationRecorder] = None

    def minimize(self, x0: np.ndarray, cost0: float) -> MinimizerOutcome:
        """Minimize from x0 whose cost has already been evaluated.

        Args:
            x0: Packed start point
            cost0: Cost at x0

        Returns:
            Minimizer outcome at the best accepted point
        """
        options = self.options
        label = f"line_search/{options.line_search_direction_type.value}/{options.line_search_type.value}"
        self.recorder = IterationRecorder(options, self.evaluator, x0, cost0)

        if self.evaluator.is_constrained():
            return MinimizerOutcome(TerminationType.FAILURE, "LINE_SEARCH Minimizer does not support bounds.",
                                    x0, cost0, label)

        try:
            termination_type, message = self._run(x0)
        except SolverTimeout:
            termination_type, message = TerminationType.NO_CONVERGENCE, "Maximum solver time reached."
        except MinimizerAbort as abort:
            termination_type, message = abort.termination_type, abort.message

        return MinimizerOutcome(termination_type, message, self.recorder.x, self.recorder.cost, label)

    def _run(self, x0: np.ndarray) -> Tuple[TerminationType, str]:
        options = self.options
        recorder = self.recorder
        objective = _CachedObjective(self.evaluator)
        direction_state = _Direction(options, len(x0))

        x = np.array(x0, dtype=np.float64)
        evaluation = objective(x)
        if not evaluation.ok:
            raise MinimizerAbort(TerminationType.FAILURE, "Residual and Jacobian evaluation failed.")
        cost = evaluation.cost
        gradient = evaluation.gradient()
        recorder.dump(0, evaluation, x)

        previous_cost: Optional[float] = None
        num_restarts = 0

        while recorder.num_iterations < options.max_num_iterations:
            gradient_max_norm = float(np.max(np.abs(gradient))) if gradient.size else 0.0
            if gradient_max_norm <= options.gradient_tolerance:
                return TerminationType.CONVERGENCE, "Gradient tolerance reached."

            direction = direction_state.compute(gradient)
            directional_derivative = float(gradient @ direction)
            if not np.isfinite(directional_derivative) or directional_derivative >= 0.0:
                direction_state.reset()
                direction = direction_state.compute(gradient)
                directional_derivative = float(gradient @ direction)

            evaluations_before = objective.num_evaluations
            step_size = self._search(objective, x, cost, previous_cost, gradient, direction,
                                     directional_derivative)
            recorder.num_line_search_steps += 1
            line_search_evaluations = objective.num_evaluations - evaluations_before

            if step_size is None:
                recorder.reject(x + direction * options.min_line_search_step_size, np.inf)
                num_restarts += 1
                if num_restarts > options.max_num_line_search_direction_restarts:
                    return (
                        TerminationType.FAILURE,
                        "Line search failed to find a step satisfying the sufficient decrease condition "
                        f"after {options.max_num_line_search_direction_restarts} direction restarts.",
                    )
                logger.debug("Line search failed, restarting with steepest descent")
                direction_state.reset()
                continue

            x_new = x + step_size * direction
            new_evaluation = objective(x_new)
            cost_new = new_evaluation.cost
            gradient_new = new_evaluation.gradient()

            step = x_new - x
            recorder.accept(x_new, cost_new, gradient_new, line_search_evaluations)
            self._dump(objective, recorder.num_iterations, x_new)

            if abs(cost - cost_new) <= options.function_tolerance * cost:
                return TerminationType.CONVERGENCE, "Function tolerance reached."
            if np.linalg.norm(step) <= options.parameter_tolerance * (np.linalg.norm(x) + options.parameter_tolerance):
                return TerminationType.CONVERGENCE, "Parameter tolerance reached."

            direction_state.update(step, gradient_new - gradient)
            previous_cost, cost = cost, cost_new
            x, gradient = x_new, gradient_new

        return TerminationType.NO_CONVERGENCE, "Maximum number of iterations reached."

    def _dump(self, objective: _CachedObjective, iteration: int, x: np.ndarray) -> None:
        if iteration in self.options.trust_region_minimizer_iterations_to_dump:
            self.recorder.dump(iteration, objective(x), x)

    def _initial_step(
        self,
        cost: float,
        previous_cost: Optional[float],
        directional_derivative: float
    ) -> float:
        quasi_newton = (LineSearchDirectionType.BFGS, LineSearchDirectionType.LBFGS)
        if self.options.line_search_direction_type in quasi_newton or previous_cost is None:
            return 1.0
        step_size = 2.0 * (cost - previous_cost) / directional_derivative
        return min(1.0, step_size) if step_size > 0.0 else 1.0

    def _search(
        self,
        objective: _CachedObjective,
        x: np.ndarray,
        cost: float,
        previous_cost: Optional[float],
        gradient: np.ndarray,
        direction: np.ndarray,
        directional_derivative: float
    ) -> Optional[float]:
        """Find a step length along direction.

        Returns:
            Step length, or None if no acceptable step was found
        """
        options = self.options
        if options.line_search_type == LineSearchType.WOLFE:
            with warnings.catch_warnings(), np.errstate(all="ignore"):
                # LineSearchWarning on failure; failure is reported through the result
                warnings.simplefilter("ignore")
                step_size = wolfe_line_search(
                    objective.cost,
                    objective.gradient,
                    x,
                    direction,
                    gfk=gradient,
                    old_fval=cost,
                    old_old_fval=previous_cost,
                    c1=options.line_search_sufficient_function_decrease,
                    c2=options.line_search_sufficient_curvature_decrease,
                    maxiter=options.max_num_line_search_step_size_iterations,
                )[0]
        else:
            step_size = self._armijo(objective, x, cost, direction, directional_derivative,
                                     self._initial_step(cost, previous_cost, directional_derivative))

        if step_size is None or not np.isfinite(step_size) or step_size < options.min_line_search_step_size:
            return None
        if not objective(x + step_size * direction).ok:
            return None
        return float(step_size)

    def _armijo(
        self,
        objective: _CachedObjective,
        x: np.ndarray,
        cost: float,
        direction: np.ndarray,
        directional_derivative: float,
        step_size: float
    ) -> Optional[float]:
        """Backtracking search for the sufficient decrease condition."""
        options = self.options
        c1 = options.line_search_sufficient_function_decrease
        previous: Optional[Tuple[float, float]] = None

        for _ in range(options.max_num_line_search_step_size_iterations):
            if step_size < options.min_line_search_step_size:
                return None
            trial = objective(x + step_size * direction)
            trial_cost = trial.cost if trial.ok else np.inf
            if trial_cost <= cost + c1 * step_size * directional_derivative:
                return step_size

            if not np.isfinite(trial_cost):
                candidate = 0.5 * step_size
            else:
                candidate = self._interpolate(cost, directional_derivative, step_size, trial_cost, previous)
            previous = (step_size, trial_cost)
            step_size = float(np.clip(
                candidate,
                options.max_line_search_step_contraction * step_size,
                options.min_line_search_step_contraction * step_size,
            ))
        return None

    def _interpolate(
        self,
        phi0: float,
        dphi0: float,
        step_size: float,
        phi: float,
        previous: Optional[Tuple[float, float]]
    ) -> float:
        """Minimizer of a polynomial model of phi(alpha) = cost(x + alpha d)."""
        interpolation = self.options.line_search_interpolation_type
        if interpolation == LineSearchInterpolationType.BISECTION:
            return 0.5 * step_size

        quadratic = -dphi0 * step_size ** 2 / (2.0 * (phi - phi0 - dphi0 * step_size))
        if interpolation == LineSearchInterpolationType.QUADRATIC or previous is None:
            return quadratic

        # Cubic through phi(0), phi'(0), phi(step_size) and the previous trial
        a0, phi_a0 = previous
        a1, phi_a1 = step_size, phi
        d0 = phi_a0 - phi0 - dphi0 * a0
        d1 = phi_a1 - phi0 - dphi0 * a1
        denominator = a0 ** 2 * a1 ** 2 * (a1 - a0)
        if denominator == 0.0:
            return quadratic
        a = (a0 ** 2 * d1 - a1 ** 2 * d0) / denominator
        b = (-a0 ** 3 * d1 + a1 ** 3 * d0) / denominator
        if a == 0.0:
            return -dphi0 / (2.0 * b) if b != 0.0 else quadratic
        discriminant = b * b - 3.0 * a * dphi0
        if discriminant < 0.0:
            return quadratic
        return (-b + np.sqrt(discriminant)) / (3.0 * a)
