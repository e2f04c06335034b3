"""Solve orchestration: preprocessing, minimization and write-back."""

import logging
import time
import numpy as np
from typing import List, Optional, Tuple

from ..problem.parameter_block import ParameterBlock
from ..problem.residual_block import ResidualBlock
from .evaluator import ProgramEvaluator
from .gradient_checker import check_gradients
from .line_search import LineSearchMinimizer
from .minimizer import MinimizerOutcome
from .options import MinimizerType, SolverOptions
from .summary import SolverSummary, TerminationType
from .trust_region import TrustRegionMinimizer

logger = logging.getLogger(__name__)

# Relative distance below which a solution component is moved onto its bound
BOUND_SNAP_TOLERANCE = 1e-6


def solve(
    parameter_blocks: List[ParameterBlock],
    residual_blocks: List[ResidualBlock],
    options: SolverOptions
) -> SolverSummary:
    """Minimize the problem and write the solution into the parameter blocks.

    Options must already be validated. Evaluation problems never raise; they
    end up in the summary's termination type and message.

    Args:
        parameter_blocks: Parameter blocks of the problem
        residual_blocks: Residual blocks of the problem
        options: Validated solver options

    Returns:
        Summary of the solve
    """
    start_time = time.time()
    sparse = not options.linear_solver_type.is_dense

    with ProgramEvaluator(parameter_blocks, residual_blocks, options.num_threads, sparse) as evaluator:
        report = {
            "minimizer_type": options.minimizer_type,
            "linear_solver_type_given": options.linear_solver_type,
            "num_parameter_blocks": len(parameter_blocks),
            "num_parameters": sum(block.size for block in parameter_blocks),
            "num_residual_blocks": len(residual_blocks),
            "num_residuals": sum(block.num_residuals for block in residual_blocks),
            "num_parameter_blocks_reduced": len(evaluator.column_offsets),
            "num_parameters_reduced": evaluator.num_parameters,
            "num_residual_blocks_reduced": len(evaluator.active_blocks),
            "num_residuals_reduced": evaluator.num_residuals,
            "is_constrained": evaluator.is_constrained(),
            "num_threads_given": options.num_threads,
            "num_threads_used": evaluator.num_threads_used,
        }
        if options.minimizer_type == MinimizerType.TRUST_REGION:
            report["trust_region_strategy_type"] = options.trust_region_strategy_type
        else:
            report["line_search_direction_type"] = options.line_search_direction_type

        def finish(termination_type: TerminationType, message: str, **fields) -> SolverSummary:
            fields.setdefault("total_time_in_seconds", time.time() - start_time)
            summary = SolverSummary(
                termination_type=termination_type,
                message=message,
                num_residual_evaluations=evaluator.num_residual_evaluations,
                num_jacobian_evaluations=evaluator.num_jacobian_evaluations,
                residual_evaluation_time_in_seconds=evaluator.residual_evaluation_time,
                jacobian_evaluation_time_in_seconds=evaluator.jacobian_evaluation_time,
                **report,
                **fields,
            )
            logger.debug(summary.brief_report())
            return summary

        fixed_cost = evaluator.fixed_cost()
        if fixed_cost is None:
            return finish(TerminationType.FAILURE,
                          "Residual blocks depending only on constant parameter blocks failed to evaluate.")

        if evaluator.num_parameters == 0:
            return finish(TerminationType.CONVERGENCE, "No non-constant parameter blocks found.",
                          initial_cost=fixed_cost, final_cost=fixed_cost, fixed_cost=fixed_cost)

        x0 = evaluator.state_vector()
        lower, upper = evaluator.bounds()
        infeasible = np.flatnonzero((x0 < lower) | (x0 > upper))
        if infeasible.size:
            i = int(infeasible[0])
            return finish(
                TerminationType.FAILURE,
                f"Initial parameters are infeasible: component {i} of the free parameters is {x0[i]}, "
                f"bounds are [{lower[i]}, {upper[i]}].",
                fixed_cost=fixed_cost,
            )

        initial = evaluator.evaluate(x0)
        if not initial.ok:
            return finish(TerminationType.FAILURE, "Initial residual and Jacobian evaluation failed.",
                          fixed_cost=fixed_cost)
        initial_cost = initial.cost

        if options.check_gradients:
            error = check_gradients(
                evaluator,
                x0,
                options.gradient_check_numeric_derivative_relative_step_size,
                options.gradient_check_relative_precision,
            )
            if error is not None:
                logger.warning("Gradient check failed:\n%s", error)
                return finish(TerminationType.FAILURE, f"Gradient Error detected!\n{error}",
                              initial_cost=initial_cost + fixed_cost, fixed_cost=fixed_cost)

        preprocessor_time = time.time() - start_time

        minimizer_start = time.time()
        evaluator.deadline = start_time + options.max_solver_time_in_seconds
        if options.minimizer_type == MinimizerType.TRUST_REGION:
            minimizer = TrustRegionMinimizer(evaluator, options)
        else:
            minimizer = LineSearchMinimizer(evaluator, options)
        outcome = minimizer.minimize(x0, initial_cost)
        evaluator.deadline = None
        minimizer_time = time.time() - minimizer_start

        postprocessor_start = time.time()
        x, final_cost = _snap_to_bounds(evaluator, outcome)
        recorder = minimizer.recorder
        usable = outcome.termination_type in (
            TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE, TerminationType.USER_SUCCESS
        )
        evaluator.write_state(x if usable else x0)
        postprocessor_time = time.time() - postprocessor_start

        logger.debug("Minimizer %s finished: %s", outcome.engine_method, outcome.message)
        return finish(
            outcome.termination_type,
            outcome.message,
            engine_method=outcome.engine_method,
            initial_cost=initial_cost + fixed_cost,
            final_cost=final_cost + fixed_cost,
            fixed_cost=fixed_cost,
            num_successful_steps=recorder.num_successful_steps,
            num_unsuccessful_steps=recorder.num_unsuccessful_steps,
            num_line_search_steps=recorder.num_line_search_steps,
            iterations=recorder.iterations,
            preprocessor_time_in_seconds=preprocessor_time,
            minimizer_time_in_seconds=minimizer_time,
            postprocessor_time_in_seconds=postprocessor_time,
        )


def _snap_to_bounds(evaluator: ProgramEvaluator, outcome: MinimizerOutcome) -> Tuple[np.ndarray, float]:
    """Move components within rounding of a bound onto it if the cost does not increase."""
    lower, upper = evaluator.bounds()
    x = outcome.x
    candidate = np.clip(x, lower, upper)

    finite_lower = np.isfinite(lower)
    finite_upper = np.isfinite(upper)
    tolerance_lower = BOUND_SNAP_TOLERANCE * np.maximum(1.0, np.abs(np.where(finite_lower, lower, 0.0)))
    tolerance_upper = BOUND_SNAP_TOLERANCE * np.maximum(1.0, np.abs(np.where(finite_upper, upper, 0.0)))
    candidate = np.where(finite_lower & (candidate - lower <= tolerance_lower), lower, candidate)
    candidate = np.where(finite_upper & (upper - candidate <= tolerance_upper), upper, candidate)

    if np.array_equal(candidate, x):
        return x, outcome.cost

    snapped = _evaluate_cost(evaluator, candidate)
    if snapped is not None and snapped <= outcome.cost:
        logger.debug("Moved %d component(s) onto their bounds", int(np.sum(candidate != x)))
        return candidate, snapped
    return x, outcome.cost


def _evaluate_cost(evaluator: ProgramEvaluator, x: np.ndarray) -> Optional[float]:
    evaluation = evaluator.evaluate(x)
    return evaluation.cost if evaluation.ok else None
