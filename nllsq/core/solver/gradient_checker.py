"""Compare user-supplied Jacobians with finite differences."""

import logging
import numpy as np
from typing import List, Optional

from ..math.jacobians import finite_difference_jacobian, relative_jacobian_error
from .evaluator import ProgramEvaluator

logger = logging.getLogger(__name__)


def check_gradients(
    evaluator: ProgramEvaluator,
    x: np.ndarray,
    relative_step_size: float,
    relative_precision: float
) -> Optional[str]:
    """Check the Jacobian of every active residual block at x.

    Only the cost functions are checked, before any loss is applied, and only
    with respect to free parameter blocks.

    Args:
        evaluator: Evaluator of the problem
        x: Packed free parameters
        relative_step_size: Relative finite difference step
        relative_precision: Largest acceptable relative error per entry

    Returns:
        None if all Jacobians agree, else a report of the offending entries
    """
    errors: List[str] = []

    for residual_block in evaluator.active_blocks:
        block_number = evaluator.block_numbers[residual_block.id]
        cost = residual_block.cost
        parameters = [np.array(p) for p in evaluator.parameter_views(residual_block, x)]
        jacobians = [
            np.zeros((cost.num_residuals, size)) if index in evaluator.column_offsets else None
            for index, size in zip(residual_block.parameter_indices, cost.parameter_block_sizes)
        ]
        residuals = np.zeros(cost.num_residuals)
        if not cost.evaluate(parameters, residuals, jacobians):
            errors.append(f"Residual block {block_number}: evaluation failed")
            continue

        for k, analytic in enumerate(jacobians):
            if analytic is None:
                continue

            def residual_function(values, k=k):
                trial = list(parameters)
                trial[k] = values
                out = np.zeros(cost.num_residuals)
                return out if cost.evaluate(trial, out) else None

            numeric = finite_difference_jacobian(residual_function, parameters[k], relative_step_size)
            if numeric is None:
                errors.append(f"Residual block {block_number}, parameter block {k}: "
                              "evaluation failed while computing numeric derivatives")
                continue

            max_error, error = relative_jacobian_error(analytic, numeric)
            if max_error > relative_precision:
                for i, j in zip(*np.nonzero(error > relative_precision)):
                    errors.append(
                        f"Residual block {block_number}, parameter block {k}: "
                        f"J[{i}, {j}] user = {analytic[i, j]:.10e}, numeric = {numeric[i, j]:.10e}, "
                        f"relative error = {error[i, j]:.3e}"
                    )

    if not errors:
        return None

    logger.debug("Gradient check found %d problem(s)", len(errors))
    return "\n".join(errors)
