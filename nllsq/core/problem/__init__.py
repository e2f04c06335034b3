"""Problem building blocks: parameter blocks, cost and loss functions, residual blocks.

NllsProblem and CurveFitProblem1D live in the nlls_problem and curve_fit
modules and are re-exported from the top-level package.
"""

from .parameter_block import ParameterBlock, ParameterBlockOrIndex, ParameterBlockStorage
from .cost import CostFunction, CostFunctionType
from .loss import LossFunction, LossFunctionType
from .residual_block import ResidualBlock, ResidualBlockId

__all__ = [
    "ParameterBlock",
    "ParameterBlockOrIndex",
    "ParameterBlockStorage",
    "CostFunction",
    "CostFunctionType",
    "LossFunction",
    "LossFunctionType",
    "ResidualBlock",
    "ResidualBlockId",
]
