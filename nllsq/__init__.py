"""nllsq - Non-linear least squares problems solved with SciPy

Parameter blocks, residual blocks with user cost functions and robust loss
functions, assembled into a problem and minimized with trust-region or
line-search methods.
"""

__version__ = "0.1.0"

# Problem
from .core.problem.nlls_problem import (
    NllsProblem,
    NllsProblemSolution,
    ProblemEvaluation,
    ProblemState,
    ResidualBlockBuilder,
)
from .core.problem.curve_fit import (
    CurveFitProblem1D,
    CurveFitProblem1DBuilder,
    CurveFitProblemSolution,
    CurveFunctionType,
)
from .core.problem.parameter_block import ParameterBlock, ParameterBlockStorage
from .core.problem.cost import CostFunction, CostFunctionType
from .core.problem.loss import LossFunction, LossFunctionType
from .core.problem.residual_block import ResidualBlockId

# Solver
from .core.solver.options import (
    DenseLinearAlgebraLibraryType,
    DoglegType,
    DumpFormatType,
    LinearSolverType,
    LineSearchDirectionType,
    LineSearchInterpolationType,
    LineSearchType,
    LoggingType,
    MinimizerType,
    NonlinearConjugateGradientType,
    PreconditionerType,
    SolverOptions,
    SparseLinearAlgebraLibraryType,
    TrustRegionStrategyType,
    VisibilityClusteringType,
)
from .core.solver.summary import IterationSummary, SolverSummary, TerminationType

# Errors
from .core.errors import (
    AlreadyRegisteredError,
    BuilderInFlightError,
    ConstructionError,
    CurveFitBuildError,
    CurveFitErrorKind,
    DuplicateParameterBlockError,
    FatalBridgeError,
    InvalidBoundError,
    InvalidIndexError,
    InvalidLossParameterError,
    MissingCostError,
    MissingParametersError,
    NllsError,
    NoResidualBlocksError,
    ProblemStateError,
    SizeMismatchError,
    ThreadSafetyError,
    ValidationError,
)

from .core.logs import initialize_logging

__all__ = [
    # Version
    "__version__",
    # Problem
    "NllsProblem",
    "NllsProblemSolution",
    "ProblemEvaluation",
    "ProblemState",
    "ResidualBlockBuilder",
    "CurveFitProblem1D",
    "CurveFitProblem1DBuilder",
    "CurveFitProblemSolution",
    "CurveFunctionType",
    "ParameterBlock",
    "ParameterBlockStorage",
    "CostFunction",
    "CostFunctionType",
    "LossFunction",
    "LossFunctionType",
    "ResidualBlockId",
    # Solver
    "SolverOptions",
    "SolverSummary",
    "IterationSummary",
    "TerminationType",
    "MinimizerType",
    "LineSearchDirectionType",
    "LineSearchType",
    "NonlinearConjugateGradientType",
    "LineSearchInterpolationType",
    "TrustRegionStrategyType",
    "DoglegType",
    "LinearSolverType",
    "PreconditionerType",
    "VisibilityClusteringType",
    "DenseLinearAlgebraLibraryType",
    "SparseLinearAlgebraLibraryType",
    "LoggingType",
    "DumpFormatType",
    # Errors
    "NllsError",
    "ConstructionError",
    "InvalidIndexError",
    "InvalidBoundError",
    "SizeMismatchError",
    "AlreadyRegisteredError",
    "DuplicateParameterBlockError",
    "MissingCostError",
    "MissingParametersError",
    "InvalidLossParameterError",
    "BuilderInFlightError",
    "CurveFitBuildError",
    "CurveFitErrorKind",
    "ValidationError",
    "ThreadSafetyError",
    "ProblemStateError",
    "NoResidualBlocksError",
    "FatalBridgeError",
    # Logging
    "initialize_logging",
]
