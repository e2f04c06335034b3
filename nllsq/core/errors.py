"""Error hierarchy for problem construction, option validation and solving."""

from enum import Enum
from typing import Optional


class NllsError(Exception):
    """Base class for all nllsq errors."""


class ConstructionError(NllsError):
    """Problem could not be assembled; raised before anything is registered."""


class InvalidIndexError(ConstructionError, IndexError):
    """Parameter index (component or block) is out of range."""

    def __init__(self, index: int, length: int, what: str = "ParameterBlock"):
        self.index = index
        self.length = length
        super().__init__(f"Index of {what} out of bounds: {index} >= {length}")


class InvalidBoundError(ConstructionError, ValueError):
    """Lower bound exceeds upper bound."""

    def __init__(self, index: int, lower: float, upper: float):
        self.index = index
        self.lower = lower
        self.upper = upper
        super().__init__(f"Invalid bounds for component {index}: lower {lower} > upper {upper}")


class SizeMismatchError(ConstructionError, ValueError):
    """Declared and actual sizes disagree."""


class AlreadyRegisteredError(ConstructionError):
    """Object is already bound to a problem and cannot be changed or re-bound."""


class DuplicateParameterBlockError(ConstructionError):
    """The same parameter block appears twice in one residual block."""


class MissingCostError(ConstructionError):
    def __init__(self):
        super().__init__("No cost function set for residual block")


class MissingParametersError(ConstructionError):
    def __init__(self):
        super().__init__("No parameters set for residual block")


class InvalidLossParameterError(ConstructionError, ValueError):
    """Scale parameter of a stock loss function is out of its domain."""


class BuilderInFlightError(ConstructionError):
    """Problem is captured by a residual block builder."""

    def __init__(self):
        super().__init__("Problem is captured by an unfinished residual block builder")


class CurveFitErrorKind(Enum):
    DATA_SIZES_DONT_MATCH = "Data arrays x, y, or inverse_error have different lengths"
    FUNC_MISSED = "Model function is missed"
    X_MISSED = "Independent variable x is missed"
    Y_MISSED = "Dependent variable y is missed"
    PARAMETERS_MISSED = "Initial parameters' guess is missed"
    LOWER_BOUNDARY_SIZE_MISMATCH = "Lower boundary size doesn't match the number of parameters"
    UPPER_BOUNDARY_SIZE_MISMATCH = "Upper boundary size doesn't match the number of parameters"


class CurveFitBuildError(ConstructionError):
    """Curve fitting problem is incomplete or inconsistent."""

    def __init__(self, kind: CurveFitErrorKind):
        self.kind = kind
        super().__init__(kind.value)


class ValidationError(NllsError):
    """Solver options were rejected before solving.

    Attributes:
        message: Diagnostic message produced by the options validator
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"SolverOptions is invalid: {message}")


class ThreadSafetyError(ValidationError):
    """A callback without the thread-safe capability was used with several threads."""


class ProblemStateError(NllsError):
    """Operation is not allowed in the problem's current state."""


class NoResidualBlocksError(ProblemStateError):
    def __init__(self):
        super().__init__("No residual blocks added to the problem")


class FatalBridgeError(NllsError):
    """A callback broke its memory or shape contract during evaluation.

    This is a programming error and is never absorbed by the solver.
    """

    def __init__(self, message: str, residual_block: Optional[int] = None):
        self.residual_block = residual_block
        if residual_block is not None:
            message = f"Residual block {residual_block}: {message}"
        super().__init__(message)
