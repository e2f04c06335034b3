"""One-dimensional multi-parameter curve fitting on top of NllsProblem.

The model is a callable ``func(x, parameters, jacobian) -> Optional[float]``:

- ``x``: independent coordinate of one data point
- ``parameters``: 1-D array with the current parameter values
- ``jacobian``: None when derivatives are not needed, else a writable 1-D
  array of the same length as ``parameters`` to receive dy/dp

It returns the model value, or None if it cannot be evaluated at x.

Each parameter becomes its own parameter block of size one, so bounds and
constness can be set per parameter. The residual of data point i is
``inverse_error[i] * (y[i] - func(x[i], ...))``.
"""

import numpy as np
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from ..errors import CurveFitBuildError, CurveFitErrorKind, InvalidIndexError
from ..solver.options import SolverOptions
from ..solver.summary import SolverSummary
from .cost import CostFunction
from .loss import LossFunction
from .nlls_problem import NllsProblem
from .parameter_block import ParameterBlock

CurveFunctionType = Callable[[float, np.ndarray, Optional[np.ndarray]], Optional[float]]


@dataclass
class CurveFitProblemSolution:
    """Solved parameters and the solver summary."""

    parameters: np.ndarray
    summary: SolverSummary


def _curve_cost_function(
    func: CurveFunctionType,
    x: np.ndarray,
    y: np.ndarray,
    inverse_error: Optional[np.ndarray],
    num_parameters: int
) -> CostFunction:
    weights = inverse_error if inverse_error is not None else np.ones_like(x)

    def cost(parameters, residuals, jacobians):
        values = np.array([block[0] for block in parameters])
        derivatives = np.zeros(num_parameters) if jacobians is not None else None
        for i in range(len(x)):
            if derivatives is not None:
                derivatives[:] = 0.0
            value = func(float(x[i]), values, derivatives)
            if value is None:
                return False
            residuals[i] = weights[i] * (y[i] - value)
            if jacobians is not None:
                for k, jacobian in enumerate(jacobians):
                    if jacobian is not None:
                        jacobian[i, 0] = -weights[i] * derivatives[k]
        return True

    return CostFunction(cost, len(x), [1] * num_parameters)


class CurveFitProblem1D:
    """Fit of a scalar model y = f(x; parameters) to data points."""

    def __init__(
        self,
        func: CurveFunctionType,
        x: Sequence[float],
        y: Sequence[float],
        parameters: Sequence[float],
        loss: Optional[LossFunction] = None
    ):
        """Create a curve fitting problem with unit errors.

        Use :meth:`builder` for inverse errors, bounds and constant parameters.

        Args:
            func: Model function
            x: Independent coordinates of the data points
            y: Values of the data points
            parameters: Initial parameter guess
            loss: Optional loss function
        """
        builder = CurveFitProblem1D.builder().func(func).x(x).y(y).parameters(parameters)
        if loss is not None:
            builder.loss(loss)
        self.problem = builder._build_problem()

    @classmethod
    def _from_problem(cls, problem: NllsProblem) -> "CurveFitProblem1D":
        instance = cls.__new__(cls)
        instance.problem = problem
        return instance

    @staticmethod
    def builder() -> "CurveFitProblem1DBuilder":
        return CurveFitProblem1DBuilder()

    def solve(self, options: Optional[SolverOptions] = None) -> CurveFitProblemSolution:
        """Solve and return the parameters as a single vector."""
        solution = self.problem.solve(options)
        parameters = np.array([values[0] for values in solution.parameters])
        return CurveFitProblemSolution(parameters=parameters, summary=solution.summary)


class CurveFitProblem1DBuilder:
    """Builder for CurveFitProblem1D; every setter returns the builder."""

    def __init__(self):
        self._func: Optional[CurveFunctionType] = None
        self._x: Optional[np.ndarray] = None
        self._y: Optional[np.ndarray] = None
        self._inverse_error: Optional[np.ndarray] = None
        self._parameters: Optional[np.ndarray] = None
        self._lower_bounds: Optional[list] = None
        self._upper_bounds: Optional[list] = None
        self._constant: Sequence[int] = ()
        self._loss: Optional[LossFunction] = None

    def func(self, func: CurveFunctionType) -> "CurveFitProblem1DBuilder":
        self._func = func
        return self

    def x(self, x: Sequence[float]) -> "CurveFitProblem1DBuilder":
        self._x = np.asarray(x, dtype=np.float64)
        return self

    def y(self, y: Sequence[float]) -> "CurveFitProblem1DBuilder":
        self._y = np.asarray(y, dtype=np.float64)
        return self

    def inverse_error(self, inverse_error: Sequence[float]) -> "CurveFitProblem1DBuilder":
        """Per-point inverse uncertainties, the square roots of the data point weights."""
        self._inverse_error = np.asarray(inverse_error, dtype=np.float64)
        return self

    def parameters(self, parameters: Sequence[float]) -> "CurveFitProblem1DBuilder":
        self._parameters = np.asarray(parameters, dtype=np.float64)
        return self

    def lower_bounds(self, lower_bounds: Sequence[Optional[float]]) -> "CurveFitProblem1DBuilder":
        """Per-parameter lower bounds; None entries mean unbounded."""
        self._lower_bounds = list(lower_bounds)
        return self

    def upper_bounds(self, upper_bounds: Sequence[Optional[float]]) -> "CurveFitProblem1DBuilder":
        """Per-parameter upper bounds; None entries mean unbounded."""
        self._upper_bounds = list(upper_bounds)
        return self

    def constant(self, indices: Sequence[int]) -> "CurveFitProblem1DBuilder":
        """Indices of parameters held at their initial values."""
        self._constant = list(indices)
        return self

    def loss(self, loss: LossFunction) -> "CurveFitProblem1DBuilder":
        self._loss = loss
        return self

    def build(self) -> CurveFitProblem1D:
        """Build the problem.

        Raises:
            CurveFitBuildError: A mandatory field is missing or sizes are inconsistent
            InvalidIndexError: A constant parameter index is out of range
        """
        return CurveFitProblem1D._from_problem(self._build_problem())

    def _build_problem(self) -> NllsProblem:
        if self._func is None:
            raise CurveFitBuildError(CurveFitErrorKind.FUNC_MISSED)
        if self._x is None:
            raise CurveFitBuildError(CurveFitErrorKind.X_MISSED)
        if self._y is None:
            raise CurveFitBuildError(CurveFitErrorKind.Y_MISSED)
        if len(self._x) != len(self._y):
            raise CurveFitBuildError(CurveFitErrorKind.DATA_SIZES_DONT_MATCH)
        if self._inverse_error is not None and len(self._inverse_error) != len(self._x):
            raise CurveFitBuildError(CurveFitErrorKind.DATA_SIZES_DONT_MATCH)
        if self._parameters is None or len(self._parameters) == 0:
            raise CurveFitBuildError(CurveFitErrorKind.PARAMETERS_MISSED)

        num_parameters = len(self._parameters)
        blocks = [ParameterBlock([value], name=f"p{i}") for i, value in enumerate(self._parameters)]
        if self._lower_bounds is not None:
            if len(self._lower_bounds) != num_parameters:
                raise CurveFitBuildError(CurveFitErrorKind.LOWER_BOUNDARY_SIZE_MISMATCH)
            for block, bound in zip(blocks, self._lower_bounds):
                if bound is not None:
                    block.set_lower_bounds([bound])
        if self._upper_bounds is not None:
            if len(self._upper_bounds) != num_parameters:
                raise CurveFitBuildError(CurveFitErrorKind.UPPER_BOUNDARY_SIZE_MISMATCH)
            for block, bound in zip(blocks, self._upper_bounds):
                if bound is not None:
                    block.set_upper_bounds([bound])

        problem = NllsProblem()
        cost = _curve_cost_function(self._func, self._x, self._y, self._inverse_error, num_parameters)
        problem.add_residual_block(cost, self._loss, blocks)
        try:
            for index in self._constant:
                problem.set_parameter_block_constant(index)
        except InvalidIndexError:
            problem.close()
            raise
        return problem
