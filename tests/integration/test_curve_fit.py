"""Curve fitting problems."""

import math

import numpy as np
import pytest

from nllsq import (
    CurveFitBuildError,
    CurveFitErrorKind,
    CurveFitProblem1D,
    InvalidIndexError,
    LossFunction,
    SolverOptions,
)

# Noisy samples of y = exp(0.3 x + 0.1)
X = np.arange(67) * 0.075
Y = np.array([
    1.133898, 1.334902, 1.213546, 1.252016, 1.392265, 1.314458, 1.472541, 1.536218,
    1.355679, 1.463566, 1.490201, 1.658699, 1.067574, 1.464629, 1.402653, 1.713141,
    1.527021, 1.702632, 1.423899, 1.543078, 1.664015, 1.732484, 1.543296, 1.959523,
    1.685132, 1.951791, 2.095346, 2.361460, 2.169119, 2.061745, 2.178641, 2.104346,
    2.584470, 1.914158, 2.368375, 2.686125, 2.712395, 2.499511, 2.558897, 2.309154,
    2.869503, 3.116645, 3.094907, 2.471759, 3.017131, 3.232381, 2.944596, 3.385343,
    3.199826, 3.423039, 3.621552, 3.559255, 3.530713, 3.561766, 3.544574, 3.867945,
    4.049776, 3.885601, 4.110505, 4.345320, 4.161241, 4.363407, 4.161576, 4.619728,
    4.737410, 4.727863, 4.669206,
])


def exponential(x, parameters, jacobian):
    """Model exp(m x + c)."""
    m, c = parameters
    value = math.exp(m * x + c)
    if jacobian is not None:
        jacobian[0] = x * value
        jacobian[1] = value
    return value


def linear(x, parameters, jacobian):
    """Model a x + b."""
    a, b = parameters
    if jacobian is not None:
        jacobian[:] = [x, 1.0]
    return a * x + b


def arctan_loss(s):
    rho1 = 1.0 / (s * s + 1.0)
    return math.atan(s), rho1, -2.0 * s * rho1 * rho1


class TestCurveFitProblem1D:
    """Test fitting of the exponential data set."""

    @pytest.mark.parametrize(
        "loss",
        [None, LossFunction.custom(arctan_loss), LossFunction.arctan(1.0)],
        ids=["trivial", "custom_arctan", "stock_arctan"],
    )
    def test_exponential(self, loss):
        if loss is None:
            problem = CurveFitProblem1D(exponential, X, Y, [0.0, 0.0])
        else:
            problem = CurveFitProblem1D.builder().func(exponential).x(X).y(Y).parameters([0.0, 0.0]).loss(loss).build()
        solution = problem.solve(SolverOptions())

        assert solution.summary.is_solution_usable()
        assert solution.parameters.shape == (2,)
        assert solution.parameters[0] == pytest.approx(0.3, abs=0.02)
        assert solution.parameters[1] == pytest.approx(0.1, abs=0.04)

    def test_new_matches_builder(self):
        rng = np.random.default_rng(0)
        x = np.linspace(0.0, 1.0, 200)
        y = 1.5 * x - 1.0 + 0.1 * rng.standard_normal(x.size)

        direct = CurveFitProblem1D(linear, x, y, [0.0, 0.0]).solve()
        built = CurveFitProblem1D.builder().func(linear).x(x).y(y).parameters([0.0, 0.0]).build().solve()
        np.testing.assert_allclose(direct.parameters, built.parameters)
        np.testing.assert_allclose(direct.parameters, np.polyfit(x, y, 1), atol=1e-6)

    def test_inverse_error_weights(self):
        x = np.array([0.0, 1.0, 2.0, 3.0])
        y = np.array([0.0, 1.0, 2.0, 10.0])
        inverse_error = np.array([1.0, 1.0, 1.0, 1e-6])

        solution = (
            CurveFitProblem1D.builder()
            .func(linear).x(x).y(y).inverse_error(inverse_error).parameters([0.0, 0.0])
            .build()
            .solve()
        )
        np.testing.assert_allclose(solution.parameters, [1.0, 0.0], atol=1e-4)

    def test_constant_parameter(self):
        x = np.linspace(0.0, 2.0, 21)
        y = 2.0 * x + 3.0
        solution = (
            CurveFitProblem1D.builder()
            .func(linear).x(x).y(y).parameters([0.0, 1.0]).constant([1])
            .build()
            .solve()
        )
        assert solution.parameters[1] == 1.0
        # Best slope with the intercept held at 1
        expected = float(x @ (y - 1.0) / (x @ x))
        assert solution.parameters[0] == pytest.approx(expected, abs=1e-6)

    @pytest.mark.parametrize("start", [[0.0, 0.0], [1.0, 1.0]], ids=["on_bound", "interior"])
    def test_bounds(self, start):
        x = np.linspace(0.0, 2.0, 21)
        y = 2.0 * x + 3.0
        solution = (
            CurveFitProblem1D.builder()
            .func(linear).x(x).y(y).parameters(start)
            .lower_bounds([None, 0.0]).upper_bounds([1.5, None])
            .build()
            .solve()
        )
        assert solution.summary.is_solution_usable()
        assert solution.parameters[0] == pytest.approx(1.5, abs=1e-6)
        assert solution.parameters[0] <= 1.5
        # Best intercept with the slope held at 1.5
        assert solution.parameters[1] == pytest.approx(float(np.mean(y - 1.5 * x)), abs=1e-6)

    def test_model_failure(self):
        def positive_only(x, parameters, jacobian):
            if parameters[0] <= 0.0:
                return None
            if jacobian is not None:
                jacobian[0] = x
            return parameters[0] * x

        x = np.linspace(1.0, 2.0, 5)
        solution = CurveFitProblem1D(positive_only, x, 0.5 * x, [3.0]).solve()
        assert solution.summary.is_solution_usable()
        assert solution.parameters[0] == pytest.approx(0.5, abs=1e-6)

        solution = CurveFitProblem1D(positive_only, x, 0.5 * x, [-1.0]).solve()
        assert not solution.summary.is_solution_usable()
        assert solution.parameters[0] == -1.0


class TestCurveFitProblem1DBuilder:
    """Test builder validation."""

    @pytest.fixture
    def complete(self):
        return CurveFitProblem1D.builder().func(linear).x([0.0, 1.0]).y([1.0, 2.0]).parameters([0.0, 0.0])

    def test_complete(self, complete):
        problem = complete.build()
        assert problem.problem.num_parameter_blocks == 2
        assert problem.problem.num_residuals == 2

    @pytest.mark.parametrize(
        "builder, kind",
        [
            (lambda: CurveFitProblem1D.builder().x([0.0]).y([0.0]).parameters([1.0]),
             CurveFitErrorKind.FUNC_MISSED),
            (lambda: CurveFitProblem1D.builder().func(linear).y([0.0]).parameters([1.0]),
             CurveFitErrorKind.X_MISSED),
            (lambda: CurveFitProblem1D.builder().func(linear).x([0.0]).parameters([1.0]),
             CurveFitErrorKind.Y_MISSED),
            (lambda: CurveFitProblem1D.builder().func(linear).x([0.0]).y([0.0]),
             CurveFitErrorKind.PARAMETERS_MISSED),
            (lambda: CurveFitProblem1D.builder().func(linear).x([0.0, 1.0]).y([0.0]).parameters([1.0]),
             CurveFitErrorKind.DATA_SIZES_DONT_MATCH),
        ],
    )
    def test_missing_or_inconsistent(self, builder, kind):
        with pytest.raises(CurveFitBuildError) as excinfo:
            builder().build()
        assert excinfo.value.kind == kind
        assert str(excinfo.value) == kind.value

    def test_inverse_error_size(self, complete):
        with pytest.raises(CurveFitBuildError) as excinfo:
            complete.inverse_error([1.0]).build()
        assert excinfo.value.kind == CurveFitErrorKind.DATA_SIZES_DONT_MATCH

    def test_lower_bounds_size(self, complete):
        with pytest.raises(CurveFitBuildError) as excinfo:
            complete.lower_bounds([0.0]).build()
        assert excinfo.value.kind == CurveFitErrorKind.LOWER_BOUNDARY_SIZE_MISMATCH

    def test_upper_bounds_size(self, complete):
        with pytest.raises(CurveFitBuildError) as excinfo:
            complete.upper_bounds([0.0, 1.0, 2.0]).build()
        assert excinfo.value.kind == CurveFitErrorKind.UPPER_BOUNDARY_SIZE_MISMATCH

    def test_constant_index_out_of_range(self, complete):
        with pytest.raises(InvalidIndexError):
            complete.constant([2]).build()
