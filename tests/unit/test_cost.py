"""Tests for the cost function bridge."""

import math

import numpy as np
import pytest

from nllsq.core.errors import AlreadyRegisteredError, FatalBridgeError, SizeMismatchError
from nllsq.core.problem.cost import CostFunction


def linear_cost(parameters, residuals, jacobians):
    a, b = parameters
    residuals[0] = a[0] + 2.0 * b[0] - 1.0
    residuals[1] = a[0] * b[1]
    if jacobians is not None:
        if jacobians[0] is not None:
            jacobians[0][:, 0] = [1.0, b[1]]
        if jacobians[1] is not None:
            jacobians[1][0, :] = [2.0, 0.0]
            jacobians[1][1, :] = [0.0, a[0]]
    return True


class TestCostFunctionConstruction:
    """Test size validation at construction."""

    def test_valid(self):
        cost = CostFunction(linear_cost, 2, [1, 2])
        assert cost.num_residuals == 2
        assert cost.parameter_block_sizes == (1, 2)
        assert cost.num_parameter_blocks == 2
        assert not cost.thread_safe

    @pytest.mark.parametrize("num_residuals", [0, -1, 1.5, True])
    def test_invalid_num_residuals(self, num_residuals):
        with pytest.raises(SizeMismatchError):
            CostFunction(linear_cost, num_residuals, [1])

    def test_empty_sizes(self):
        with pytest.raises(SizeMismatchError):
            CostFunction(linear_cost, 1, [])

    def test_invalid_block_size(self):
        with pytest.raises(SizeMismatchError):
            CostFunction(linear_cost, 1, [1, 0])

    def test_not_callable(self):
        with pytest.raises(TypeError):
            CostFunction(42, 1, [1])

    def test_check_sizes(self):
        cost = CostFunction(linear_cost, 2, [1, 2])
        cost.check_sizes([1, 2])
        with pytest.raises(SizeMismatchError):
            cost.check_sizes([2, 1])

    def test_bind_to_second_owner(self):
        cost = CostFunction(linear_cost, 2, [1, 2])
        owner = object()
        cost._bind(owner)
        cost._bind(owner)
        with pytest.raises(AlreadyRegisteredError):
            cost._bind(object())
        cost._release()
        cost._bind(object())


class TestCostFunctionEvaluate:
    """Test the engine-facing evaluate entry point."""

    def setup_method(self):
        self.cost = CostFunction(linear_cost, 2, [1, 2])
        self.parameters = [np.array([3.0]), np.array([1.0, 4.0])]

    def test_residuals_only(self):
        residuals = np.zeros(2)
        assert self.cost.evaluate(self.parameters, residuals)
        np.testing.assert_allclose(residuals, [4.0, 12.0])

    def test_with_jacobians(self):
        residuals = np.zeros(2)
        jacobians = [np.zeros((2, 1)), np.zeros((2, 2))]
        assert self.cost.evaluate(self.parameters, residuals, jacobians)
        np.testing.assert_allclose(jacobians[0], [[1.0], [4.0]])
        np.testing.assert_allclose(jacobians[1], [[2.0, 0.0], [0.0, 3.0]])

    def test_partial_jacobians(self):
        residuals = np.zeros(2)
        jacobians = [None, np.zeros((2, 2))]
        assert self.cost.evaluate(self.parameters, residuals, jacobians)
        np.testing.assert_allclose(jacobians[1], [[2.0, 0.0], [0.0, 3.0]])

    def test_false_result_is_evaluation_failure(self):
        cost = CostFunction(lambda p, r, j: False, 1, [1])
        assert not cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_non_finite_residual_is_evaluation_failure(self):
        def nan_cost(parameters, residuals, jacobians):
            residuals[0] = np.nan
            return True

        cost = CostFunction(nan_cost, 1, [1])
        assert not cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_non_finite_jacobian_is_evaluation_failure(self):
        def inf_jacobian(parameters, residuals, jacobians):
            residuals[0] = 1.0
            if jacobians is not None:
                jacobians[0][0, 0] = np.inf
            return True

        cost = CostFunction(inf_jacobian, 1, [1])
        assert cost.evaluate([np.array([1.0])], np.zeros(1))
        assert not cost.evaluate([np.array([1.0])], np.zeros(1), [np.zeros((1, 1))])

    def test_writing_parameters_is_fatal(self):
        def writes_parameters(parameters, residuals, jacobians):
            parameters[0][0] = 0.0
            return True

        cost = CostFunction(writes_parameters, 1, [1])
        with pytest.raises(FatalBridgeError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_out_of_range_write_is_fatal(self):
        def writes_too_much(parameters, residuals, jacobians):
            residuals[1] = 0.0
            return True

        cost = CostFunction(writes_too_much, 1, [1])
        with pytest.raises(FatalBridgeError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_non_bool_result_is_fatal(self):
        cost = CostFunction(lambda p, r, j: None, 1, [1])
        with pytest.raises(FatalBridgeError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_numpy_bool_result_accepted(self):
        cost = CostFunction(lambda p, r, j: np.bool_(True), 1, [1])
        assert cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_shape_mismatch_is_fatal(self):
        with pytest.raises(FatalBridgeError):
            self.cost.evaluate([np.array([3.0])], np.zeros(2))
        with pytest.raises(FatalBridgeError):
            self.cost.evaluate(self.parameters, np.zeros(3))
        with pytest.raises(FatalBridgeError):
            self.cost.evaluate(self.parameters, np.zeros(2), [np.zeros((2, 1)), np.zeros((2, 1))])

    def test_in_place_update_of_parameters_is_fatal(self):
        def updates_parameters(parameters, residuals, jacobians):
            block = parameters[0]
            block += 1.0
            return True

        cost = CostFunction(updates_parameters, 1, [1])
        with pytest.raises(FatalBridgeError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_wrong_shape_write_is_fatal(self):
        def writes_wrong_shape(parameters, residuals, jacobians):
            residuals[:] = [1.0, 2.0, 3.0]
            return True

        cost = CostFunction(writes_wrong_shape, 1, [1])
        with pytest.raises(FatalBridgeError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_user_value_error_propagates(self):
        def domain_error(parameters, residuals, jacobians):
            residuals[0] = math.sqrt(-1.0)
            return True

        cost = CostFunction(domain_error, 1, [1])
        with pytest.raises(ValueError, match="math domain error") as excinfo:
            cost.evaluate([np.array([1.0])], np.zeros(1))
        assert not isinstance(excinfo.value, FatalBridgeError)

    def test_user_index_error_propagates(self):
        def bad_lookup(parameters, residuals, jacobians):
            residuals[0] = [1.0][2]
            return True

        cost = CostFunction(bad_lookup, 1, [1])
        with pytest.raises(IndexError):
            cost.evaluate([np.array([1.0])], np.zeros(1))

    def test_arithmetic_on_views_gives_plain_arrays(self):
        seen = {}

        def inspects(parameters, residuals, jacobians):
            scaled = 2.0 * parameters[0]
            scaled[0] = 0.0
            seen["type"] = type(scaled)
            residuals[:] = scaled[:1]
            return True

        cost = CostFunction(inspects, 1, [2])
        residuals = np.full(1, 7.0)
        assert cost.evaluate([np.array([1.0, 2.0])], residuals)
        assert seen["type"] is np.ndarray
        np.testing.assert_array_equal(residuals, [0.0])

    def test_other_exceptions_propagate(self):
        def raises(parameters, residuals, jacobians):
            raise RuntimeError("boom")

        cost = CostFunction(raises, 1, [1])
        with pytest.raises(RuntimeError, match="boom"):
            cost.evaluate([np.array([1.0])], np.zeros(1))
