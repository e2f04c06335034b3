"""Tests for loss functions and robust kernels."""

import math

import numpy as np
import pytest

from nllsq.core.errors import AlreadyRegisteredError, FatalBridgeError, InvalidLossParameterError
from nllsq.core.problem.loss import LossFunction

# Squared norms away from the kinks of the piecewise losses below (a = 1.3 -> a^2 = 1.69)
SQUARED_NORMS = [0.05, 0.4, 1.2, 2.5, 7.0]

STOCK_LOSSES = [
    LossFunction.trivial(),
    LossFunction.huber(1.3),
    LossFunction.soft_l1(1.3),
    LossFunction.cauchy(1.3),
    LossFunction.arctan(1.3),
    LossFunction.tolerant(1.0, 0.5),
    LossFunction.tukey(1.3),
]


def numeric_derivative(func, s, h=1e-6):
    step = h * max(1.0, abs(s))
    return (func(s + step) - func(s - step)) / (2.0 * step)


class TestStockLosses:
    """Test stock loss kernels."""

    @pytest.mark.parametrize("loss", STOCK_LOSSES, ids=lambda loss: loss.kind)
    @pytest.mark.parametrize("s", SQUARED_NORMS)
    def test_derivatives_match_finite_differences(self, loss, s):
        rho = loss.evaluate(s)
        rho1_numeric = numeric_derivative(lambda t: loss.evaluate(t)[0], s)
        rho2_numeric = numeric_derivative(lambda t: loss.evaluate(t)[1], s)
        np.testing.assert_allclose(rho[1], rho1_numeric, rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(rho[2], rho2_numeric, rtol=1e-4, atol=1e-7)

    @pytest.mark.parametrize("loss", STOCK_LOSSES, ids=lambda loss: loss.kind)
    def test_zero_at_origin(self, loss):
        rho = loss.evaluate(0.0)
        assert rho[0] == pytest.approx(0.0, abs=1e-12)
        assert rho[1] > 0.0

    @pytest.mark.parametrize("loss", STOCK_LOSSES, ids=lambda loss: loss.kind)
    def test_thread_safe(self, loss):
        assert loss.thread_safe
        assert not loss.is_custom

    def test_trivial_is_identity(self):
        np.testing.assert_array_equal(LossFunction.trivial().evaluate(3.0), [3.0, 1.0, 0.0])

    def test_huber_linear_region(self):
        rho = LossFunction.huber(1.0).evaluate(4.0)
        np.testing.assert_allclose(rho, [3.0, 0.5, -0.0625])

    def test_arctan_is_bounded(self):
        rho = LossFunction.arctan(2.0).evaluate(1e12)
        assert rho[0] < 2.0 * math.pi / 2.0

    def test_tukey_constant_beyond_scale(self):
        rho = LossFunction.tukey(1.0).evaluate(5.0)
        np.testing.assert_allclose(rho, [1.0 / 3.0, 0.0, 0.0])

    def test_tolerant_large_argument(self):
        rho = LossFunction.tolerant(1.0, 0.01).evaluate(100.0)
        assert np.all(np.isfinite(rho))
        assert rho[1] == 1.0

    def test_first_derivative_floored(self):
        rho = LossFunction.cauchy(1e-3).evaluate(1e300)
        assert rho[1] > 0.0

    @pytest.mark.parametrize(
        "factory",
        [
            lambda: LossFunction.huber(0.0),
            lambda: LossFunction.soft_l1(-1.0),
            lambda: LossFunction.cauchy(float("nan")),
            lambda: LossFunction.arctan(float("inf")),
            lambda: LossFunction.tolerant(-1.0, 1.0),
            lambda: LossFunction.tolerant(1.0, 0.0),
            lambda: LossFunction.tukey(-2.0),
        ],
    )
    def test_invalid_scale_rejected(self, factory):
        with pytest.raises(InvalidLossParameterError):
            factory()

    def test_tolerant_accepts_zero_tolerance(self):
        loss = LossFunction.tolerant(0.0, 1.0)
        assert loss.params == {"a": 0.0, "b": 1.0}

    def test_repr(self):
        assert repr(LossFunction.huber(2.0)) == "LossFunction.huber(a=2.0)"


class TestCustomLoss:
    """Test user supplied loss functions."""

    def test_custom_loss(self):
        loss = LossFunction.custom(lambda s: (2.0 * s, 2.0, 0.0))
        assert loss.is_custom
        assert not loss.thread_safe
        np.testing.assert_array_equal(loss.evaluate(1.5), [3.0, 2.0, 0.0])

    def test_custom_loss_thread_safe_flag(self):
        loss = LossFunction.custom(lambda s: (s, 1.0, 0.0), thread_safe=True)
        assert loss.thread_safe

    def test_wrong_arity_is_fatal(self):
        loss = LossFunction.custom(lambda s: (s, 1.0))
        with pytest.raises(FatalBridgeError):
            loss.evaluate(1.0)

    def test_non_numeric_is_fatal(self):
        loss = LossFunction.custom(lambda s: ("a", "b", "c"))
        with pytest.raises(FatalBridgeError):
            loss.evaluate(1.0)

    def test_custom_loss_errors_propagate(self):
        def log_loss(s):
            value = math.log(s)
            return value, 1.0 / s, -1.0 / (s * s)

        loss = LossFunction.custom(log_loss)
        with pytest.raises(ValueError, match="math domain error") as excinfo:
            loss.evaluate(0.0)
        assert not isinstance(excinfo.value, FatalBridgeError)

    def test_not_callable(self):
        with pytest.raises(TypeError):
            LossFunction.custom("huber")

    def test_bind_to_second_owner(self):
        loss = LossFunction.trivial()
        loss._bind("first")
        with pytest.raises(AlreadyRegisteredError):
            loss._bind("second")
