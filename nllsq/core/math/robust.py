"""Robust loss kernels for nonlinear least squares.

Every kernel maps a squared residual norm ``s`` to ``(rho(s), rho'(s), rho''(s))``.
The first derivative is floored at the smallest positive double so that
downstream scaling never divides by zero.
"""

import math
import numpy as np
from typing import Tuple

LossTriple = Tuple[float, float, float]

_MIN_DERIVATIVE = float(np.finfo(np.float64).tiny)
_LOG_2_POW_53 = 53.0 * math.log(2.0)


def trivial_loss(s: float) -> LossTriple:
    """Identity loss: rho(s) = s."""
    return s, 1.0, 0.0


def huber_loss(s: float, a: float) -> LossTriple:
    """Huber loss.

    rho(s) = s for s <= a^2, 2 a sqrt(s) - a^2 otherwise.

    Args:
        s: Squared residual norm
        a: Scale at which the loss becomes linear

    Returns:
        Tuple of (rho, first derivative, second derivative)
    """
    b = a * a
    if s > b:
        r = math.sqrt(s)
        rho1 = max(_MIN_DERIVATIVE, a / r)
        return 2.0 * a * r - b, rho1, -rho1 / (2.0 * s)
    return s, 1.0, 0.0


def soft_l1_loss(s: float, a: float) -> LossTriple:
    """Soft L1 loss: rho(s) = 2 a^2 (sqrt(1 + s / a^2) - 1)."""
    b = a * a
    c = 1.0 / b
    total = 1.0 + s * c
    tmp = math.sqrt(total)
    rho1 = max(_MIN_DERIVATIVE, 1.0 / tmp)
    return 2.0 * b * (tmp - 1.0), rho1, -(c * rho1) / (2.0 * total)


def cauchy_loss(s: float, a: float) -> LossTriple:
    """Cauchy loss: rho(s) = a^2 log(1 + s / a^2)."""
    b = a * a
    c = 1.0 / b
    total = 1.0 + s * c
    inv = 1.0 / total
    return b * math.log(total), max(_MIN_DERIVATIVE, inv), -c * inv * inv


def arctan_loss(s: float, a: float) -> LossTriple:
    """Arctangent loss: rho(s) = a atan(s / a)."""
    b = 1.0 / (a * a)
    total = 1.0 + s * s * b
    inv = 1.0 / total
    return a * math.atan2(s, a), max(_MIN_DERIVATIVE, inv), -2.0 * s * b * inv * inv


def tolerant_loss(s: float, a: float, b: float) -> LossTriple:
    """Tolerant loss: rho(s) = b log(1 + exp((s - a) / b)) - b log(1 + exp(-a / b)).

    Args:
        s: Squared residual norm
        a: Tolerance below which residuals are cheap
        b: Width of the transition region

    Returns:
        Tuple of (rho, first derivative, second derivative)
    """
    c = b * math.log1p(math.exp(-a / b))
    x = (s - a) / b
    # log(1 + exp(x)) == x to double precision past this point
    if x > _LOG_2_POW_53:
        return s - a - c, 1.0, 0.0
    e_x = math.exp(x)
    return (
        b * math.log1p(e_x) - c,
        max(_MIN_DERIVATIVE, e_x / (1.0 + e_x)),
        0.5 / (b * (1.0 + math.cosh(x))),
    )


def tukey_loss(s: float, a: float) -> LossTriple:
    """Tukey biweight loss, constant a^2 / 3 beyond s = a^2."""
    a_squared = a * a
    if s <= a_squared:
        value = 1.0 - s / a_squared
        value_sq = value * value
        return a_squared / 3.0 * (1.0 - value_sq * value), value_sq, -2.0 / a_squared * value
    return a_squared / 3.0, 0.0, 0.0

