"""Jacobian computation utilities."""

import numpy as np
from typing import Callable, Optional, Tuple


def finite_difference_jacobian(
    func: Callable[[np.ndarray], Optional[np.ndarray]],
    x: np.ndarray,
    relative_step_size: float = 1e-6,
    method: str = "central"
) -> Optional[np.ndarray]:
    """Compute Jacobian using finite differences with per-component relative steps.

    The step for component j is ``relative_step_size * |x_j|``, or
    ``relative_step_size`` itself when x_j is zero.

    Args:
        func: Function that takes x and returns residual vector, or None on failure
        x: Input parameters
        relative_step_size: Step size relative to the magnitude of each component
        method: Finite difference method ("forward", "backward", "central")

    Returns:
        Jacobian matrix J where J[i,j] = df_i/dx_j, or None if any evaluation failed
    """
    if method not in ("forward", "backward", "central"):
        raise ValueError(f"Unknown finite difference method: {method}")

    x = np.atleast_1d(np.asarray(x, dtype=np.float64))
    f0 = func(x)
    if f0 is None:
        return None
    f0 = np.atleast_1d(f0)

    m, n = len(f0), len(x)
    J = np.zeros((m, n))

    for j in range(n):
        h = relative_step_size * abs(x[j]) if x[j] != 0.0 else relative_step_size

        if method == "forward":
            x_plus = x.copy()
            x_plus[j] += h
            f_plus = func(x_plus)
            if f_plus is None:
                return None
            J[:, j] = (f_plus - f0) / h

        elif method == "backward":
            x_minus = x.copy()
            x_minus[j] -= h
            f_minus = func(x_minus)
            if f_minus is None:
                return None
            J[:, j] = (f0 - f_minus) / h

        else:
            x_plus = x.copy()
            x_minus = x.copy()
            x_plus[j] += h
            x_minus[j] -= h
            f_plus = func(x_plus)
            f_minus = func(x_minus)
            if f_plus is None or f_minus is None:
                return None
            J[:, j] = (f_plus - f_minus) / (2 * h)

    return J


def relative_jacobian_error(
    J_analytic: np.ndarray,
    J_numeric: np.ndarray
) -> Tuple[float, np.ndarray]:
    """Compare analytic and numeric Jacobians entry by entry.

    The relative error of an entry is ``|a - n| / max(|a|, |n|)``, falling
    back to the absolute error where both entries are zero.

    Args:
        J_analytic: User supplied Jacobian
        J_numeric: Finite difference Jacobian of the same shape

    Returns:
        Tuple of (max_relative_error, relative_error_matrix)
    """
    if J_analytic.shape != J_numeric.shape:
        raise ValueError(f"Jacobian shapes differ: {J_analytic.shape} vs {J_numeric.shape}")

    error = np.abs(J_analytic - J_numeric)
    scale = np.maximum(np.abs(J_analytic), np.abs(J_numeric))
    relative_error = np.where(scale > 0, error / np.where(scale > 0, scale, 1.0), error)

    if relative_error.size == 0:
        return 0.0, relative_error

    return float(np.max(relative_error)), relative_error


def check_jacobian(
    func: Callable[[np.ndarray], Optional[np.ndarray]],
    jacobian_func: Callable[[np.ndarray], np.ndarray],
    x: np.ndarray,
    relative_step_size: float = 1e-6,
    relative_precision: float = 1e-8
) -> Tuple[bool, float, np.ndarray]:
    """Check analytic Jacobian against finite differences.

    Args:
        func: Function that computes residuals
        jacobian_func: Function that computes analytic Jacobian
        x: Input parameters
        relative_step_size: Relative finite difference step
        relative_precision: Largest acceptable relative error

    Returns:
        Tuple of (is_correct, max_error, error_matrix)
    """
    J_analytic = jacobian_func(x)
    J_numeric = finite_difference_jacobian(func, x, relative_step_size)
    if J_numeric is None:
        return False, np.inf, np.full_like(J_analytic, np.inf)

    max_error, error = relative_jacobian_error(J_analytic, J_numeric)
    return max_error <= relative_precision, max_error, error
