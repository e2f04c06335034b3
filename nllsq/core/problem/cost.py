"""Cost function bridge between user callables and the solver engine."""

import logging
import numpy as np
from typing import Any, Callable, List, Optional, Sequence

from ..errors import AlreadyRegisteredError, FatalBridgeError, SizeMismatchError

logger = logging.getLogger(__name__)

JacobianType = Optional[List[Optional[np.ndarray]]]
CostFunctionType = Callable[[List[np.ndarray], np.ndarray, JacobianType], bool]


class _ContractView(np.ndarray):
    """View handed to cost callbacks; a bad write through it is fatal.

    Arithmetic on the view returns plain arrays, so only writes into the
    solver's own buffers are checked.
    """

    def __setitem__(self, key, value):
        try:
            super().__setitem__(key, value)
        except (IndexError, ValueError) as exc:
            raise FatalBridgeError(f"Cost function violated its output contract: {exc}") from exc

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        inputs = tuple(_plain(a) for a in inputs)
        out = kwargs.get("out")
        if out is None:
            return getattr(ufunc, method)(*inputs, **kwargs)
        kwargs["out"] = tuple(_plain(a) for a in out)
        try:
            return getattr(ufunc, method)(*inputs, **kwargs)
        except ValueError as exc:
            # In-place update of a read-only or wrongly shaped view
            raise FatalBridgeError(f"Cost function violated its output contract: {exc}") from exc


def _plain(value):
    return value.view(np.ndarray) if isinstance(value, _ContractView) else value


class CostFunction:
    """Residuals and Jacobians of one residual block, computed by a user callable.

    The callable is invoked as ``func(parameters, residuals, jacobians)``:

    - ``parameters``: list of read-only 1-D arrays, one per parameter block,
      holding the values at which to evaluate.
    - ``residuals``: writable 1-D array of length ``num_residuals``.
    - ``jacobians``: None when the solver needs no derivatives. Otherwise a
      list with one entry per parameter block; the entry is None when that
      block's derivative is not requested (for example a constant block), or
      a writable ``(num_residuals, block_size)`` array where row i, column j
      is d residual_i / d parameter_j.

    It returns True on success. Returning False rejects the current step and
    lets the solver retry; it is not an error.
    """

    def __init__(
        self,
        func: CostFunctionType,
        num_residuals: int,
        parameter_block_sizes: Sequence[int],
        thread_safe: bool = False
    ):
        """Initialize cost function.

        Args:
            func: Callable computing residuals and requested Jacobians
            num_residuals: Length of the residual vector, usually the number of observations
            parameter_block_sizes: Size of each parameter block, in call order
            thread_safe: Declare that func can be called from several threads at once
        """
        if not callable(func):
            raise TypeError("Cost function must be callable")

        self.num_residuals = self._positive_int(num_residuals, "num_residuals")
        sizes = list(parameter_block_sizes)
        if not sizes:
            raise SizeMismatchError("parameter_block_sizes must not be empty")
        self.parameter_block_sizes = tuple(
            self._positive_int(size, f"parameter_block_sizes[{i}]") for i, size in enumerate(sizes)
        )
        self.thread_safe = bool(thread_safe)
        self._func = func
        self._owner: Optional[Any] = None

    @staticmethod
    def _positive_int(value: Any, what: str) -> int:
        if isinstance(value, bool) or int(value) != value or value <= 0:
            raise SizeMismatchError(f"{what} must be a positive integer, got {value!r}")
        return int(value)

    def __repr__(self) -> str:
        return (
            f"CostFunction(num_residuals={self.num_residuals}, "
            f"parameter_block_sizes={list(self.parameter_block_sizes)}, thread_safe={self.thread_safe})"
        )

    @property
    def num_parameter_blocks(self) -> int:
        return len(self.parameter_block_sizes)

    def check_sizes(self, block_sizes: Sequence[int]) -> None:
        """Raise SizeMismatchError unless block_sizes equals the declared sizes."""
        block_sizes = tuple(block_sizes)
        if block_sizes != self.parameter_block_sizes:
            raise SizeMismatchError(
                f"Parameter block sizes {list(block_sizes)} do not match the cost function's "
                f"declared sizes {list(self.parameter_block_sizes)}"
            )

    def evaluate(
        self,
        parameters: Sequence[np.ndarray],
        residuals: np.ndarray,
        jacobians: JacobianType = None
    ) -> bool:
        """Engine-facing entry point.

        Args:
            parameters: One array per parameter block
            residuals: Output array of length num_residuals
            jacobians: None, or one output array (or None) per parameter block

        Returns:
            True if residuals (and requested Jacobians) were computed and are finite
        """
        parameter_views = self._parameter_views(parameters)
        residual_view = self._residual_view(residuals)
        jacobian_views = self._jacobian_views(jacobians)

        ok = self._func(parameter_views, residual_view, jacobian_views)

        if not isinstance(ok, (bool, np.bool_)):
            raise FatalBridgeError(
                f"Cost function must return True or False, got {type(ok).__name__}"
            )
        if not ok:
            return False

        if not np.all(np.isfinite(residual_view)):
            logger.debug("Cost function produced non-finite residuals")
            return False
        if jacobian_views is not None:
            for jacobian in jacobian_views:
                if jacobian is not None and not np.all(np.isfinite(jacobian)):
                    logger.debug("Cost function produced a non-finite Jacobian")
                    return False

        return True

    def _parameter_views(self, parameters: Sequence[np.ndarray]) -> List[np.ndarray]:
        if len(parameters) != self.num_parameter_blocks:
            raise FatalBridgeError(
                f"Expected {self.num_parameter_blocks} parameter blocks, got {len(parameters)}"
            )
        views = []
        for i, (values, size) in enumerate(zip(parameters, self.parameter_block_sizes)):
            if values.shape != (size,):
                raise FatalBridgeError(
                    f"Parameter block {i} has shape {values.shape}, expected ({size},)"
                )
            view = values.view(_ContractView)
            view.flags.writeable = False
            views.append(view)
        return views

    def _residual_view(self, residuals: np.ndarray) -> np.ndarray:
        if residuals.shape != (self.num_residuals,):
            raise FatalBridgeError(
                f"Residual buffer has shape {residuals.shape}, expected ({self.num_residuals},)"
            )
        return residuals.view(_ContractView)

    def _jacobian_views(self, jacobians: JacobianType) -> JacobianType:
        if jacobians is None:
            return None
        if len(jacobians) != self.num_parameter_blocks:
            raise FatalBridgeError(
                f"Expected {self.num_parameter_blocks} Jacobian slots, got {len(jacobians)}"
            )
        views: List[Optional[np.ndarray]] = []
        for i, (jacobian, size) in enumerate(zip(jacobians, self.parameter_block_sizes)):
            if jacobian is None:
                views.append(None)
                continue
            if jacobian.shape != (self.num_residuals, size):
                raise FatalBridgeError(
                    f"Jacobian buffer {i} has shape {jacobian.shape}, "
                    f"expected ({self.num_residuals}, {size})"
                )
            views.append(jacobian.view(_ContractView))
        return views

    def _bind(self, owner: Any) -> None:
        if self._owner is not None and self._owner is not owner:
            raise AlreadyRegisteredError("Cost function is already owned by another problem")
        self._owner = owner

    def _release(self) -> None:
        self._owner = None
