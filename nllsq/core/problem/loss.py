"""Loss functions applied to the squared norm of a residual block.

A loss function reduces the influence of outliers. There are two flavours:
stock kernels with one or two scale parameters, and custom callables.
"""

import math
import numpy as np
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import AlreadyRegisteredError, FatalBridgeError, InvalidLossParameterError
from ..math import robust

LossFunctionType = Callable[[float], Tuple[float, float, float]]


class LossFunction:
    """Transformation rho(s) of a residual block's squared norm s.

    Use the class methods to create instances. ``evaluate(s)`` returns
    ``[rho(s), rho'(s), rho''(s)]``.
    """

    def __init__(
        self,
        kernel: LossFunctionType,
        kind: str,
        params: Optional[Dict[str, float]] = None,
        thread_safe: bool = True
    ):
        self._kernel = kernel
        self.kind = kind
        self.params = dict(params or {})
        self.thread_safe = bool(thread_safe)
        self._owner: Optional[Any] = None

    def __repr__(self) -> str:
        params = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"LossFunction.{self.kind}({params})"

    @property
    def is_custom(self) -> bool:
        return self.kind == "custom"

    @staticmethod
    def _check_scale(name: str, value: float, allow_zero: bool = False) -> float:
        value = float(value)
        ok = value >= 0.0 if allow_zero else value > 0.0
        if not (ok and math.isfinite(value)):
            bound = ">= 0" if allow_zero else "> 0"
            raise InvalidLossParameterError(f"Loss parameter {name} must be finite and {bound}, got {value}")
        return value

    @classmethod
    def trivial(cls) -> "LossFunction":
        """Identity loss, rho(s) = s."""
        return cls(robust.trivial_loss, "trivial")

    @classmethod
    def huber(cls, a: float) -> "LossFunction":
        """Huber loss, quadratic up to residual norm a and linear beyond."""
        a = cls._check_scale("a", a)
        return cls(partial(robust.huber_loss, a=a), "huber", {"a": a})

    @classmethod
    def soft_l1(cls, a: float) -> "LossFunction":
        """Smooth approximation of the L1 loss."""
        a = cls._check_scale("a", a)
        return cls(partial(robust.soft_l1_loss, a=a), "soft_l1", {"a": a})

    @classmethod
    def cauchy(cls, a: float) -> "LossFunction":
        """log(1 + s) style loss."""
        a = cls._check_scale("a", a)
        return cls(partial(robust.cauchy_loss, a=a), "cauchy", {"a": a})

    @classmethod
    def arctan(cls, a: float) -> "LossFunction":
        """Arctangent loss, bounded by a * pi / 2."""
        a = cls._check_scale("a", a)
        return cls(partial(robust.arctan_loss, a=a), "arctan", {"a": a})

    @classmethod
    def tolerant(cls, a: float, b: float) -> "LossFunction":
        """Tolerant loss, cheap below a with a transition of width b."""
        a = cls._check_scale("a", a, allow_zero=True)
        b = cls._check_scale("b", b)
        return cls(partial(robust.tolerant_loss, a=a, b=b), "tolerant", {"a": a, "b": b})

    @classmethod
    def tukey(cls, a: float) -> "LossFunction":
        """Tukey biweight loss, constant beyond residual norm a."""
        a = cls._check_scale("a", a)
        return cls(partial(robust.tukey_loss, a=a), "tukey", {"a": a})

    @classmethod
    def custom(cls, func: LossFunctionType, thread_safe: bool = False) -> "LossFunction":
        """Wrap a callable ``func(sq_norm) -> (rho, rho1, rho2)``.

        Args:
            func: Callable returning the loss value and its first two derivatives
            thread_safe: Declare that func can be called from several threads at once
        """
        if not callable(func):
            raise TypeError("Loss function must be callable")
        return cls(func, "custom", thread_safe=thread_safe)

    def evaluate(self, sq_norm: float) -> np.ndarray:
        """Evaluate the loss and its derivatives at a squared norm.

        Args:
            sq_norm: Non-negative squared residual norm

        Returns:
            Array [rho, rho', rho'']
        """
        result = self._kernel(float(sq_norm))
        try:
            out = np.asarray(result, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise FatalBridgeError(f"{self!r} did not return three numbers: {exc}") from exc

        if out.shape != (3,):
            raise FatalBridgeError(f"{self!r} must return three numbers, got shape {out.shape}")
        return out

    def _bind(self, owner: Any) -> None:
        if self._owner is not None and self._owner is not owner:
            raise AlreadyRegisteredError("Loss function is already owned by another problem")
        self._owner = owner

    def _release(self) -> None:
        self._owner = None
