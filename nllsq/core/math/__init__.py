"""Math primitives for nllsq."""

from .robust import (
    trivial_loss,
    huber_loss,
    soft_l1_loss,
    cauchy_loss,
    arctan_loss,
    tolerant_loss,
    tukey_loss,
)
from .jacobians import finite_difference_jacobian, check_jacobian, relative_jacobian_error

__all__ = [
    "trivial_loss",
    "huber_loss",
    "soft_l1_loss",
    "cauchy_loss",
    "arctan_loss",
    "tolerant_loss",
    "tukey_loss",
    "finite_difference_jacobian",
    "check_jacobian",
    "relative_jacobian_error",
]
