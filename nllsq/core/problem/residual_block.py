"""Residual-block related structures."""

import itertools
from dataclasses import dataclass
from typing import Optional, Tuple

from .cost import CostFunction
from .loss import LossFunction

_residual_block_tokens = itertools.count()


class ResidualBlockId:
    """Opaque handle of a registered residual block.

    Handles compare equal only to themselves and can be used as dict keys.
    """

    __slots__ = ("_token",)

    def __init__(self):
        self._token = next(_residual_block_tokens)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResidualBlockId):
            return NotImplemented
        return self._token == other._token

    def __hash__(self) -> int:
        return hash(("ResidualBlockId", self._token))

    def __repr__(self) -> str:
        return f"ResidualBlockId({self._token})"


@dataclass(frozen=True)
class ResidualBlock:
    """Immutable record of one residual term of a problem."""

    id: ResidualBlockId
    cost: CostFunction
    loss: Optional[LossFunction]
    parameter_indices: Tuple[int, ...]

    @property
    def num_residuals(self) -> int:
        return self.cost.num_residuals

    @property
    def is_thread_safe(self) -> bool:
        """Check if every callback of the block may run concurrently."""
        loss_ok = self.loss is None or self.loss.thread_safe
        return self.cost.thread_safe and loss_ok
