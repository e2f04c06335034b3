"""Parameter blocks and the arena that stores them for a problem."""

import itertools
import numpy as np
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from ..errors import (
    AlreadyRegisteredError,
    InvalidBoundError,
    InvalidIndexError,
    SizeMismatchError,
)

_block_ids = itertools.count()


class ParameterBlock:
    """Fixed-size vector of decision variables.

    The block owns a contiguous float64 buffer. While the block is registered
    with a problem, the solver keeps views into that buffer, so the buffer is
    never reallocated; solved values are written into it in place.
    """

    def __init__(self, values: Sequence[float], name: Optional[str] = None):
        """Create a parameter block.

        Args:
            values: Initial values, at least one
            name: Optional human readable name
        """
        self._values = self._make_buffer(values)
        self.block_id = next(_block_ids)
        self.name = name if name is not None else f"block_{self.block_id}"
        self._lower = np.full(self.size, -np.inf)
        self._upper = np.full(self.size, np.inf)
        self._has_lower = False
        self._has_upper = False
        self._constant = False
        self._owner: Optional[Any] = None
        self._registered_address: Optional[int] = None

    @staticmethod
    def _make_buffer(values: Sequence[float]) -> np.ndarray:
        buffer = np.array(values, dtype=np.float64).ravel()
        if buffer.size == 0:
            raise SizeMismatchError("ParameterBlock must hold at least one value")
        return buffer

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return f"ParameterBlock(name={self.name!r}, size={self.size}, constant={self._constant})"

    @property
    def size(self) -> int:
        """Number of parameters."""
        return int(self._values.size)

    @property
    def address(self) -> int:
        """Address of the first element of the owned buffer."""
        return int(self._values.ctypes.data)

    @property
    def is_registered(self) -> bool:
        """Check if the block is bound to a problem."""
        return self._owner is not None

    @property
    def is_constant(self) -> bool:
        return self._constant

    def values(self) -> np.ndarray:
        """Snapshot of the current values."""
        return self._values.copy()

    def readonly_view(self) -> np.ndarray:
        """View of the owned buffer that cannot be written through."""
        view = self._values.view()
        view.flags.writeable = False
        return view

    def resize(self, values: Sequence[float]) -> None:
        """Replace the buffer with new values of any size.

        Bounds are reset. Only allowed while the block is not registered.
        """
        if self.is_registered:
            raise AlreadyRegisteredError(
                f"Cannot resize {self.name}: buffer is shared with a problem"
            )
        self._values = self._make_buffer(values)
        self._lower = np.full(self.size, -np.inf)
        self._upper = np.full(self.size, np.inf)
        self._has_lower = False
        self._has_upper = False

    def set_constant(self) -> None:
        """Hold the block fixed during optimization."""
        self._constant = True

    def set_variable(self) -> None:
        """Let the solver optimize the block."""
        self._constant = False

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self.size:
            raise InvalidIndexError(index, self.size, what=f"component of {self.name}")

    def set_bounds(self, index: int, lower: Optional[float], upper: Optional[float]) -> None:
        """Set bounds of a single component. None means unbounded.

        Args:
            index: Component index
            lower: Lower bound or None
            upper: Upper bound or None
        """
        self._check_index(index)
        lo = -np.inf if lower is None else float(lower)
        hi = np.inf if upper is None else float(upper)
        if lo > hi:
            raise InvalidBoundError(index, lo, hi)

        self._lower[index] = lo
        self._upper[index] = hi
        self._has_lower = self._has_lower or lower is not None
        self._has_upper = self._has_upper or upper is not None

    def set_lower_bounds(self, lower_bounds: Sequence[Optional[float]]) -> None:
        """Set lower bounds of all components. None entries mean no lower bound."""
        lower = self._bounds_array(lower_bounds, -np.inf)
        self._check_ordering(lower, self._upper)
        self._lower = lower
        self._has_lower = True

    def set_upper_bounds(self, upper_bounds: Sequence[Optional[float]]) -> None:
        """Set upper bounds of all components. None entries mean no upper bound."""
        upper = self._bounds_array(upper_bounds, np.inf)
        self._check_ordering(self._lower, upper)
        self._upper = upper
        self._has_upper = True

    def set_all_lower_bounds(self, lower_bounds: Sequence[float]) -> None:
        self.set_lower_bounds([float(v) for v in lower_bounds])

    def set_all_upper_bounds(self, upper_bounds: Sequence[float]) -> None:
        self.set_upper_bounds([float(v) for v in upper_bounds])

    def _bounds_array(self, bounds: Sequence[Optional[float]], missing: float) -> np.ndarray:
        bounds = list(bounds)
        if len(bounds) != self.size:
            raise SizeMismatchError(
                f"{self.name}: bounds size {len(bounds)} != block size {self.size}"
            )
        return np.array([missing if b is None else float(b) for b in bounds], dtype=np.float64)

    @staticmethod
    def _check_ordering(lower: np.ndarray, upper: np.ndarray) -> None:
        crossed = np.nonzero(lower > upper)[0]
        if crossed.size:
            i = int(crossed[0])
            raise InvalidBoundError(i, float(lower[i]), float(upper[i]))

    def lower_bounds(self) -> Optional[List[Optional[float]]]:
        """Lower bounds, if any were set. None entries mean no lower bound."""
        if not self._has_lower:
            return None
        return [None if np.isneginf(v) else float(v) for v in self._lower]

    def upper_bounds(self) -> Optional[List[Optional[float]]]:
        """Upper bounds, if any were set. None entries mean no upper bound."""
        if not self._has_upper:
            return None
        return [None if np.isposinf(v) else float(v) for v in self._upper]

    def bound_arrays(self) -> tuple:
        """Lower and upper bounds as arrays with infinities for missing bounds."""
        return self._lower.copy(), self._upper.copy()

    @property
    def has_bounds(self) -> bool:
        return bool(np.any(np.isfinite(self._lower)) or np.any(np.isfinite(self._upper)))

    def _register(self, owner: Any) -> None:
        if self._owner is not None and self._owner is not owner:
            raise AlreadyRegisteredError(f"{self.name} is already registered with another problem")
        self._owner = owner
        self._registered_address = self.address

    def _release(self) -> None:
        self._owner = None
        self._registered_address = None

    def _address_is_stable(self) -> bool:
        return self._registered_address is None or self._registered_address == self.address

    def _assign(self, values: np.ndarray) -> None:
        """Write solved values into the owned buffer in place."""
        np.copyto(self._values, values)


ParameterBlockOrIndex = Union[ParameterBlock, int, Sequence[float]]


class ParameterBlockStorage:
    """Arena of parameter blocks referenced by index from residual blocks."""

    def __init__(self):
        self._storage: List[ParameterBlock] = []
        self._index_by_id: Dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._storage)

    def resolve(self, items: Iterable[ParameterBlockOrIndex]) -> List[ParameterBlock]:
        """Turn blocks, indices and raw value sequences into blocks without storing them.

        Args:
            items: ParameterBlock instances, indices of stored blocks, or value sequences

        Returns:
            Resolved parameter blocks, in order
        """
        blocks = []
        for item in items:
            if isinstance(item, ParameterBlock):
                blocks.append(item)
            elif isinstance(item, (int, np.integer)) and not isinstance(item, bool):
                blocks.append(self.get_block(int(item)))
            else:
                blocks.append(ParameterBlock(item))
        return blocks

    def extend(self, items: Iterable[ParameterBlockOrIndex]) -> List[int]:
        """Store new blocks and return the indices of all given items."""
        indices = []
        for block in self.resolve(items):
            index = self._index_by_id.get(block.block_id)
            if index is None:
                index = len(self._storage)
                self._storage.append(block)
                self._index_by_id[block.block_id] = index
            indices.append(index)
        return indices

    def contains(self, block: ParameterBlock) -> bool:
        return block.block_id in self._index_by_id

    def index_of(self, block: ParameterBlock) -> int:
        if block.block_id not in self._index_by_id:
            raise ValueError(f"{block.name} is not stored")
        return self._index_by_id[block.block_id]

    def get_block(self, index: int) -> ParameterBlock:
        if not 0 <= index < len(self._storage):
            raise InvalidIndexError(index, len(self._storage))
        return self._storage[index]

    def blocks(self) -> List[ParameterBlock]:
        return list(self._storage)

    def to_values(self) -> List[np.ndarray]:
        """Snapshot of every stored block, in insertion order."""
        return [block.values() for block in self._storage]

    def clear(self) -> None:
        self._storage = []
        self._index_by_id = {}
