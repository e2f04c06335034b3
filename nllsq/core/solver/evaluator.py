"""Evaluation of a problem's residual blocks at a packed state vector.

The evaluator is the boundary between the solver engine, which works on a
flat vector of free parameters, and the user callbacks, which see one view
per parameter block. Constant parameter blocks are read straight from their
owned buffers; free blocks are views into the engine's state vector, so user
buffers are only written when the solver decides to.
"""

import logging
import time
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from scipy.sparse import coo_matrix, csr_matrix

from ..errors import FatalBridgeError
from ..problem.parameter_block import ParameterBlock
from ..problem.residual_block import ResidualBlock

logger = logging.getLogger(__name__)

JacobianMatrix = Union[np.ndarray, csr_matrix]


class SolverTimeout(Exception):
    """Raised inside the engine when the time budget is exhausted."""


@dataclass
class Evaluation:
    """Result of evaluating every active residual block at one state vector."""

    ok: bool
    cost: float
    residuals: np.ndarray
    jacobian: Optional[JacobianMatrix] = None

    def gradient(self) -> np.ndarray:
        if self.jacobian is None:
            raise ValueError("Evaluation has no Jacobian")
        return np.asarray(self.jacobian.T @ self.residuals).ravel()


@dataclass
class _BlockResult:
    ok: bool
    cost: float = 0.0
    residuals: Optional[np.ndarray] = None
    jacobians: Optional[List[Optional[np.ndarray]]] = None


class ProgramEvaluator:
    """Evaluates residuals, robustified cost and Jacobian of a problem."""

    def __init__(
        self,
        parameter_blocks: List[ParameterBlock],
        residual_blocks: List[ResidualBlock],
        num_threads: int = 1,
        sparse: bool = False
    ):
        """Initialize evaluator.

        Args:
            parameter_blocks: All parameter blocks of the problem, indexed by residual blocks
            residual_blocks: All residual blocks of the problem
            num_threads: Number of threads used to evaluate residual blocks
            sparse: Build Jacobians as scipy.sparse CSR matrices
        """
        self.parameter_blocks = parameter_blocks
        self.block_numbers = {residual_block.id: i for i, residual_block in enumerate(residual_blocks)}
        self.sparse = sparse
        self.num_threads = num_threads
        self.deadline: Optional[float] = None

        # Free parameters, in block order
        self.column_offsets: Dict[int, int] = {}
        offset = 0
        for index, block in enumerate(parameter_blocks):
            if not block.is_constant:
                self.column_offsets[index] = offset
                offset += block.size
        self.num_parameters = offset

        # Residual blocks touching only constant parameters do not change during the solve
        self.active_blocks: List[ResidualBlock] = []
        self.fixed_blocks: List[ResidualBlock] = []
        for residual_block in residual_blocks:
            if any(i in self.column_offsets for i in residual_block.parameter_indices):
                self.active_blocks.append(residual_block)
            else:
                self.fixed_blocks.append(residual_block)

        self.row_offsets: List[int] = []
        offset = 0
        for residual_block in self.active_blocks:
            self.row_offsets.append(offset)
            offset += residual_block.num_residuals
        self.num_residuals = offset

        self.num_residual_evaluations = 0
        self.num_jacobian_evaluations = 0
        self.residual_evaluation_time = 0.0
        self.jacobian_evaluation_time = 0.0

        self._executor: Optional[ThreadPoolExecutor] = None
        if num_threads > 1 and len(self.active_blocks) > 1:
            self._executor = ThreadPoolExecutor(max_workers=num_threads, thread_name_prefix="nllsq-eval")

    def __enter__(self) -> "ProgramEvaluator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Shut down worker threads; waits for running callbacks to return."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    @property
    def num_threads_used(self) -> int:
        return self.num_threads if self._executor is not None else 1

    @property
    def free_blocks(self) -> List[ParameterBlock]:
        return [self.parameter_blocks[i] for i in self.column_offsets]

    def state_vector(self) -> np.ndarray:
        """Current values of the free parameter blocks, packed."""
        if not self.column_offsets:
            return np.zeros(0)
        return np.concatenate([block.values() for block in self.free_blocks])

    def write_state(self, x: np.ndarray) -> None:
        """Copy a packed state into the free parameter blocks' buffers."""
        for index, offset in self.column_offsets.items():
            block = self.parameter_blocks[index]
            block._assign(x[offset:offset + block.size])

    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Lower and upper bounds of the packed state."""
        if not self.column_offsets:
            return np.zeros(0), np.zeros(0)
        lower, upper = zip(*(block.bound_arrays() for block in self.free_blocks))
        return np.concatenate(lower), np.concatenate(upper)

    def is_constrained(self) -> bool:
        lower, upper = self.bounds()
        return bool(np.any(np.isfinite(lower)) or np.any(np.isfinite(upper)))

    def parameter_views(self, residual_block: ResidualBlock, x: np.ndarray) -> List[np.ndarray]:
        views = []
        for index in residual_block.parameter_indices:
            block = self.parameter_blocks[index]
            offset = self.column_offsets.get(index)
            if offset is None:
                views.append(block.readonly_view())
            else:
                view = x[offset:offset + block.size]
                view.flags.writeable = False
                views.append(view)
        return views

    def evaluate_block(
        self,
        residual_block: ResidualBlock,
        x: np.ndarray,
        need_jacobian: bool
    ) -> _BlockResult:
        try:
            return self._evaluate_block(residual_block, x, need_jacobian)
        except FatalBridgeError as exc:
            if exc.residual_block is not None:
                raise
            raise FatalBridgeError(str(exc), residual_block=self.block_numbers[residual_block.id]) from exc

    def _evaluate_block(
        self,
        residual_block: ResidualBlock,
        x: np.ndarray,
        need_jacobian: bool
    ) -> _BlockResult:
        m = residual_block.num_residuals
        residuals = np.zeros(m)
        jacobians = None
        if need_jacobian:
            jacobians = [
                np.zeros((m, self.parameter_blocks[i].size)) if i in self.column_offsets else None
                for i in residual_block.parameter_indices
            ]

        parameters = self.parameter_views(residual_block, x)
        if not residual_block.cost.evaluate(parameters, residuals, jacobians):
            return _BlockResult(ok=False)

        sq_norm = float(residuals @ residuals)
        if residual_block.loss is None:
            return _BlockResult(ok=True, cost=0.5 * sq_norm, residuals=residuals, jacobians=jacobians)

        rho = residual_block.loss.evaluate(sq_norm)
        if not np.all(np.isfinite(rho)) or rho[0] < 0.0:
            logger.debug("Loss function returned %s for squared norm %g", rho, sq_norm)
            return _BlockResult(ok=False)

        scale, radial = _robust_scaling(sq_norm, rho)
        if jacobians is not None:
            for k, jacobian in enumerate(jacobians):
                if jacobian is None:
                    continue
                corrected = scale * jacobian
                if radial != 0.0:
                    corrected += radial * np.outer(residuals, residuals @ jacobian)
                jacobians[k] = corrected
        return _BlockResult(ok=True, cost=0.5 * rho[0], residuals=scale * residuals, jacobians=jacobians)

    def _evaluate_blocks(
        self,
        blocks: List[ResidualBlock],
        x: np.ndarray,
        need_jacobian: bool
    ) -> List[_BlockResult]:
        if self._executor is None or blocks is not self.active_blocks:
            return [self.evaluate_block(block, x, need_jacobian) for block in blocks]
        futures = [self._executor.submit(self.evaluate_block, block, x, need_jacobian) for block in blocks]
        # result() re-raises callback exceptions in the calling thread
        return [future.result() for future in futures]

    def check_deadline(self) -> None:
        if self.deadline is not None and time.time() > self.deadline:
            raise SolverTimeout()

    def evaluate(self, x: np.ndarray, need_jacobian: bool = False) -> Evaluation:
        """Evaluate all active residual blocks.

        Args:
            x: Packed free parameters
            need_jacobian: Also compute the Jacobian of the robustified residuals

        Returns:
            Evaluation; on callback failure ok is False, cost is inf and residuals are NaN
        """
        self.check_deadline()
        start = time.time()

        x = np.array(x, dtype=np.float64)
        results = self._evaluate_blocks(self.active_blocks, x, need_jacobian)

        if need_jacobian:
            self.num_jacobian_evaluations += 1
        else:
            self.num_residual_evaluations += 1

        try:
            if not all(result.ok for result in results):
                return Evaluation(ok=False, cost=np.inf, residuals=np.full(self.num_residuals, np.nan))

            residuals = np.concatenate([r.residuals for r in results]) if results else np.zeros(0)
            cost = float(sum(r.cost for r in results))
            jacobian = self._assemble_jacobian(results) if need_jacobian else None
            return Evaluation(ok=True, cost=cost, residuals=residuals, jacobian=jacobian)
        finally:
            elapsed = time.time() - start
            if need_jacobian:
                self.jacobian_evaluation_time += elapsed
            else:
                self.residual_evaluation_time += elapsed

    def fixed_cost(self) -> Optional[float]:
        """Cost of residual blocks that depend only on constant parameters.

        Returns:
            The cost, or None if any of those blocks failed to evaluate
        """
        results = self._evaluate_blocks(self.fixed_blocks, np.zeros(0), False)
        if not all(result.ok for result in results):
            return None
        return float(sum(r.cost for r in results))

    def _assemble_jacobian(self, results: List[_BlockResult]) -> JacobianMatrix:
        shape = (self.num_residuals, self.num_parameters)
        if not self.sparse:
            jacobian = np.zeros(shape)
            for residual_block, row, result in zip(self.active_blocks, self.row_offsets, results):
                m = residual_block.num_residuals
                for index, block_jacobian in zip(residual_block.parameter_indices, result.jacobians):
                    if block_jacobian is None:
                        continue
                    col = self.column_offsets[index]
                    jacobian[row:row + m, col:col + block_jacobian.shape[1]] = block_jacobian
            return jacobian

        rows, cols, data = [], [], []
        for residual_block, row, result in zip(self.active_blocks, self.row_offsets, results):
            m = residual_block.num_residuals
            for index, block_jacobian in zip(residual_block.parameter_indices, result.jacobians):
                if block_jacobian is None:
                    continue
                n = block_jacobian.shape[1]
                col = self.column_offsets[index]
                rows.append(np.repeat(np.arange(row, row + m), n))
                cols.append(np.tile(np.arange(col, col + n), m))
                data.append(block_jacobian.ravel())
        if not data:
            return csr_matrix(shape)
        return coo_matrix(
            (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))), shape=shape
        ).tocsr()


def _robust_scaling(sq_norm: float, rho: np.ndarray) -> Tuple[float, float]:
    """Coefficients mapping a residual block onto its robustified form.

    The block's residual r becomes f = g(s) r with g(s) = sqrt(rho(s) / s), so
    that |f|^2 = rho(s). Its Jacobian is g J + (2 g'(s)) r r^T J.

    Returns:
        Tuple of (g, 2 g'(s))
    """
    rho0, rho1 = float(rho[0]), float(rho[1])
    if sq_norm == 0.0:
        return np.sqrt(rho1), 0.0
    scale = np.sqrt(rho0 / sq_norm)
    if scale == 0.0:
        return 0.0, 0.0
    return scale, (rho1 - rho0 / sq_norm) / (sq_norm * scale)
