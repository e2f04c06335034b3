"""Non-linear least squares problem: registration of residual blocks and solving.

A problem owns its parameter blocks for its whole lifetime. Residual blocks
are added through a :class:`ResidualBlockBuilder`, which captures the
problem until it is built:

    problem = NllsProblem()
    builder = problem.residual_block_builder()
    builder.set_cost(cost).set_loss(LossFunction.huber(1.0)).set_parameters([x, y])
    problem, block_id = builder.build_into_problem()
    solution = problem.solve(SolverOptions())
"""

import logging
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Tuple, Union

from ..errors import (
    AlreadyRegisteredError,
    BuilderInFlightError,
    DuplicateParameterBlockError,
    FatalBridgeError,
    MissingCostError,
    MissingParametersError,
    NoResidualBlocksError,
    ProblemStateError,
    SizeMismatchError,
    ThreadSafetyError,
    ValidationError,
)
from ..solver import engine
from ..solver.evaluator import ProgramEvaluator
from ..solver.options import SolverOptions
from ..solver.summary import SolverSummary
from .cost import CostFunction, CostFunctionType
from .loss import LossFunction
from .parameter_block import ParameterBlock, ParameterBlockOrIndex, ParameterBlockStorage
from .residual_block import ResidualBlock, ResidualBlockId

logger = logging.getLogger(__name__)


class ProblemState(Enum):
    BUILDING = "building"
    SOLVED = "solved"
    CLOSED = "closed"


@dataclass
class NllsProblemSolution:
    """Solved parameter values, one array per parameter block, and the summary."""

    parameters: List[np.ndarray]
    summary: SolverSummary


@dataclass
class ProblemEvaluation:
    """Cost, residuals and gradient of a problem at its current parameter values."""

    cost: float
    residuals: np.ndarray
    gradient: np.ndarray


def _owned_elsewhere(obj: Any, problem: "NllsProblem") -> bool:
    owner = getattr(obj, "_owner", None)
    return owner is not None and owner is not problem


class NllsProblem:
    """Non-linear least squares problem."""

    def __init__(self):
        self._storage = ParameterBlockStorage()
        self._residual_blocks: List[ResidualBlock] = []
        self._state = ProblemState.BUILDING
        self._builder: Optional["ResidualBlockBuilder"] = None
        self._solving = False

    def __enter__(self) -> "NllsProblem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"NllsProblem(state={self._state.value}, parameter_blocks={self.num_parameter_blocks}, "
            f"residual_blocks={self.num_residual_blocks})"
        )

    @property
    def state(self) -> ProblemState:
        return self._state

    def _ensure_open(self) -> None:
        if self._state == ProblemState.CLOSED:
            raise ProblemStateError("Problem is closed")
        if self._solving:
            raise ProblemStateError("Problem is being solved")

    def _ensure_structurally_mutable(self) -> None:
        self._ensure_open()
        if self._builder is not None:
            raise BuilderInFlightError()
        if self._state == ProblemState.SOLVED:
            raise ProblemStateError("Problem has been solved; adding residual blocks is not supported")

    def residual_block_builder(self) -> "ResidualBlockBuilder":
        """Capture the problem into a builder for a new residual block."""
        self._ensure_structurally_mutable()
        self._builder = ResidualBlockBuilder(self)
        return self._builder

    def add_residual_block(
        self,
        cost: Union[CostFunction, CostFunctionType],
        loss: Optional[LossFunction],
        parameters: Iterable[ParameterBlockOrIndex],
        num_residuals: Optional[int] = None,
        thread_safe: bool = False
    ) -> ResidualBlockId:
        """Build and register a residual block in one call.

        Args:
            cost: CostFunction, or a callable together with num_residuals
            loss: Loss function or None for the trivial loss
            parameters: Parameter blocks, indices of registered blocks, or value sequences
            num_residuals: Number of residuals when cost is a plain callable
            thread_safe: Thread-safety of a callable cost

        Returns:
            Identifier of the new residual block
        """
        builder = self.residual_block_builder()
        try:
            builder.set_cost(cost, num_residuals, thread_safe).set_parameters(parameters)
            if loss is not None:
                builder.set_loss(loss)
        except BaseException:
            self._builder = None
            raise
        _, block_id = builder.build_into_problem()
        return block_id

    # Parameter blocks

    @property
    def parameter_blocks(self) -> List[ParameterBlock]:
        return self._storage.blocks()

    def parameter_block(self, index: int) -> ParameterBlock:
        return self._storage.get_block(index)

    def set_parameter_block_constant(self, index: int) -> None:
        """Hold the parameter block at index fixed during solving."""
        self._ensure_open()
        self._storage.get_block(index).set_constant()

    def set_parameter_block_variable(self, index: int) -> None:
        self._ensure_open()
        self._storage.get_block(index).set_variable()

    def is_parameter_block_constant(self, index: int) -> bool:
        return self._storage.get_block(index).is_constant

    def parameter_values(self) -> List[np.ndarray]:
        """Snapshot of every parameter block, in registration order."""
        return self._storage.to_values()

    # Residual blocks

    @property
    def residual_block_ids(self) -> List[ResidualBlockId]:
        return [block.id for block in self._residual_blocks]

    @property
    def num_parameter_blocks(self) -> int:
        return len(self._storage)

    @property
    def num_parameters(self) -> int:
        return sum(block.size for block in self._storage.blocks())

    @property
    def num_residual_blocks(self) -> int:
        return len(self._residual_blocks)

    @property
    def num_residuals(self) -> int:
        return sum(block.num_residuals for block in self._residual_blocks)

    def evaluate(self) -> Optional[ProblemEvaluation]:
        """Evaluate the problem at the current parameter values.

        Residuals are ordered like the residual blocks and include the effect
        of loss functions. The gradient covers all parameters in block order;
        entries of constant blocks are zero.

        Returns:
            The evaluation, or None if a cost or loss function failed
        """
        self._ensure_open()
        blocks = self._storage.blocks()
        offsets = np.cumsum([0] + [block.size for block in blocks])
        gradient = np.zeros(int(offsets[-1]))
        residuals = []
        cost = 0.0

        with ProgramEvaluator(blocks, self._residual_blocks) as evaluator:
            x = evaluator.state_vector()
            for residual_block in self._residual_blocks:
                result = evaluator.evaluate_block(residual_block, x, need_jacobian=True)
                if not result.ok:
                    return None
                cost += result.cost
                residuals.append(result.residuals)
                for index, jacobian in zip(residual_block.parameter_indices, result.jacobians):
                    if jacobian is not None:
                        gradient[offsets[index]:offsets[index + 1]] += jacobian.T @ result.residuals

        return ProblemEvaluation(
            cost=cost,
            residuals=np.concatenate(residuals) if residuals else np.zeros(0),
            gradient=gradient,
        )

    # Solving

    def _check_solvable(self, options: SolverOptions) -> None:
        self._ensure_open()
        if self._builder is not None:
            raise BuilderInFlightError()
        if not self._residual_blocks:
            raise NoResidualBlocksError()

        options.validate()

        if options.num_threads > 1:
            unsafe = [i for i, block in enumerate(self._residual_blocks) if not block.is_thread_safe]
            if unsafe:
                raise ThreadSafetyError(
                    f"num_threads = {options.num_threads} requires thread-safe cost and loss functions, "
                    f"residual block(s) {unsafe} are not"
                )

        if options.residual_blocks_for_subset_preconditioner:
            known = set(self.residual_block_ids)
            if any(block_id not in known for block_id in options.residual_blocks_for_subset_preconditioner):
                raise ValidationError(
                    "residual_blocks_for_subset_preconditioner contains residual blocks of another problem"
                )

        for block in self._storage.blocks():
            if not block._address_is_stable():
                raise FatalBridgeError(f"Buffer of {block.name} moved while registered with the problem")

    def solve(self, options: Optional[SolverOptions] = None) -> NllsProblemSolution:
        """Solve the problem and write the solution into the parameter blocks.

        The problem remains usable: it can be solved again from the solved
        values, for example after changing which blocks are constant.

        Args:
            options: Solver options, defaults if None

        Returns:
            Solution with a snapshot of all parameter blocks and the solver summary

        Raises:
            ProblemStateError: Problem is closed, being solved, or has no residual blocks
            ValidationError: Options are invalid or callbacks are not thread safe
            FatalBridgeError: A buffer moved or a callback broke its output contract
        """
        options = options if options is not None else SolverOptions()
        self._check_solvable(options)

        logger.debug("Solving %r", self)
        self._solving = True
        try:
            summary = engine.solve(self._storage.blocks(), list(self._residual_blocks), options)
        finally:
            self._solving = False

        self._state = ProblemState.SOLVED
        if not summary.is_solution_usable():
            logger.warning("Solve finished without a usable solution: %s", summary.message)
        return NllsProblemSolution(parameters=self._storage.to_values(), summary=summary)

    def close(self) -> None:
        """Release cost and loss functions, then parameter blocks. Idempotent."""
        if self._state == ProblemState.CLOSED:
            return
        if self._solving:
            raise ProblemStateError("Problem is being solved")

        for residual_block in self._residual_blocks:
            residual_block.cost._release()
            if residual_block.loss is not None:
                residual_block.loss._release()
        for block in self._storage.blocks():
            block._release()

        self._residual_blocks = []
        self._storage.clear()
        self._builder = None
        self._state = ProblemState.CLOSED


class ResidualBlockBuilder:
    """Single-use builder of one residual block.

    Created by :meth:`NllsProblem.residual_block_builder`. Until
    :meth:`build_into_problem` returns or raises, the problem refuses other
    structural changes.
    """

    def __init__(self, problem: NllsProblem):
        self._problem = problem
        self._cost: Optional[CostFunction] = None
        self._cost_func: Optional[CostFunctionType] = None
        self._num_residuals: Optional[int] = None
        self._thread_safe = False
        self._loss: Optional[LossFunction] = None
        self._parameters: List[ParameterBlockOrIndex] = []
        self._used = False

    def set_cost(
        self,
        cost: Union[CostFunction, CostFunctionType],
        num_residuals: Optional[int] = None,
        thread_safe: bool = False
    ) -> "ResidualBlockBuilder":
        """Set the cost function.

        Args:
            cost: CostFunction, or a callable wrapped with the bound blocks' sizes
            num_residuals: Required when cost is a callable
            thread_safe: Thread-safety of a callable cost
        """
        if isinstance(cost, CostFunction):
            self._cost, self._cost_func = cost, None
        else:
            if num_residuals is None:
                raise SizeMismatchError("num_residuals is required when the cost is a plain callable")
            self._cost, self._cost_func = None, cost
            self._num_residuals = num_residuals
            self._thread_safe = thread_safe
        return self

    def set_loss(self, loss: LossFunction) -> "ResidualBlockBuilder":
        self._loss = loss
        return self

    def set_parameters(self, parameters: Iterable[ParameterBlockOrIndex]) -> "ResidualBlockBuilder":
        """Replace the parameter list with blocks, indices of registered blocks, or value sequences."""
        self._parameters = list(parameters)
        return self

    def add_parameter(self, parameter: ParameterBlockOrIndex) -> "ResidualBlockBuilder":
        self._parameters.append(parameter)
        return self

    def build_into_problem(self) -> Tuple[NllsProblem, ResidualBlockId]:
        """Register the residual block.

        Nothing is registered if an error is raised. The problem is released
        either way and the builder cannot be used again.

        Returns:
            Tuple of (problem, residual block id)
        """
        problem = self._problem
        if self._used:
            raise ProblemStateError("Residual block builder has already been used")
        try:
            residual_block = self._build(problem)
        finally:
            self._used = True
            problem._builder = None

        logger.debug("Added residual block %r with %d residuals", residual_block.id, residual_block.num_residuals)
        return problem, residual_block.id

    def _build(self, problem: NllsProblem) -> ResidualBlock:
        if self._cost is None and self._cost_func is None:
            raise MissingCostError()
        if not self._parameters:
            raise MissingParametersError()

        blocks = problem._storage.resolve(self._parameters)
        seen = set()
        for block in blocks:
            if block.block_id in seen:
                raise DuplicateParameterBlockError(f"{block.name} appears twice in one residual block")
            seen.add(block.block_id)
            if _owned_elsewhere(block, problem):
                raise AlreadyRegisteredError(f"{block.name} is already registered with another problem")

        sizes = [block.size for block in blocks]
        cost = self._cost
        if cost is None:
            cost = CostFunction(self._cost_func, self._num_residuals, sizes, thread_safe=self._thread_safe)
        cost.check_sizes(sizes)
        if _owned_elsewhere(cost, problem):
            raise AlreadyRegisteredError("Cost function is already owned by another problem")
        if self._loss is not None and _owned_elsewhere(self._loss, problem):
            raise AlreadyRegisteredError("Loss function is already owned by another problem")

        # Validation done; from here on nothing can fail
        indices = problem._storage.extend(blocks)
        for block in blocks:
            block._register(problem)
        cost._bind(problem)
        if self._loss is not None:
            self._loss._bind(problem)

        residual_block = ResidualBlock(ResidualBlockId(), cost, self._loss, tuple(indices))
        problem._residual_blocks.append(residual_block)
        return residual_block

