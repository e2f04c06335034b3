"""State shared by the trust-region and line-search minimizers."""

import logging
import time
import numpy as np
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from .evaluator import Evaluation, ProgramEvaluator
from .options import DumpFormatType, LoggingType, SolverOptions
from .summary import IterationSummary, TerminationType

logger = logging.getLogger(__name__)

DUMP_FILE_PATTERN = "nllsq_iteration_{:03d}_{}.txt"


class MinimizerAbort(Exception):
    """Stops the minimizer with a final termination type and message."""

    def __init__(self, termination_type: TerminationType, message: str):
        self.termination_type = termination_type
        self.message = message
        super().__init__(message)


@dataclass
class MinimizerOutcome:
    """What a minimizer hands back to the solve orchestrator."""

    termination_type: TerminationType
    message: str
    x: np.ndarray
    cost: float
    engine_method: str = ""


@dataclass
class IterationRecorder:
    """Bookkeeping of accepted and rejected steps.

    Keeps the best accepted point, counts steps, records iteration summaries,
    emits progress output and optionally mirrors accepted iterates into the
    parameter blocks.
    """

    options: SolverOptions
    evaluator: ProgramEvaluator
    x: np.ndarray
    cost: float
    start_time: float = field(default_factory=time.time)
    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    num_line_search_steps: int = 0
    iterations: List[IterationSummary] = field(default_factory=list)
    _last_time: float = 0.0

    def __post_init__(self):
        self.x = np.array(self.x, dtype=np.float64)
        self._last_time = self.start_time
        self._record(0, self.cost, 0.0, None, 0.0, True, 0)

    @property
    def num_iterations(self) -> int:
        return self.num_successful_steps + self.num_unsuccessful_steps

    def accept(
        self,
        x: np.ndarray,
        cost: float,
        gradient: Optional[np.ndarray] = None,
        line_search_iterations: int = 0
    ) -> None:
        """Record a successful step to x."""
        step_norm = float(np.linalg.norm(x - self.x))
        cost_change = self.cost - cost
        self.x = np.array(x, dtype=np.float64)
        self.cost = cost
        self.num_successful_steps += 1
        gradient_max_norm = float(np.max(np.abs(gradient))) if gradient is not None and gradient.size else None
        self._record(self.num_iterations, cost, cost_change, gradient_max_norm, step_norm, True,
                     line_search_iterations)

        if self.options.update_state_every_iteration:
            self.evaluator.write_state(self.x)

    def reject(self, x: np.ndarray, cost: float) -> None:
        """Record an unsuccessful step to x; the current point is kept."""
        self.num_unsuccessful_steps += 1
        step_norm = float(np.linalg.norm(x - self.x))
        cost_change = self.cost - cost if np.isfinite(cost) else -np.inf
        self._record(self.num_iterations, self.cost, cost_change, None, step_norm, False, 0)

    def _record(
        self,
        iteration: int,
        cost: float,
        cost_change: float,
        gradient_max_norm: Optional[float],
        step_norm: float,
        step_is_successful: bool,
        line_search_iterations: int
    ) -> None:
        now = time.time()
        summary = IterationSummary(
            iteration=iteration,
            cost=cost,
            cost_change=cost_change,
            gradient_max_norm=gradient_max_norm,
            step_norm=step_norm,
            step_is_successful=step_is_successful,
            line_search_iterations=line_search_iterations,
            iteration_time_in_seconds=now - self._last_time,
            cumulative_time_in_seconds=now - self.start_time,
        )
        self._last_time = now
        self.iterations.append(summary)

        if self.options.logging_type == LoggingType.PER_MINIMIZER_ITERATION:
            logger.info(
                "iter %4d cost %.6e cost_change %.3e step_norm %.3e %s",
                iteration, cost, cost_change, step_norm,
                "accepted" if step_is_successful else "rejected"
            )
        if self.options.minimizer_progress_to_stdout:
            if iteration == 0:
                print(f"{'iter':>4} {'cost':>15} {'cost_change':>12} {'|gradient|':>10} "
                      f"{'|step|':>10} {'iter_time':>9} {'total_time':>10}")
            gradient = f"{gradient_max_norm:10.2e}" if gradient_max_norm is not None else f"{'-':>10}"
            print(f"{iteration:4d} {cost:15.6e} {cost_change:12.2e} {gradient} {step_norm:10.2e} "
                  f"{summary.iteration_time_in_seconds:9.2e} {summary.cumulative_time_in_seconds:10.2e}")

    def dump(self, iteration: int, evaluation: Evaluation, x: np.ndarray) -> None:
        """Write the linearized problem J dx = -f at iteration if requested."""
        if iteration not in self.options.trust_region_minimizer_iterations_to_dump:
            return
        jacobian = evaluation.jacobian
        if jacobian is not None and not isinstance(jacobian, np.ndarray):
            jacobian = jacobian.toarray()

        if self.options.trust_region_problem_dump_format_type == DumpFormatType.CONSOLE:
            logger.info("Iteration %d A:\n%s", iteration, jacobian)
            logger.info("Iteration %d b:\n%s", iteration, -evaluation.residuals)
            logger.info("Iteration %d x:\n%s", iteration, x)
            return

        directory = Path(self.options.trust_region_problem_dump_directory)
        directory.mkdir(parents=True, exist_ok=True)
        for suffix, array in (("A", jacobian), ("b", -evaluation.residuals), ("x", x)):
            np.savetxt(directory / DUMP_FILE_PATTERN.format(iteration, suffix), np.atleast_2d(array))
        logger.debug("Dumped linearized problem of iteration %d to %s", iteration, directory)
