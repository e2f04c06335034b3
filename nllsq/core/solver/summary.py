"""Solver run summary and reports."""

import math
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .options import (
    LinearSolverType,
    LineSearchDirectionType,
    MinimizerType,
    TrustRegionStrategyType,
)


class TerminationType(Enum):
    """Why the minimizer stopped."""

    CONVERGENCE = "convergence"
    NO_CONVERGENCE = "no_convergence"
    FAILURE = "failure"
    USER_SUCCESS = "user_success"
    USER_FAILURE = "user_failure"


_USABLE = (TerminationType.CONVERGENCE, TerminationType.NO_CONVERGENCE, TerminationType.USER_SUCCESS)


class IterationSummary(BaseModel):
    """State of the minimizer after one iteration."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    cost: float
    cost_change: float = 0.0
    gradient_max_norm: Optional[float] = None
    step_norm: float = 0.0
    step_is_successful: bool = True
    line_search_iterations: int = 0
    iteration_time_in_seconds: float = 0.0
    cumulative_time_in_seconds: float = 0.0


class SolverSummary(BaseModel):
    """Outcome of a solve. Populated once by the solver and read-only afterwards."""

    model_config = ConfigDict(frozen=True)

    minimizer_type: MinimizerType = MinimizerType.TRUST_REGION
    trust_region_strategy_type: Optional[TrustRegionStrategyType] = None
    line_search_direction_type: Optional[LineSearchDirectionType] = None
    linear_solver_type_given: LinearSolverType = LinearSolverType.DENSE_QR
    engine_method: str = Field(default="", description="Engine routine used, e.g. 'trf/exact'")

    termination_type: TerminationType = TerminationType.FAILURE
    message: str = "nllsq::Solve was not called."

    initial_cost: float = -1.0
    final_cost: float = -1.0
    fixed_cost: float = 0.0

    num_successful_steps: int = 0
    num_unsuccessful_steps: int = 0
    num_inner_iteration_steps: int = 0
    num_line_search_steps: int = 0

    num_parameter_blocks: int = 0
    num_parameters: int = 0
    num_residual_blocks: int = 0
    num_residuals: int = 0
    num_parameter_blocks_reduced: int = 0
    num_parameters_reduced: int = 0
    num_residual_blocks_reduced: int = 0
    num_residuals_reduced: int = 0
    is_constrained: bool = False

    num_threads_given: int = 1
    num_threads_used: int = 1

    num_residual_evaluations: int = 0
    num_jacobian_evaluations: int = 0
    residual_evaluation_time_in_seconds: float = 0.0
    jacobian_evaluation_time_in_seconds: float = 0.0
    preprocessor_time_in_seconds: float = 0.0
    minimizer_time_in_seconds: float = 0.0
    postprocessor_time_in_seconds: float = 0.0
    total_time_in_seconds: float = 0.0

    iterations: List[IterationSummary] = Field(default_factory=list)

    def is_solution_usable(self) -> bool:
        """Check if the parameter values after the solve can be used."""
        return self.termination_type in _USABLE

    @property
    def num_iterations(self) -> int:
        return self.num_successful_steps + self.num_unsuccessful_steps

    def brief_report(self) -> str:
        """One line report."""
        return (
            f"nllsq Solver Report: Iterations: {self.num_iterations}, "
            f"Initial cost: {_sci(self.initial_cost)}, Final cost: {_sci(self.final_cost)}, "
            f"Termination: {self.termination_type.name}"
        )

    def full_report(self) -> str:
        """Multi-line report of problem sizes, settings, costs and timings."""
        lines = ["Solver Summary", ""]
        lines.append(_row("", "Original", "Reduced"))
        lines.append(_row("Parameter blocks", self.num_parameter_blocks, self.num_parameter_blocks_reduced))
        lines.append(_row("Parameters", self.num_parameters, self.num_parameters_reduced))
        lines.append(_row("Residual blocks", self.num_residual_blocks, self.num_residual_blocks_reduced))
        lines.append(_row("Residuals", self.num_residuals, self.num_residuals_reduced))
        lines.append("")

        lines.append(_row("Minimizer", self.minimizer_type.name))
        if self.trust_region_strategy_type is not None:
            lines.append(_row("Trust region strategy", self.trust_region_strategy_type.name))
        if self.line_search_direction_type is not None:
            lines.append(_row("Line search direction", self.line_search_direction_type.name))
        if self.engine_method:
            lines.append(_row("Engine", self.engine_method))
        lines.append(_row("Bounds constrained", "Yes" if self.is_constrained else "No"))
        lines.append("")

        lines.append(_row("", "Given", "Used"))
        lines.append(_row("Linear solver", self.linear_solver_type_given.name, self.linear_solver_type_given.name))
        lines.append(_row("Threads", self.num_threads_given, self.num_threads_used))
        lines.append("")

        lines.append("Cost:")
        lines.append(_row("Initial", _sci(self.initial_cost)))
        if self.termination_type != TerminationType.FAILURE:
            lines.append(_row("Final", _sci(self.final_cost)))
            lines.append(_row("Change", _sci(self.initial_cost - self.final_cost)))
        if self.fixed_cost:
            lines.append(_row("Fixed", _sci(self.fixed_cost)))
        lines.append("")

        lines.append(_row("Minimizer iterations", self.num_iterations))
        lines.append(_row("Successful steps", self.num_successful_steps))
        lines.append(_row("Unsuccessful steps", self.num_unsuccessful_steps))
        if self.minimizer_type == MinimizerType.LINE_SEARCH:
            lines.append(_row("Line search steps", self.num_line_search_steps))
        lines.append("")

        lines.append("Time (in seconds):")
        lines.append(_row("Preprocessor", f"{self.preprocessor_time_in_seconds:.6f}"))
        lines.append(_row("  Residual only evaluation", f"{self.residual_evaluation_time_in_seconds:.6f}"
                          f" ({self.num_residual_evaluations})"))
        lines.append(_row("  Jacobian & residual evaluation", f"{self.jacobian_evaluation_time_in_seconds:.6f}"
                          f" ({self.num_jacobian_evaluations})"))
        lines.append(_row("Minimizer", f"{self.minimizer_time_in_seconds:.6f}"))
        lines.append(_row("Postprocessor", f"{self.postprocessor_time_in_seconds:.6f}"))
        lines.append(_row("Total", f"{self.total_time_in_seconds:.6f}"))
        lines.append("")

        lines.append(f"Termination: {self.termination_type.name} ({self.message})")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.brief_report()


def _sci(value: float) -> str:
    if math.isnan(value) or math.isinf(value):
        return str(value)
    return f"{value:e}"


def _row(label: str, first, second=None) -> str:
    if second is None:
        return f"{label:<34}{str(first):>22}"
    return f"{label:<34}{str(first):>22}{str(second):>22}"
