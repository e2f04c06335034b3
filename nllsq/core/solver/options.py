"""Solver configuration.

Option names and defaults mirror the reference Ceres-style option set.
Options are plain fields; nothing is checked on assignment. ``validate()``
runs the whole rule set and is called by ``NllsProblem.solve`` before any
engine work starts.
"""

import json
import math
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..problem.residual_block import ResidualBlockId


class MinimizerType(Enum):
    LINE_SEARCH = "line_search"
    TRUST_REGION = "trust_region"


class LineSearchDirectionType(Enum):
    STEEPEST_DESCENT = "steepest_descent"
    NONLINEAR_CONJUGATE_GRADIENT = "nonlinear_conjugate_gradient"
    LBFGS = "lbfgs"
    BFGS = "bfgs"


class LineSearchType(Enum):
    ARMIJO = "armijo"
    WOLFE = "wolfe"


class NonlinearConjugateGradientType(Enum):
    FLETCHER_REEVES = "fletcher_reeves"
    POLAK_RIBIERE = "polak_ribiere"
    HESTENES_STIEFEL = "hestenes_stiefel"


class LineSearchInterpolationType(Enum):
    BISECTION = "bisection"
    QUADRATIC = "quadratic"
    CUBIC = "cubic"


class TrustRegionStrategyType(Enum):
    LEVENBERG_MARQUARDT = "levenberg_marquardt"
    DOGLEG = "dogleg"


class DoglegType(Enum):
    TRADITIONAL_DOGLEG = "traditional_dogleg"
    SUBSPACE_DOGLEG = "subspace_dogleg"


class LinearSolverType(Enum):
    DENSE_NORMAL_CHOLESKY = "dense_normal_cholesky"
    DENSE_QR = "dense_qr"
    SPARSE_NORMAL_CHOLESKY = "sparse_normal_cholesky"
    DENSE_SCHUR = "dense_schur"
    SPARSE_SCHUR = "sparse_schur"
    ITERATIVE_SCHUR = "iterative_schur"
    CGNR = "cgnr"

    @property
    def is_dense(self) -> bool:
        return self in (
            LinearSolverType.DENSE_NORMAL_CHOLESKY,
            LinearSolverType.DENSE_QR,
            LinearSolverType.DENSE_SCHUR,
        )

    @property
    def is_iterative(self) -> bool:
        return self in (LinearSolverType.ITERATIVE_SCHUR, LinearSolverType.CGNR)


class PreconditionerType(Enum):
    IDENTITY = "identity"
    JACOBI = "jacobi"
    SCHUR_JACOBI = "schur_jacobi"
    CLUSTER_JACOBI = "cluster_jacobi"
    CLUSTER_TRIDIAGONAL = "cluster_tridiagonal"
    SUBSET = "subset"


class VisibilityClusteringType(Enum):
    CANONICAL_VIEWS = "canonical_views"
    SINGLE_LINKAGE = "single_linkage"


class DenseLinearAlgebraLibraryType(Enum):
    EIGEN = "eigen"
    LAPACK = "lapack"
    CUDA = "cuda"


class SparseLinearAlgebraLibraryType(Enum):
    SUITE_SPARSE = "suite_sparse"
    CX_SPARSE = "cx_sparse"
    EIGEN_SPARSE = "eigen_sparse"
    ACCELERATE_SPARSE = "accelerate_sparse"
    NO_SPARSE = "no_sparse"


class LoggingType(Enum):
    SILENT = "silent"
    PER_MINIMIZER_ITERATION = "per_minimizer_iteration"


class DumpFormatType(Enum):
    CONSOLE = "console"
    TEXTFILE = "textfile"


# Dense backends served by the engine; CUDA is not.
AVAILABLE_DENSE_LIBRARIES = (DenseLinearAlgebraLibraryType.EIGEN, DenseLinearAlgebraLibraryType.LAPACK)

_CGNR_PRECONDITIONERS = (
    PreconditionerType.IDENTITY,
    PreconditionerType.JACOBI,
    PreconditionerType.SUBSET,
)
_ITERATIVE_SCHUR_PRECONDITIONERS = (
    PreconditionerType.IDENTITY,
    PreconditionerType.JACOBI,
    PreconditionerType.SCHUR_JACOBI,
    PreconditionerType.CLUSTER_JACOBI,
    PreconditionerType.CLUSTER_TRIDIAGONAL,
)


@dataclass
class SolverOptions:
    """Options for the solver."""

    __pydantic_config__ = ConfigDict(arbitrary_types_allowed=True)

    minimizer_type: MinimizerType = MinimizerType.TRUST_REGION

    # Line search
    line_search_direction_type: LineSearchDirectionType = LineSearchDirectionType.LBFGS
    line_search_type: LineSearchType = LineSearchType.WOLFE
    nonlinear_conjugate_gradient_type: NonlinearConjugateGradientType = (
        NonlinearConjugateGradientType.FLETCHER_REEVES
    )
    max_lbfgs_rank: int = 20
    use_approximate_eigenvalue_bfgs_scaling: bool = False
    line_search_interpolation_type: LineSearchInterpolationType = LineSearchInterpolationType.CUBIC
    min_line_search_step_size: float = 1e-9
    line_search_sufficient_function_decrease: float = 1e-4
    max_line_search_step_contraction: float = 1e-3
    min_line_search_step_contraction: float = 0.6
    max_num_line_search_step_size_iterations: int = 20
    max_num_line_search_direction_restarts: int = 5
    line_search_sufficient_curvature_decrease: float = 0.9
    max_line_search_step_expansion: float = 10.0

    # Trust region
    trust_region_strategy_type: TrustRegionStrategyType = TrustRegionStrategyType.LEVENBERG_MARQUARDT
    dogleg_type: DoglegType = DoglegType.TRADITIONAL_DOGLEG
    use_nonmonotonic_steps: bool = False
    max_consecutive_nonmonotonic_steps: int = 5
    initial_trust_region_radius: float = 1e4
    max_trust_region_radius: float = 1e16
    min_trust_region_radius: float = 1e-32
    min_relative_decrease: float = 1e-3
    min_lm_diagonal: float = 1e-6
    max_lm_diagonal: float = 1e32
    max_num_consecutive_invalid_steps: int = 5

    # Budget
    max_num_iterations: int = 50
    max_solver_time_in_seconds: float = 1e9
    num_threads: int = 1

    # Convergence
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8

    # Linear algebra
    linear_solver_type: LinearSolverType = LinearSolverType.DENSE_QR
    preconditioner_type: PreconditionerType = PreconditionerType.JACOBI
    visibility_clustering_type: VisibilityClusteringType = VisibilityClusteringType.CANONICAL_VIEWS
    residual_blocks_for_subset_preconditioner: List[ResidualBlockId] = field(default_factory=list)
    dense_linear_algebra_library_type: DenseLinearAlgebraLibraryType = DenseLinearAlgebraLibraryType.EIGEN
    sparse_linear_algebra_library_type: SparseLinearAlgebraLibraryType = (
        SparseLinearAlgebraLibraryType.SUITE_SPARSE
    )

    # Reporting
    logging_type: LoggingType = LoggingType.SILENT
    minimizer_progress_to_stdout: bool = False
    trust_region_minimizer_iterations_to_dump: List[int] = field(default_factory=list)
    trust_region_problem_dump_directory: str = "/tmp"
    trust_region_problem_dump_format_type: DumpFormatType = DumpFormatType.TEXTFILE

    # Gradient checking
    check_gradients: bool = False
    gradient_check_relative_precision: float = 1e-8
    gradient_check_numeric_derivative_relative_step_size: float = 1e-6

    update_state_every_iteration: bool = False

    def validation_message(self) -> Optional[str]:
        """Run the validation rules.

        Returns:
            None if the options are valid, else a message for the first violated rule
        """
        # Line search rules apply to every minimizer type
        for check in (_common_errors, _trust_region_errors, _line_search_errors):
            if check is _trust_region_errors and self.minimizer_type != MinimizerType.TRUST_REGION:
                continue
            message = next((m for m in check(self) if m is not None), None)
            if message is not None:
                return message
        return None

    def validate(self) -> None:
        """Raise ValidationError if the options are invalid."""
        message = self.validation_message()
        if message is not None:
            raise ValidationError(message)

    def is_valid(self) -> bool:
        return self.validation_message() is None

    def to_dict(self) -> Dict[str, Any]:
        """Serializable dict; residual block handles are left out."""
        data = asdict(self)
        data.pop("residual_blocks_for_subset_preconditioner")
        return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SolverOptions":
        """Create options from a mapping, coercing strings to enums and numbers.

        Enum fields accept either the value ("dense_qr") or the member name ("DENSE_QR").
        Unknown keys and values of the wrong type raise ValidationError.
        """
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise ValidationError(f"Unknown option(s): {', '.join(unknown)}")

        normalized = {}
        for key, value in data.items():
            field_type = known[key].type
            if isinstance(value, str) and isinstance(field_type, type) and issubclass(field_type, Enum):
                if value in field_type.__members__:
                    value = field_type[value]
            normalized[key] = value

        try:
            return _options_adapter().validate_python(normalized)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "SolverOptions":
        """Load options from a JSON file holding an object of option values."""
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValidationError(f"{path}: expected a JSON object")
        return cls.from_dict(data)


_adapter: Optional[TypeAdapter] = None


def _options_adapter() -> TypeAdapter:
    global _adapter
    if _adapter is None:
        _adapter = TypeAdapter(SolverOptions)
    return _adapter


def _ge(options: SolverOptions, name: str, bound: float) -> Optional[str]:
    value = getattr(options, name)
    if not value >= bound:
        return f"{name} = {value} violates constraint {name} >= {bound}"
    return None


def _gt(options: SolverOptions, name: str, bound: float) -> Optional[str]:
    value = getattr(options, name)
    if not value > bound:
        return f"{name} = {value} violates constraint {name} > {bound}"
    return None


def _lt(options: SolverOptions, name: str, bound: float) -> Optional[str]:
    value = getattr(options, name)
    if not value < bound:
        return f"{name} = {value} violates constraint {name} < {bound}"
    return None


def _le(options: SolverOptions, name: str, bound: float) -> Optional[str]:
    value = getattr(options, name)
    if not value <= bound:
        return f"{name} = {value} violates constraint {name} <= {bound}"
    return None


def _le_option(options: SolverOptions, name: str, other: str, strict: bool = False) -> Optional[str]:
    value = getattr(options, name)
    other_value = getattr(options, other)
    ok = value < other_value if strict else value <= other_value
    if not ok:
        op = "<" if strict else "<="
        return f"{name} = {value} violates constraint {name} {op} {other} = {other_value}"
    return None


def _common_errors(options: SolverOptions):
    yield _ge(options, "max_num_iterations", 0)
    yield _ge(options, "max_solver_time_in_seconds", 0.0)
    yield _ge(options, "function_tolerance", 0.0)
    yield _ge(options, "gradient_tolerance", 0.0)
    yield _ge(options, "parameter_tolerance", 0.0)
    yield _gt(options, "num_threads", 0)
    if options.check_gradients:
        yield _gt(options, "gradient_check_relative_precision", 0.0)
        yield _gt(options, "gradient_check_numeric_derivative_relative_step_size", 0.0)
    for name in ("max_solver_time_in_seconds", "function_tolerance", "gradient_tolerance", "parameter_tolerance"):
        if math.isnan(getattr(options, name)):
            yield f"{name} must not be NaN"


def _trust_region_errors(options: SolverOptions):
    yield _gt(options, "initial_trust_region_radius", 0.0)
    yield _gt(options, "min_trust_region_radius", 0.0)
    yield _gt(options, "max_trust_region_radius", 0.0)
    yield _le_option(options, "min_trust_region_radius", "max_trust_region_radius")
    yield _le_option(options, "min_trust_region_radius", "initial_trust_region_radius")
    yield _le_option(options, "initial_trust_region_radius", "max_trust_region_radius")
    yield _ge(options, "min_relative_decrease", 0.0)
    yield _ge(options, "min_lm_diagonal", 0.0)
    yield _ge(options, "max_lm_diagonal", 0.0)
    yield _le_option(options, "min_lm_diagonal", "max_lm_diagonal")
    yield _ge(options, "max_num_consecutive_invalid_steps", 0)
    if options.use_nonmonotonic_steps:
        yield _gt(options, "max_consecutive_nonmonotonic_steps", 0)

    solver = options.linear_solver_type
    if solver.is_dense and options.dense_linear_algebra_library_type not in AVAILABLE_DENSE_LIBRARIES:
        yield (
            f"Can't use {solver.name} with dense_linear_algebra_library_type = "
            f"{options.dense_linear_algebra_library_type.name} because support was not enabled"
        )
    no_sparse = options.sparse_linear_algebra_library_type == SparseLinearAlgebraLibraryType.NO_SPARSE
    if solver in (LinearSolverType.SPARSE_NORMAL_CHOLESKY, LinearSolverType.SPARSE_SCHUR) and no_sparse:
        yield f"Can't use {solver.name} as sparse_linear_algebra_library_type is NO_SPARSE"

    if options.trust_region_strategy_type == TrustRegionStrategyType.DOGLEG and solver.is_iterative:
        yield (
            "DOGLEG only supports exact factorization based linear solvers. If you want to use "
            "an iterative solver please use LEVENBERG_MARQUARDT as the trust_region_strategy_type"
        )

    preconditioner = options.preconditioner_type
    if solver == LinearSolverType.CGNR and preconditioner not in _CGNR_PRECONDITIONERS:
        yield f"Can't use CGNR with preconditioner_type = {preconditioner.name}"
    if solver == LinearSolverType.ITERATIVE_SCHUR and preconditioner not in _ITERATIVE_SCHUR_PRECONDITIONERS:
        yield f"Can't use ITERATIVE_SCHUR with preconditioner_type = {preconditioner.name}"
    if solver.is_iterative and preconditioner == PreconditionerType.SUBSET:
        if not options.residual_blocks_for_subset_preconditioner:
            yield "When using SUBSET preconditioner, residual_blocks_for_subset_preconditioner cannot be empty"
        if no_sparse:
            yield "Can't use SUBSET preconditioner as sparse_linear_algebra_library_type is NO_SPARSE"

    if (
        options.trust_region_minimizer_iterations_to_dump
        and options.trust_region_problem_dump_format_type != DumpFormatType.CONSOLE
        and not options.trust_region_problem_dump_directory
    ):
        yield "trust_region_problem_dump_directory is empty"


def _line_search_errors(options: SolverOptions):
    yield _gt(options, "max_lbfgs_rank", 0)
    yield _gt(options, "min_line_search_step_size", 0.0)
    yield _gt(options, "max_line_search_step_contraction", 0.0)
    yield _lt(options, "max_line_search_step_contraction", 1.0)
    yield _le_option(
        options, "max_line_search_step_contraction", "min_line_search_step_contraction", strict=True
    )
    yield _le(options, "min_line_search_step_contraction", 1.0)
    yield _gt(options, "max_num_line_search_step_size_iterations", 0)
    yield _ge(options, "max_num_line_search_direction_restarts", 0)
    yield _gt(options, "line_search_sufficient_function_decrease", 0.0)
    yield _le_option(
        options,
        "line_search_sufficient_function_decrease",
        "line_search_sufficient_curvature_decrease",
        strict=True,
    )
    yield _lt(options, "line_search_sufficient_curvature_decrease", 1.0)
    yield _gt(options, "max_line_search_step_expansion", 1.0)

    quasi_newton = (LineSearchDirectionType.BFGS, LineSearchDirectionType.LBFGS)
    if options.line_search_direction_type in quasi_newton and options.line_search_type != LineSearchType.WOLFE:
        yield (
            f"line_search_type = {options.line_search_type.name}: when using "
            f"{options.line_search_direction_type.name}, line_search_type must be WOLFE"
        )
