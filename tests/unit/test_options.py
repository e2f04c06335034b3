"""Tests for solver options validation and loading."""

import json

import pytest

from nllsq.core.errors import ValidationError
from nllsq.core.problem.residual_block import ResidualBlockId
from nllsq.core.solver.options import (
    DenseLinearAlgebraLibraryType,
    DoglegType,
    DumpFormatType,
    LinearSolverType,
    LineSearchDirectionType,
    LineSearchType,
    MinimizerType,
    PreconditionerType,
    SolverOptions,
    SparseLinearAlgebraLibraryType,
    TrustRegionStrategyType,
)


class TestSolverOptionsDefaults:
    """Test default option values."""

    def test_defaults_are_valid(self):
        options = SolverOptions()
        assert options.is_valid()
        assert options.validation_message() is None
        options.validate()

    def test_default_values(self):
        options = SolverOptions()
        assert options.minimizer_type == MinimizerType.TRUST_REGION
        assert options.trust_region_strategy_type == TrustRegionStrategyType.LEVENBERG_MARQUARDT
        assert options.linear_solver_type == LinearSolverType.DENSE_QR
        assert options.max_num_iterations == 50
        assert options.function_tolerance == 1e-6
        assert options.gradient_tolerance == 1e-10
        assert options.parameter_tolerance == 1e-8
        assert options.num_threads == 1
        assert options.residual_blocks_for_subset_preconditioner == []

    def test_default_lists_not_shared(self):
        a, b = SolverOptions(), SolverOptions()
        a.trust_region_minimizer_iterations_to_dump.append(1)
        assert b.trust_region_minimizer_iterations_to_dump == []


class TestSolverOptionsValidation:
    """Test the validation rules."""

    def test_negative_iterations(self):
        options = SolverOptions(max_num_iterations=-1)
        assert not options.is_valid()
        with pytest.raises(ValidationError) as excinfo:
            options.validate()
        assert "max_num_iterations" in excinfo.value.message
        assert "max_num_iterations" in str(excinfo.value)

    @pytest.mark.parametrize(
        "field, value",
        [
            ("function_tolerance", -1.0),
            ("gradient_tolerance", -1e-3),
            ("parameter_tolerance", -1.0),
            ("max_solver_time_in_seconds", -1.0),
            ("num_threads", 0),
            ("function_tolerance", float("nan")),
        ],
    )
    def test_common_rules(self, field, value):
        options = SolverOptions(**{field: value})
        message = options.validation_message()
        assert message is not None
        assert field in message

    def test_gradient_check_rules_only_when_enabled(self):
        options = SolverOptions(gradient_check_relative_precision=0.0)
        assert options.is_valid()
        options.check_gradients = True
        assert not options.is_valid()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"initial_trust_region_radius": 0.0},
            {"min_trust_region_radius": 1e5, "initial_trust_region_radius": 1e4},
            {"initial_trust_region_radius": 1e17},
            {"min_lm_diagonal": 1.0, "max_lm_diagonal": 0.5},
            {"min_relative_decrease": -0.1},
            {"max_num_consecutive_invalid_steps": -1},
            {"use_nonmonotonic_steps": True, "max_consecutive_nonmonotonic_steps": 0},
        ],
    )
    def test_trust_region_rules(self, overrides):
        assert not SolverOptions(**overrides).is_valid()

    def test_trust_region_rules_skipped_for_line_search(self):
        options = SolverOptions(minimizer_type=MinimizerType.LINE_SEARCH, initial_trust_region_radius=0.0)
        assert options.is_valid()

    def test_dogleg_requires_exact_solver(self):
        options = SolverOptions(
            trust_region_strategy_type=TrustRegionStrategyType.DOGLEG,
            linear_solver_type=LinearSolverType.CGNR,
        )
        assert "DOGLEG" in options.validation_message()

    def test_sparse_solver_requires_sparse_library(self):
        options = SolverOptions(
            linear_solver_type=LinearSolverType.SPARSE_NORMAL_CHOLESKY,
            sparse_linear_algebra_library_type=SparseLinearAlgebraLibraryType.NO_SPARSE,
        )
        assert "NO_SPARSE" in options.validation_message()

    def test_cuda_dense_library_unavailable(self):
        options = SolverOptions(dense_linear_algebra_library_type=DenseLinearAlgebraLibraryType.CUDA)
        assert "CUDA" in options.validation_message()

    def test_cgnr_preconditioner(self):
        options = SolverOptions(
            linear_solver_type=LinearSolverType.CGNR,
            preconditioner_type=PreconditionerType.SCHUR_JACOBI,
        )
        assert "CGNR" in options.validation_message()

    def test_subset_preconditioner_needs_residual_blocks(self):
        options = SolverOptions(
            linear_solver_type=LinearSolverType.CGNR,
            preconditioner_type=PreconditionerType.SUBSET,
        )
        assert not options.is_valid()
        options.residual_blocks_for_subset_preconditioner = [ResidualBlockId()]
        assert options.is_valid()

    def test_dump_directory_required_for_textfile(self):
        options = SolverOptions(trust_region_minimizer_iterations_to_dump=[0], trust_region_problem_dump_directory="")
        assert not options.is_valid()
        options.trust_region_problem_dump_format_type = DumpFormatType.CONSOLE
        assert options.is_valid()

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_lbfgs_rank": 0},
            {"min_line_search_step_size": 0.0},
            {"max_line_search_step_contraction": 1.0},
            {"max_line_search_step_contraction": 0.7, "min_line_search_step_contraction": 0.6},
            {"max_num_line_search_step_size_iterations": 0},
            {"line_search_sufficient_function_decrease": 0.95},
            {"line_search_sufficient_curvature_decrease": 1.0},
            {"max_line_search_step_expansion": 1.0},
        ],
    )
    def test_line_search_rules(self, overrides):
        options = SolverOptions(minimizer_type=MinimizerType.LINE_SEARCH, **overrides)
        assert not options.is_valid()

    def test_quasi_newton_requires_wolfe(self):
        options = SolverOptions(
            minimizer_type=MinimizerType.LINE_SEARCH,
            line_search_direction_type=LineSearchDirectionType.LBFGS,
            line_search_type=LineSearchType.ARMIJO,
        )
        assert "WOLFE" in options.validation_message()
        options.line_search_direction_type = LineSearchDirectionType.STEEPEST_DESCENT
        assert options.is_valid()

    def test_first_violation_reported(self):
        options = SolverOptions(max_num_iterations=-1, num_threads=0)
        assert options.validation_message().startswith("max_num_iterations")


class TestSolverOptionsLoading:
    """Test mapping and JSON loading."""

    def test_from_dict_coerces_enums(self):
        options = SolverOptions.from_dict({
            "linear_solver_type": "DENSE_NORMAL_CHOLESKY",
            "dogleg_type": "subspace_dogleg",
            "max_num_iterations": "100",
        })
        assert options.linear_solver_type == LinearSolverType.DENSE_NORMAL_CHOLESKY
        assert options.dogleg_type == DoglegType.SUBSPACE_DOGLEG
        assert options.max_num_iterations == 100

    def test_from_dict_unknown_key(self):
        with pytest.raises(ValidationError, match="Unknown option"):
            SolverOptions.from_dict({"max_iterations": 10})

    def test_from_dict_bad_value(self):
        with pytest.raises(ValidationError):
            SolverOptions.from_dict({"linear_solver_type": "gaussian_elimination"})

    def test_from_dict_does_not_range_check(self):
        options = SolverOptions.from_dict({"max_num_iterations": -5})
        assert not options.is_valid()

    def test_to_dict_round_trip(self):
        options = SolverOptions(linear_solver_type=LinearSolverType.CGNR, max_num_iterations=7)
        data = options.to_dict()
        assert data["linear_solver_type"] == "cgnr"
        assert "residual_blocks_for_subset_preconditioner" not in data
        assert SolverOptions.from_dict(data) == options

    def test_from_json(self, tmp_path):
        path = tmp_path / "options.json"
        path.write_text(json.dumps({"minimizer_type": "line_search", "num_threads": 4}))
        options = SolverOptions.from_json(path)
        assert options.minimizer_type == MinimizerType.LINE_SEARCH
        assert options.num_threads == 4

    def test_from_json_requires_object(self, tmp_path):
        path = tmp_path / "options.json"
        path.write_text("[1, 2, 3]")
        with pytest.raises(ValidationError):
            SolverOptions.from_json(path)
