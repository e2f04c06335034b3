"""Tests for the solver summary."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from nllsq.core.solver.options import LineSearchDirectionType, MinimizerType
from nllsq.core.solver.summary import IterationSummary, SolverSummary, TerminationType


class TestSolverSummary:
    """Test summary values and reports."""

    def test_default_is_unusable(self):
        summary = SolverSummary()
        assert summary.termination_type == TerminationType.FAILURE
        assert not summary.is_solution_usable()

    @pytest.mark.parametrize(
        "termination_type, usable",
        [
            (TerminationType.CONVERGENCE, True),
            (TerminationType.NO_CONVERGENCE, True),
            (TerminationType.USER_SUCCESS, True),
            (TerminationType.FAILURE, False),
            (TerminationType.USER_FAILURE, False),
        ],
    )
    def test_is_solution_usable(self, termination_type, usable):
        assert SolverSummary(termination_type=termination_type).is_solution_usable() == usable

    def test_frozen(self):
        summary = SolverSummary()
        with pytest.raises(PydanticValidationError):
            summary.final_cost = 1.0

    def test_num_iterations(self):
        summary = SolverSummary(num_successful_steps=3, num_unsuccessful_steps=2)
        assert summary.num_iterations == 5

    def test_brief_report(self):
        summary = SolverSummary(
            termination_type=TerminationType.CONVERGENCE,
            initial_cost=12.5,
            final_cost=0.0,
            num_successful_steps=4,
        )
        report = summary.brief_report()
        assert report.startswith("nllsq Solver Report: Iterations: 4,")
        assert "Initial cost: 1.250000e+01" in report
        assert "Termination: CONVERGENCE" in report
        assert str(summary) == report

    def test_full_report(self):
        summary = SolverSummary(
            termination_type=TerminationType.NO_CONVERGENCE,
            message="Maximum number of iterations reached.",
            initial_cost=2.0,
            final_cost=1.0,
            fixed_cost=0.5,
            num_parameter_blocks=2,
            num_parameters=3,
            engine_method="trf/exact",
        )
        report = summary.full_report()
        assert "Parameter blocks" in report
        assert "trf/exact" in report
        assert "Fixed" in report
        assert report.endswith("Termination: NO_CONVERGENCE (Maximum number of iterations reached.)")

    def test_full_report_line_search(self):
        summary = SolverSummary(
            minimizer_type=MinimizerType.LINE_SEARCH,
            line_search_direction_type=LineSearchDirectionType.BFGS,
            num_line_search_steps=7,
        )
        report = summary.full_report()
        assert "BFGS" in report
        assert "Line search steps" in report

    def test_report_handles_infinite_cost(self):
        summary = SolverSummary(initial_cost=float("inf"))
        assert "inf" in summary.brief_report()

    def test_iterations(self):
        iterations = [IterationSummary(iteration=0, cost=2.0), IterationSummary(iteration=1, cost=1.0)]
        summary = SolverSummary(iterations=iterations)
        assert [it.cost for it in summary.iterations] == [2.0, 1.0]
        assert summary.iterations[0].step_is_successful
