"""Solver options, summary and the minimizers driving SciPy."""

from .options import SolverOptions
from .summary import IterationSummary, SolverSummary, TerminationType
from .evaluator import ProgramEvaluator
from .engine import solve

__all__ = [
    "SolverOptions",
    "IterationSummary",
    "SolverSummary",
    "TerminationType",
    "ProgramEvaluator",
    "solve",
]
