"""Nonlinear least-squares optimizers."""

from .scipy_ba import BAProblem, BAResult, ScipyBundleAdjustment, problem_from_map

__all__ = [
    "BAProblem",
    "BAResult",
    "ScipyBundleAdjustment",
    "problem_from_map",
]
