# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Exception types raised by path-refine.

Only construction and setup failures are exceptions. Solver outcomes such as
divergence or hitting the iteration limit are reported through
:class:`path_refine.optimization.solvers.SolverState`.
"""


class PathRefineError(Exception):
    """Base class for all path-refine errors."""


class InvalidConstraint(PathRefineError, ValueError):
    """A constraint references missing or repeated poses, or carries a malformed measurement."""


class InvalidWeight(PathRefineError, ValueError):
    """An information matrix is malformed or not positive semi-definite."""


class UnderdeterminedProblem(PathRefineError):
    """The constraint graph leaves gauge freedom unpinned (no anchor reaches some poses)."""
