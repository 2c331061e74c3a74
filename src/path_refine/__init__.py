# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
path-refine: batch refinement of rigid-body trajectories.

A trajectory is a sequence of poses (position + unit quaternion) related by
relative-motion and absolute-anchor constraints. The refinement solves the
nonlinear least-squares problem over all constraints with a manifold-aware
Levenberg-Marquardt loop and writes the refined poses back in place.

Typical use::

    from path_refine import Trajectory, SolverConfig, refine

    traj = Trajectory()
    a = traj.add_pose([0, 0, 0], [1, 0, 0, 0])
    b = traj.add_pose([0.9, 0.1, 0], [1, 0, 0, 0])
    traj.add_anchor(a, position=[0, 0, 0], orientation=[1, 0, 0, 0])
    traj.add_relative(a, b, translation=[1, 0, 0], rotation=[1, 0, 0, 0])

    result = refine(traj, SolverConfig(max_iterations=50))
    print(result.diagnostics.state, result.diagnostics.final_cost)
"""

import jax

# Accuracy targets sit well below float32 resolution.
jax.config.update("jax_enable_x64", True)

from .core.errors import (  # noqa: E402
    PathRefineError,
    InvalidConstraint,
    InvalidWeight,
    UnderdeterminedProblem,
)
from .core.types import Pose, RelativeConstraint, AnchorConstraint, Trajectory  # noqa: E402
from .optimization.solvers import SolverConfig, SolverState  # noqa: E402
from .refinement.driver import refine, RefinementResult, Diagnostics  # noqa: E402

__all__ = [
    "PathRefineError",
    "InvalidConstraint",
    "InvalidWeight",
    "UnderdeterminedProblem",
    "Pose",
    "RelativeConstraint",
    "AnchorConstraint",
    "Trajectory",
    "SolverConfig",
    "SolverState",
    "refine",
    "RefinementResult",
    "Diagnostics",
]
