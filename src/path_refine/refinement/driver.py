# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Refinement driver: the single entry point of path-refine.

:func:`refine` takes a :class:`~path_refine.core.types.Trajectory` and a
:class:`~path_refine.optimization.solvers.SolverConfig`, then

    1. assembles the problem (validation and the gauge check happen here,
       before any pose is touched);
    2. linearizes once at the initial estimate, which both seeds the solver
       and flags weakly observed poses;
    3. runs the Levenberg-Marquardt state machine to a terminal state;
    4. writes the best estimate back into the trajectory's poses, in place.

Constraints are never modified. The returned :class:`RefinementResult`
carries the same trajectory object plus :class:`Diagnostics`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from path_refine.core.factor_graph import TrajectoryProblem
from path_refine.core.types import Trajectory
from path_refine.optimization.robust import make_loss
from path_refine.optimization.solvers import (
    IterationSummary,
    SolverConfig,
    SolverState,
    StopFn,
    initialize_context,
    run_to_completion,
)

logger = logging.getLogger(__name__)


@dataclass
class Diagnostics:
    """Outcome of one refinement run."""
    state: SolverState
    iterations: int
    accepted_steps: int
    initial_cost: float
    final_cost: float
    weakly_observed: np.ndarray
    history: List[IterationSummary] = field(default_factory=list)
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.state is SolverState.CONVERGED

    @property
    def accepted_costs(self) -> List[float]:
        """Cost after each accepted step, in order."""
        return [h.cost for h in self.history if h.accepted]


@dataclass
class RefinementResult:
    trajectory: Trajectory
    diagnostics: Diagnostics


def refine(
    trajectory: Trajectory,
    config: Optional[SolverConfig] = None,
    should_stop: Optional[StopFn] = None,
) -> RefinementResult:
    """
    Refine ``trajectory`` in place.

    :param trajectory: Poses and constraints. Poses are updated in place.
    :param config: Solver configuration; defaults to :class:`SolverConfig()`.
    :param should_stop: Optional cancellation signal polled between
        iterations, e.g. ``threading.Event().is_set``.
    :raises InvalidConstraint: if a constraint references a missing pose.
    :raises UnderdeterminedProblem: if gauge freedom is not pinned.
    :returns: The refined trajectory and run diagnostics.
    """
    cfg = config if config is not None else SolverConfig()
    loss = make_loss(cfg.robust_loss, cfg.robust_loss_threshold)
    problem = TrajectoryProblem(trajectory, loss=loss)

    logger.info(
        "Refining %d poses with %d relative and %d anchor constraints",
        problem.num_poses, problem.num_relative, problem.num_anchors,
    )

    ctx = initialize_context(problem, *trajectory.pack_state(), cfg)
    if ctx.linearization.is_finite():
        weak = problem.weakly_observed(ctx.linearization)
    else:
        weak = np.ones(problem.num_poses, dtype=bool)

    run_to_completion(problem, ctx, cfg, should_stop=should_stop)
    trajectory.unpack_state(ctx.positions, ctx.orientations)

    diagnostics = Diagnostics(
        state=ctx.state,
        iterations=ctx.iteration,
        accepted_steps=ctx.accepted_steps,
        initial_cost=ctx.initial_cost,
        final_cost=ctx.cost,
        weakly_observed=weak,
        history=ctx.history,
        message=ctx.message,
    )
    logger.info(
        "Refinement finished: %s after %d iterations (%d accepted), cost %.6e -> %.6e",
        ctx.state.value, ctx.iteration, ctx.accepted_steps, ctx.initial_cost, ctx.cost,
    )
    return RefinementResult(trajectory=trajectory, diagnostics=diagnostics)
