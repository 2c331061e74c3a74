# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Levenberg-Marquardt solver for trajectory refinement.

The solver iterates on a :class:`~path_refine.core.factor_graph.TrajectoryProblem`
and moves the pose estimate on the pose manifold. One iteration:

    1. take the linearization (r, J) at the current estimate;
    2. solve the damped normal equations

           (JᵀJ + λ D) δ = -Jᵀ r,     D = clamp(diag(JᵀJ))

       with a sparse factorization;
    3. form the trial estimate with ``slam.manifold.retract_state``;
    4. accept the trial if its cost is strictly lower: keep it, shrink λ,
       relinearize. Otherwise drop it, grow λ and retry from the same
       estimate.

State machine
-------------
::

    Initialized → Iterating → Converged
                            → MaxIterationsReached
                            → Diverged
                            → Cancelled

Converged
    max|Jᵀr| is within ``gradient_tolerance``; or, for
    ``convergence_window`` consecutive iterations, the relative cost decrease
    of an accepted step stayed within ``residual_tolerance`` or the step norm
    stayed within ``increment_tolerance`` (a rejected step counts only once
    some step has been accepted); or λ ran past ``max_damping``
    after at least one step had been accepted (no further progress is
    possible from the best estimate).
Diverged
    λ ran past ``max_damping`` without any accepted step, or a residual,
    Jacobian or trial cost became NaN/Inf. The last accepted estimate is kept.
MaxIterationsReached
    The iteration budget ran out. Not an error: the best estimate is kept.
Cancelled
    The caller's stop signal was raised between iterations.

All mutable solver state (estimate, λ, trial snapshot, counters, history)
lives on a :class:`SolverContext`. :func:`lm_iteration` takes one and
advances it by exactly one iteration, so a single step can be run and
inspected on its own.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field, fields
from typing import Any, Callable, List, Mapping, Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from path_refine.slam.manifold import retract_state

logger = logging.getLogger(__name__)

StopFn = Callable[[], bool]


class SolverState(enum.Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    DIVERGED = "diverged"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SolverState.INITIALIZED, SolverState.ITERATING)


@dataclass
class SolverConfig:
    max_iterations: int = 100
    initial_damping: float = 1e-4
    residual_tolerance: float = 1e-10
    increment_tolerance: float = 1e-10
    gradient_tolerance: float = 1e-10
    robust_loss_threshold: Optional[float] = None
    robust_loss: str = "huber"
    convergence_window: int = 1
    damping_increase: float = 10.0
    damping_decrease: float = 10.0
    min_damping: float = 1e-16
    max_damping: float = 1e16
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.convergence_window < 1:
            raise ValueError(f"convergence_window must be >= 1, got {self.convergence_window}")
        if not (0.0 < self.min_damping <= self.initial_damping <= self.max_damping):
            raise ValueError("damping bounds must satisfy 0 < min_damping <= initial_damping <= max_damping")
        if self.damping_increase <= 1.0 or self.damping_decrease <= 1.0:
            raise ValueError("damping_increase and damping_decrease must be > 1")
        for name in ("residual_tolerance", "increment_tolerance", "gradient_tolerance"):
            if getattr(self, name) < 0.0:
                raise ValueError(f"{name} must be >= 0")
        if not (0.0 < self.min_diagonal <= self.max_diagonal):
            raise ValueError("diagonal bounds must satisfy 0 < min_diagonal <= max_diagonal")
        if self.robust_loss_threshold is not None and self.robust_loss_threshold <= 0.0:
            raise ValueError("robust_loss_threshold must be positive when set")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "SolverConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown solver config keys: {sorted(unknown)}")
        return cls(**dict(values))


@dataclass
class IterationSummary:
    iteration: int
    cost: float        # cost at the estimate after this iteration
    trial_cost: float
    step_norm: float
    damping: float     # λ used to compute the step
    accepted: bool


@dataclass
class SolverContext:
    """Everything that changes while the solver runs."""
    positions: np.ndarray
    orientations: np.ndarray
    damping: float
    cost: float
    initial_cost: float
    linearization: Any = None
    state: SolverState = SolverState.INITIALIZED
    iteration: int = 0
    accepted_steps: int = 0
    convergence_streak: int = 0
    trial_positions: Optional[np.ndarray] = None
    trial_orientations: Optional[np.ndarray] = None
    history: List[IterationSummary] = field(default_factory=list)
    message: str = ""

    def finish(self, state: SolverState, message: str) -> None:
        self.state = state
        self.message = message
        self.trial_positions = None
        self.trial_orientations = None
        log = logger.warning if state is SolverState.DIVERGED else logger.info
        log("Solver %s after %d iterations (cost %.6e): %s", state.value, self.iteration, self.cost, message)


def initialize_context(problem, positions: np.ndarray, orientations: np.ndarray, cfg: SolverConfig) -> SolverContext:
    """Linearize at the initial estimate and enter ``Iterating`` (or ``Diverged``)."""
    positions = np.array(positions, dtype=np.float64)
    orientations = np.array(orientations, dtype=np.float64)
    lin = problem.linearize(positions, orientations)
    ctx = SolverContext(
        positions=positions,
        orientations=orientations,
        damping=cfg.initial_damping,
        cost=lin.cost,
        initial_cost=lin.cost,
        linearization=lin,
    )
    if not lin.is_finite():
        ctx.finish(SolverState.DIVERGED, "non-finite residual or Jacobian at the initial estimate")
    else:
        ctx.state = SolverState.ITERATING
    return ctx


def solve_damped_normal_equations(jacobian: sp.csr_matrix, gradient: np.ndarray, damping: float, cfg: SolverConfig) -> Optional[np.ndarray]:
    """
    Solve ``(JᵀJ + λ D) δ = -g`` with a sparse LU factorization.

    Returns None when the factorization fails or the step is not finite.
    """
    H = (jacobian.T @ jacobian).tocsc()
    D = np.clip(H.diagonal(), cfg.min_diagonal, cfg.max_diagonal)
    A = (H + sp.diags(damping * D)).tocsc()
    try:
        delta = spla.splu(A).solve(-gradient)
    except RuntimeError as exc:
        logger.debug("Damped normal equations are singular: %s", exc)
        return None
    if not np.all(np.isfinite(delta)):
        return None
    return delta


def _record_progress(ctx: SolverContext, met: bool, cfg: SolverConfig) -> None:
    ctx.convergence_streak = ctx.convergence_streak + 1 if met else 0
    if ctx.convergence_streak >= cfg.convergence_window:
        ctx.finish(SolverState.CONVERGED, "cost decrease or step norm below tolerance")


def _reject(ctx: SolverContext, cfg: SolverConfig) -> bool:
    """Grow λ after a rejected step. Returns False if the run had to stop."""
    ctx.damping *= cfg.damping_increase
    if ctx.damping > cfg.max_damping:
        if ctx.accepted_steps > 0:
            ctx.finish(SolverState.CONVERGED, "damping exceeded its bound; no further decrease possible")
        else:
            ctx.finish(SolverState.DIVERGED, "damping exceeded its bound without an accepted step")
        return False
    return True


def lm_iteration(problem, ctx: SolverContext, cfg: SolverConfig) -> SolverContext:
    """Advance ``ctx`` by one Levenberg-Marquardt iteration."""
    if ctx.state is not SolverState.ITERATING:
        raise RuntimeError(f"cannot iterate a solver in state {ctx.state.value}")

    ctx.iteration += 1
    lin = ctx.linearization
    g = lin.gradient()

    if g.size == 0 or float(np.max(np.abs(g))) <= cfg.gradient_tolerance:
        ctx.finish(SolverState.CONVERGED, "gradient below tolerance")
        return ctx

    damping = ctx.damping
    delta = solve_damped_normal_equations(lin.jacobian, g, damping, cfg)
    if delta is None:
        ctx.history.append(IterationSummary(ctx.iteration, ctx.cost, float("nan"), float("nan"), damping, False))
        logger.debug("iter %3d  linear solve failed, lambda %.3e", ctx.iteration, damping)
        _reject(ctx, cfg)
        return ctx

    step_norm = float(np.linalg.norm(delta))
    x_norm = float(np.sqrt(np.sum(ctx.positions ** 2) + np.sum(ctx.orientations ** 2)))
    small_step = step_norm <= cfg.increment_tolerance * (x_norm + cfg.increment_tolerance)

    trial_p, trial_q = retract_state(ctx.positions, ctx.orientations, delta)
    ctx.trial_positions = np.asarray(trial_p)
    ctx.trial_orientations = np.asarray(trial_q)
    trial_cost = problem.cost(ctx.trial_positions, ctx.trial_orientations)

    if not np.isfinite(trial_cost):
        ctx.history.append(IterationSummary(ctx.iteration, ctx.cost, trial_cost, step_norm, damping, False))
        ctx.finish(SolverState.DIVERGED, "non-finite cost at trial estimate")
        return ctx

    if trial_cost < ctx.cost:
        new_lin = problem.linearize(ctx.trial_positions, ctx.trial_orientations)
        if not new_lin.is_finite():
            ctx.history.append(IterationSummary(ctx.iteration, ctx.cost, trial_cost, step_norm, damping, False))
            ctx.finish(SolverState.DIVERGED, "non-finite Jacobian at trial estimate")
            return ctx

        small_decrease = (ctx.cost - trial_cost) <= cfg.residual_tolerance * ctx.cost
        ctx.positions = ctx.trial_positions
        ctx.orientations = ctx.trial_orientations
        ctx.cost = trial_cost
        ctx.linearization = new_lin
        ctx.accepted_steps += 1
        ctx.damping = max(damping / cfg.damping_decrease, cfg.min_damping)
        ctx.trial_positions = ctx.trial_orientations = None
        ctx.history.append(IterationSummary(ctx.iteration, trial_cost, trial_cost, step_norm, damping, True))
        logger.debug(
            "iter %3d  accepted  cost %.6e  |step| %.3e  lambda %.3e",
            ctx.iteration, trial_cost, step_norm, damping,
        )
        _record_progress(ctx, small_decrease or small_step, cfg)
        return ctx

    ctx.trial_positions = ctx.trial_orientations = None
    ctx.history.append(IterationSummary(ctx.iteration, ctx.cost, trial_cost, step_norm, damping, False))
    logger.debug(
        "iter %3d  rejected  trial %.6e >= %.6e  |step| %.3e  lambda %.3e",
        ctx.iteration, trial_cost, ctx.cost, step_norm, damping,
    )
    if _reject(ctx, cfg):
        # until a step is accepted only the damping bound can end the run
        _record_progress(ctx, small_step and ctx.accepted_steps > 0, cfg)
    return ctx


def run_to_completion(
    problem,
    ctx: SolverContext,
    cfg: SolverConfig,
    should_stop: Optional[StopFn] = None,
) -> SolverContext:
    """Iterate an initialized ``ctx`` until it reaches a terminal state."""
    while ctx.state is SolverState.ITERATING:
        if should_stop is not None and should_stop():
            ctx.finish(SolverState.CANCELLED, "stop requested")
            break
        if ctx.iteration >= cfg.max_iterations:
            ctx.finish(SolverState.MAX_ITERATIONS_REACHED, f"reached {cfg.max_iterations} iterations")
            break
        lm_iteration(problem, ctx, cfg)

    return ctx


def levenberg_marquardt(
    problem,
    positions: np.ndarray,
    orientations: np.ndarray,
    cfg: SolverConfig,
    should_stop: Optional[StopFn] = None,
) -> SolverContext:
    """
    Run Levenberg-Marquardt to a terminal state.

    :param problem: A :class:`~path_refine.core.factor_graph.TrajectoryProblem`.
    :param positions: (N, 3) initial positions. Not modified.
    :param orientations: (N, 4) initial quaternions. Not modified.
    :param cfg: Solver configuration.
    :param should_stop: Optional callable polled between iterations; when it
        returns True the run ends in ``Cancelled`` with the best estimate.
    :returns: The final :class:`SolverContext`.
    """
    ctx = initialize_context(problem, positions, orientations, cfg)
    return run_to_completion(problem, ctx, cfg, should_stop=should_stop)
