# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Problem assembly for trajectory refinement.

:class:`TrajectoryProblem` turns a :class:`~path_refine.core.types.Trajectory`
into the stacked least-squares system the solver iterates on.

Layout
------
Columns
    6 per pose, in pose-index order: ``[δp (3), δθ (3)]`` tangent parameters
    (see ``slam.manifold``).
Rows
    6 per constraint. All relative constraints come first, then all
    anchors, each group in the order it appears in the trajectory.

Block structure
---------------
The Jacobian is stored as a ``scipy.sparse`` CSR matrix assembled from dense
6x6 blocks:

    • a relative constraint (i, j) contributes two blocks on its rows, in the
      column blocks of pose i and pose j;
    • an anchor on pose k contributes one block, in column block k.

Nothing else is ever non-zero, so the normal matrix ``JᵀJ`` stays
block-sparse with the sparsity of the constraint graph.

Constraint data is packed once into stacked arrays at construction time;
:meth:`TrajectoryProblem.linearize` and :meth:`TrajectoryProblem.cost` only
take the current pose values, so the same problem object is reused for every
solver iteration.

Checks performed at construction
--------------------------------
• every constraint references an existing pose (``InvalidConstraint``);
• the anchors of every connected component of the constraint graph fix
  both its position and its orientation, otherwise the component can be
  moved rigidly without changing any residual (``UnderdeterminedProblem``).

Poses without any constraint are not rejected here; they show up as weakly
observed in :meth:`TrajectoryProblem.weakly_observed`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import jax.numpy as jnp
import numpy as np
import scipy.sparse as sp

from .errors import UnderdeterminedProblem
from .math3d import hat, to_rotation_matrix
from .types import Trajectory
from path_refine.optimization.jit_wrappers import JittedLinearization
from path_refine.optimization.robust import TrivialLoss
from path_refine.slam.manifold import TANGENT_DIM, build_manifold_metadata
from path_refine.slam.measurements import sqrt_information

logger = logging.getLogger(__name__)

RESIDUAL_DIM = 6
_RANK_TOL = 1e-9
_GAUGE_TOL = 1e-12


def _anchor_gauge_information(anchor, origin: np.ndarray) -> np.ndarray:
    """
    Information an anchor carries about a rigid motion of its whole component.

    Translating the component by ``t`` and rotating it by ``ω`` about
    ``origin`` moves the anchored pose by ``δp = t - hat(p - origin) ω`` and
    ``δθ = ω``. Near the measurement the anchor residual then changes by
    ``A [t, ω]`` with ``A = [[I, -hat(p - origin)], [0, Rᵀ]]``; the returned
    matrix is ``Aᵀ Ω A``.
    """
    arm = anchor.measured_position - origin
    R = np.asarray(to_rotation_matrix(jnp.asarray(anchor.measured_orientation)))
    A = np.zeros((TANGENT_DIM, TANGENT_DIM))
    A[:3, :3] = np.eye(3)
    A[:3, 3:] = -np.asarray(hat(jnp.asarray(arm)))
    A[3:, 3:] = R.T
    return A.T @ anchor.full_information @ A


def _pins_rigid_motion(anchors: List) -> bool:
    located = [a.measured_position for a in anchors if a.position is not None]
    origin = located[0] if located else np.zeros(3)
    info = sum(_anchor_gauge_information(a, origin) for a in anchors)
    eig = np.linalg.eigvalsh(0.5 * (info + info.T))
    return bool(eig[0] > _GAUGE_TOL * max(1.0, eig[-1]))


def find_unpinned_components(trajectory: Trajectory) -> List[List[int]]:
    """
    Connected components (by relative constraints) whose anchors leave a
    rigid motion of the component unconstrained.

    A component is pinned when its anchors together fix all six directions
    of a rigid motion: a single full anchor does, and so do a position
    anchor and an orientation anchor on different poses, or position anchors
    on three non-collinear poses. A lone position anchor leaves rotation
    about the anchored point free; orientation anchors alone leave
    translation free.

    Poses that no constraint references at all are skipped; they are weakly
    observed rather than a gauge problem.
    """
    n = len(trajectory.poses)
    parent = list(range(n))

    def find(a: int) -> int:
        while parent[a] != a:
            parent[a] = parent[parent[a]]
            a = parent[a]
        return a

    touched = set()
    for c in trajectory.relative_constraints:
        ra, rb = find(c.from_index), find(c.to_index)
        if ra != rb:
            parent[ra] = rb
        touched.update(c.pose_indices)

    anchors: Dict[int, List] = {}
    for a in trajectory.anchor_constraints:
        anchors.setdefault(find(a.pose_index), []).append(a)
        touched.add(a.pose_index)

    components: Dict[int, List[int]] = {}
    for idx in sorted(touched):
        components.setdefault(find(idx), []).append(idx)

    return [
        members
        for root, members in components.items()
        if root not in anchors or not _pins_rigid_motion(anchors[root])
    ]


def check_gauge(trajectory: Trajectory) -> None:
    """Raise :class:`UnderdeterminedProblem` if gauge freedom is left unpinned."""
    if trajectory.constraints and not trajectory.anchor_constraints:
        raise UnderdeterminedProblem(
            "trajectory has no anchor constraint; the whole path can be moved rigidly"
        )
    unpinned = find_unpinned_components(trajectory)
    if unpinned:
        sizes = ", ".join(f"{len(c)} poses starting at {c[0]}" for c in unpinned)
        raise UnderdeterminedProblem(
            f"anchors do not fix both position and orientation of components: {sizes}"
        )


def _block_coo(row_starts: np.ndarray, col_starts: np.ndarray, blocks: np.ndarray):
    """Expand (B,) row/col block origins and (B,6,6) blocks into COO triplets."""
    offs = np.arange(TANGENT_DIM)
    rows = row_starts[:, None, None] + offs[None, :, None]
    cols = col_starts[:, None, None] + offs[None, None, :]
    rows, cols = np.broadcast_arrays(rows, cols)
    return rows.ravel(), cols.ravel(), blocks.ravel()


@dataclass
class Linearization:
    """Residual vector and sparse Jacobian at one pose estimate."""
    residual: np.ndarray          # (R,) robustly weighted
    jacobian: sp.csr_matrix       # (R, 6N)
    cost: float                   # Σ ρ(‖r_k‖²)
    constraint_costs: np.ndarray  # ρ(‖r_k‖²), trajectory constraint order

    def gradient(self) -> np.ndarray:
        return self.jacobian.T @ self.residual

    def is_finite(self) -> bool:
        return bool(
            np.isfinite(self.cost)
            and np.all(np.isfinite(self.residual))
            and np.all(np.isfinite(self.jacobian.data))
        )


class TrajectoryProblem:
    """
    Stacked residual / block-sparse Jacobian system for one trajectory.

    :param trajectory: The trajectory to refine. Validated on construction.
    :param loss: Robust loss applied to each constraint's squared whitened
        norm. Defaults to plain least squares.
    :param kernels: Linearization kernels; defaults to the standard relative
        and anchor residuals.
    :raises InvalidConstraint: if a constraint references a missing pose.
    :raises UnderdeterminedProblem: if some constrained component has no anchor.
    """

    def __init__(
        self,
        trajectory: Trajectory,
        loss=None,
        kernels: Optional[JittedLinearization] = None,
    ) -> None:
        trajectory.validate()
        check_gauge(trajectory)

        self.loss = loss if loss is not None else TrivialLoss()
        self.kernels = kernels if kernels is not None else JittedLinearization.from_residuals()
        self.num_poses = len(trajectory.poses)
        self.block_slices = build_manifold_metadata(trajectory)

        relative_ids, anchor_ids = [], []
        for k, c in enumerate(trajectory.constraints):
            (relative_ids if len(c.pose_indices) == 2 else anchor_ids).append(k)
        self._order = np.array(relative_ids + anchor_ids, dtype=np.int64)

        rel = trajectory.relative_constraints
        self._rel_i = np.array([c.from_index for c in rel], dtype=np.int64)
        self._rel_j = np.array([c.to_index for c in rel], dtype=np.int64)
        self._rel_t = jnp.asarray(np.array([c.translation for c in rel]).reshape(-1, 3))
        self._rel_q = jnp.asarray(np.array([c.rotation for c in rel]).reshape(-1, 4))
        self._rel_L = jnp.asarray(np.array([sqrt_information(c.information) for c in rel]).reshape(-1, 6, 6))

        anc = trajectory.anchor_constraints
        self._anc_k = np.array([c.pose_index for c in anc], dtype=np.int64)
        self._anc_p = jnp.asarray(np.array([c.measured_position for c in anc]).reshape(-1, 3))
        self._anc_q = jnp.asarray(np.array([c.measured_orientation for c in anc]).reshape(-1, 4))
        self._anc_L = jnp.asarray(np.array([sqrt_information(c.full_information) for c in anc]).reshape(-1, 6, 6))

        self.num_relative = len(rel)
        self.num_anchors = len(anc)

    @property
    def num_constraints(self) -> int:
        return self.num_relative + self.num_anchors

    @property
    def num_residuals(self) -> int:
        return RESIDUAL_DIM * self.num_constraints

    @property
    def num_parameters(self) -> int:
        return TANGENT_DIM * self.num_poses

    # --- Evaluation ---

    def _raw_residuals(self, positions, orientations) -> np.ndarray:
        """Unweighted-by-loss residual blocks (C, 6) in row order."""
        blocks = []
        if self.num_relative:
            blocks.append(
                self.kernels.relative_residual(
                    positions[self._rel_i], orientations[self._rel_i],
                    positions[self._rel_j], orientations[self._rel_j],
                    self._rel_t, self._rel_q, self._rel_L,
                )
            )
        if self.num_anchors:
            blocks.append(
                self.kernels.anchor_residual(
                    positions[self._anc_k], orientations[self._anc_k],
                    self._anc_p, self._anc_q, self._anc_L,
                )
            )
        if not blocks:
            return np.zeros((0, RESIDUAL_DIM))
        return np.asarray(jnp.concatenate(blocks, axis=0))

    def cost(self, positions: np.ndarray, orientations: np.ndarray) -> float:
        """Total robustified squared residual ``Σ ρ(‖r_k‖²)``."""
        r = self._raw_residuals(jnp.asarray(positions), jnp.asarray(orientations))
        rho, _ = self.loss(jnp.sum(r * r, axis=1))
        return float(jnp.sum(rho))

    def linearize(self, positions: np.ndarray, orientations: np.ndarray) -> Linearization:
        """Residual vector and block-sparse Jacobian at the given estimate."""
        positions = jnp.asarray(positions)
        orientations = jnp.asarray(orientations)

        r_blocks, rows, cols, data = [], [], [], []
        if self.num_relative:
            r_rel, J_rel = self.kernels.relative_linearize(
                positions[self._rel_i], orientations[self._rel_i],
                positions[self._rel_j], orientations[self._rel_j],
                self._rel_t, self._rel_q, self._rel_L,
            )
            r_blocks.append(np.asarray(r_rel))
            J_rel = np.asarray(J_rel)
            row_starts = RESIDUAL_DIM * np.arange(self.num_relative)
            for side, idx in ((slice(0, TANGENT_DIM), self._rel_i), (slice(TANGENT_DIM, None), self._rel_j)):
                rr, cc, dd = _block_coo(row_starts, TANGENT_DIM * idx, J_rel[:, :, side])
                rows.append(rr)
                cols.append(cc)
                data.append(dd)

        if self.num_anchors:
            r_anc, J_anc = self.kernels.anchor_linearize(
                positions[self._anc_k], orientations[self._anc_k],
                self._anc_p, self._anc_q, self._anc_L,
            )
            r_blocks.append(np.asarray(r_anc))
            row_starts = RESIDUAL_DIM * (self.num_relative + np.arange(self.num_anchors))
            rr, cc, dd = _block_coo(row_starts, TANGENT_DIM * self._anc_k, np.asarray(J_anc))
            rows.append(rr)
            cols.append(cc)
            data.append(dd)

        if r_blocks:
            r = np.concatenate(r_blocks, axis=0)
        else:
            r = np.zeros((0, RESIDUAL_DIM))

        s = np.sum(r * r, axis=1)
        rho, rho_prime = self.loss(jnp.asarray(s))
        rho = np.asarray(rho)
        row_weight = np.sqrt(np.asarray(rho_prime))
        r = r * row_weight[:, None]

        if data:
            rows = np.concatenate(rows)
            cols = np.concatenate(cols)
            # each Jacobian entry is scaled by the weight of the constraint owning its row
            data = np.concatenate(data) * row_weight[rows // RESIDUAL_DIM]
        else:
            rows = cols = np.zeros(0, dtype=np.int64)
            data = np.zeros(0)

        jacobian = sp.coo_matrix(
            (data, (rows, cols)), shape=(self.num_residuals, self.num_parameters)
        ).tocsr()

        constraint_costs = np.empty(self.num_constraints)
        constraint_costs[self._order] = rho

        return Linearization(
            residual=r.reshape(-1),
            jacobian=jacobian,
            cost=float(np.sum(rho)),
            constraint_costs=constraint_costs,
        )

    def weakly_observed(self, linearization: Linearization) -> np.ndarray:
        """
        Flag poses whose 6 local parameters are not all pinned.

        A pose is weakly observed when its diagonal block of ``JᵀJ`` has
        numerical rank below 6, i.e. the constraints touching it leave at
        least one direction free.
        """
        H = (linearization.jacobian.T @ linearization.jacobian).tocsr()
        flags = np.zeros(self.num_poses, dtype=bool)
        for idx, sl in self.block_slices.items():
            block = H[sl, sl].toarray()
            eig = np.linalg.eigvalsh(0.5 * (block + block.T))
            flags[idx] = eig[0] <= _RANK_TOL * max(1.0, float(eig[-1]))
        if flags.any():
            logger.warning("Weakly observed poses: %s", np.flatnonzero(flags).tolist())
        return flags
