# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Local parameterization of poses for manifold-aware optimization.

A pose lives on R³ × S³ (position + unit quaternion, 7 stored numbers) but
has only 6 degrees of freedom. The optimizer therefore never touches the
stored values directly. It works in a 6-dimensional tangent space

    δ = [δp (3), δθ (3)]

and maps increments back onto the manifold through :func:`pose_retract`:

    p ⊕ δ = p + δp
    q ⊕ δ = Exp(δθ) ⊗ q           (renormalized)

The same retraction is used in two places, which is what keeps the
problem consistent:

    1. Residual Jacobians are derivatives of ``r(pose ⊕ δ)`` at δ = 0
       (see ``optimization.jit_wrappers``).
    2. The solver applies its solved increment with ``pose ⊕ δ``
       (see ``optimization.solvers``).

:func:`pose_local` is the inverse map (``a ⊖ b``), handy for measuring how
far two estimates are apart in the same coordinates the solver uses.

Manifold metadata
-----------------
:func:`build_manifold_metadata` maps each pose index to its slice in the
stacked tangent vector, mirroring how the solver lays out the normal
equations (6 columns per pose, in index order).
"""

from __future__ import annotations

from typing import Dict

import jax
import jax.numpy as jnp

from path_refine.core.math3d import local_update, quat_log, compose, inverse
from path_refine.core.types import Trajectory

POSITION_DIM = 3
ROTATION_DIM = 3
TANGENT_DIM = POSITION_DIM + ROTATION_DIM


def pose_retract(
    position: jnp.ndarray,
    orientation: jnp.ndarray,
    delta: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Apply a 6-vector tangent increment to one pose."""
    delta = jnp.asarray(delta)
    new_position = jnp.asarray(position) + delta[:POSITION_DIM]
    new_orientation = local_update(orientation, delta[POSITION_DIM:])
    return new_position, new_orientation


def pose_local(
    position_a: jnp.ndarray,
    orientation_a: jnp.ndarray,
    position_b: jnp.ndarray,
    orientation_b: jnp.ndarray,
) -> jnp.ndarray:
    """
    Tangent vector δ such that ``a ⊕ δ == b``.

    Exact inverse of :func:`pose_retract` for rotation angles below π.
    """
    dp = jnp.asarray(position_b) - jnp.asarray(position_a)
    dtheta = quat_log(compose(orientation_b, inverse(orientation_a)))
    return jnp.concatenate([dp, dtheta])


@jax.jit
def retract_state(
    positions: jnp.ndarray,
    orientations: jnp.ndarray,
    delta: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """
    Apply a stacked increment to every pose at once.

    positions: (N, 3), orientations: (N, 4), delta: (6N,) laid out pose by pose.
    """
    blocks = jnp.reshape(delta, (-1, TANGENT_DIM))
    return jax.vmap(pose_retract)(positions, orientations, blocks)


def build_manifold_metadata(trajectory: Trajectory) -> Dict[int, slice]:
    """
    Build metadata for the solver: pose index -> slice in the stacked
    tangent vector.

    Every pose contributes exactly :data:`TANGENT_DIM` columns, whether or not
    any constraint touches it.
    """
    block_slices: Dict[int, slice] = {}
    for pose in trajectory.poses:
        start = pose.index * TANGENT_DIM
        block_slices[pose.index] = slice(start, start + TANGENT_DIM)
    return block_slices
