# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Residual models (measurement factors) for path-refine.

Each function here maps the current value of the pose(s) a constraint
touches to a 6-dimensional error vector

    r = L · [e_t (3), e_r (3)]

where ``e_t`` is the translation error, ``e_r`` the minimal axis-angle
rotation error, and ``L`` the square root of the constraint's information
matrix (``LᵀL = Ω``). Minimizing ``‖r‖²`` is then minimizing the Mahalanobis
distance of the measurement under its covariance.

Factor types
------------
    • relative_pose_residual
        Relative motion between pose i and pose j:
            predicted = pose_i⁻¹ ∘ pose_j
            e_t = R_iᵀ (p_j - p_i) - t_meas
            e_r = Log(q_meas⁻¹ ⊗ (q_i⁻¹ ⊗ q_j))

    • anchor_residual
        Absolute anchor on a single pose:
            e_t = p - p_meas
            e_r = Log(q_meas⁻¹ ⊗ q)

The rotation error is always the 3-parameter logarithm, never a 4-component
quaternion difference; a quaternion difference would add a redundant,
rank-deficient direction to the problem.

Jacobians are not written by hand. ``optimization.jit_wrappers`` composes
these functions with the pose retraction from ``slam.manifold`` and
differentiates with ``jax.jacfwd`` at a zero increment, which yields the
derivative with respect to each pose's 6 local parameters.
"""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np

from path_refine.core.math3d import compose, inverse, quat_log, rotate


def sqrt_information(information: np.ndarray) -> np.ndarray:
    """
    Symmetric square root of a positive semi-definite information matrix.

    Computed from the eigendecomposition, so it also works for singular
    (semi-definite) matrices where a Cholesky factor does not exist.
    """
    info = np.asarray(information, dtype=np.float64)
    eigvals, eigvecs = np.linalg.eigh(0.5 * (info + info.T))
    eigvals = np.clip(eigvals, 0.0, None)
    return (eigvecs * np.sqrt(eigvals)) @ eigvecs.T


def sigma_to_information(sigma) -> np.ndarray:
    """
    Convert standard deviation(s) into a diagonal information matrix.

    For scalar sigma the result is ``I / sigma²`` (6x6); for a vector of
    per-component sigmas it is ``diag(1 / sigma²)``.
    """
    s = np.asarray(sigma, dtype=np.float64)
    if s.ndim == 0:
        return np.eye(6) / (s * s)
    return np.diag(1.0 / (s * s))


def _apply_weight(residual: jnp.ndarray, sqrt_info: jnp.ndarray) -> jnp.ndarray:
    return sqrt_info @ residual


def predicted_relative(
    p_i: jnp.ndarray,
    q_i: jnp.ndarray,
    p_j: jnp.ndarray,
    q_j: jnp.ndarray,
) -> tuple[jnp.ndarray, jnp.ndarray]:
    """Relative transform ``pose_i⁻¹ ∘ pose_j`` as (translation, quaternion)."""
    q_i_inv = inverse(q_i)
    t_rel = rotate(q_i_inv, jnp.asarray(p_j) - jnp.asarray(p_i))
    q_rel = compose(q_i_inv, q_j)
    return t_rel, q_rel


def relative_pose_residual(
    p_i: jnp.ndarray,
    q_i: jnp.ndarray,
    p_j: jnp.ndarray,
    q_j: jnp.ndarray,
    t_meas: jnp.ndarray,
    q_meas: jnp.ndarray,
    sqrt_info: jnp.ndarray,
) -> jnp.ndarray:
    """Whitened 6-vector error of a relative motion constraint."""
    t_pred, q_pred = predicted_relative(p_i, q_i, p_j, q_j)
    e_t = t_pred - t_meas
    e_r = quat_log(compose(inverse(q_meas), q_pred))
    return _apply_weight(jnp.concatenate([e_t, e_r]), sqrt_info)


def anchor_residual(
    p: jnp.ndarray,
    q: jnp.ndarray,
    p_meas: jnp.ndarray,
    q_meas: jnp.ndarray,
    sqrt_info: jnp.ndarray,
) -> jnp.ndarray:
    """Whitened 6-vector error of an absolute anchor constraint."""
    e_t = jnp.asarray(p) - p_meas
    e_r = quat_log(compose(inverse(q_meas), q))
    return _apply_weight(jnp.concatenate([e_t, e_r]), sqrt_info)
