# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Unit-quaternion rotation math for path-refine.

Orientation is stored as a unit quaternion ``q = (w, x, y, z)`` mapping
body-frame vectors into the world frame. Every other component (residuals,
problem assembly, the solver update) is built on the operations here:

    • compose(q1, q2)        Hamilton product, "rotate by q2 then by q1"
    • inverse(q)             conjugate (valid because ‖q‖ = 1)
    • rotate(q, v)           sandwich product q (0, v) q*
    • quat_exp(w)            axis-angle 3-vector → unit quaternion
    • quat_log(q)            unit quaternion → axis-angle 3-vector
    • local_update(q, δ)     manifold increment Exp(δ) ⊗ q, renormalized

Boundary conversions
--------------------
to_rotation_matrix / from_rotation_matrix and from_euler / to_euler exist
only for interoperability with callers. They are never used for composition
or as optimization state. Euler angles follow the Z-Y-X convention,
``R = Rz(yaw) · Ry(pitch) · Rx(roll)``, which equals
``compose(compose(q_yaw, q_pitch), q_roll)``.

Numerics
--------
All functions are written in JAX so they can be jitted, vmapped and
differentiated. ``quat_exp`` and ``quat_log`` switch to Taylor expansions
below a small-angle threshold. The switch uses the "safe where" pattern:
the branch that is not taken is evaluated on a harmless dummy value, so
neither branch produces NaN values or NaN derivatives at exactly zero
rotation. This matters because every Jacobian in the solver is a derivative
of ``quat_exp`` taken at δ = 0.
"""

from __future__ import annotations

import jax.numpy as jnp

_SMALL_ANGLE = 1e-6


def identity_quat() -> jnp.ndarray:
    """The identity rotation ``(1, 0, 0, 0)``."""
    return jnp.array([1.0, 0.0, 0.0, 0.0])


def normalize(q: jnp.ndarray) -> jnp.ndarray:
    """Project a quaternion back onto the unit sphere."""
    q = jnp.asarray(q)
    return q / jnp.linalg.norm(q)


def _hamilton(q1: jnp.ndarray, q2: jnp.ndarray) -> jnp.ndarray:
    w1, x1, y1, z1 = q1[0], q1[1], q1[2], q1[3]
    w2, x2, y2, z2 = q2[0], q2[1], q2[2], q2[3]
    return jnp.array(
        [
            w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
            w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
            w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
            w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        ]
    )


def compose(q1: jnp.ndarray, q2: jnp.ndarray) -> jnp.ndarray:
    """
    Hamilton product ``q1 ⊗ q2``, renormalized.

    Applied to a body-frame vector the result rotates by ``q2`` first and
    then by ``q1``.
    """
    return normalize(_hamilton(jnp.asarray(q1), jnp.asarray(q2)))


def inverse(q: jnp.ndarray) -> jnp.ndarray:
    """Inverse of a unit quaternion, i.e. its conjugate."""
    q = jnp.asarray(q)
    return q * jnp.array([1.0, -1.0, -1.0, -1.0])


def rotate(q: jnp.ndarray, v: jnp.ndarray) -> jnp.ndarray:
    """Rotate a 3-vector by ``q`` using the sandwich product ``q (0, v) q*``."""
    q = jnp.asarray(q)
    v = jnp.asarray(v)
    pure = jnp.concatenate([jnp.zeros(1, dtype=v.dtype), v])
    return _hamilton(_hamilton(q, pure), inverse(q))[1:]


def quat_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from an axis-angle vector to a unit quaternion.

        Exp(w) = (cos(θ/2), sin(θ/2) · w / θ),   θ = ‖w‖

    Below the small-angle threshold the first terms of the Taylor series are
    used instead, so the map and its derivative stay finite at ``w = 0``.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    small = theta_sq < _SMALL_ANGLE * _SMALL_ANGLE

    theta = jnp.sqrt(jnp.where(small, 1.0, theta_sq))
    half = 0.5 * theta

    real = jnp.where(small, 1.0 - theta_sq / 8.0, jnp.cos(half))
    scale = jnp.where(small, 0.5 - theta_sq / 48.0, jnp.sin(half) / theta)

    q = jnp.concatenate([jnp.reshape(real, (1,)), scale * w])
    return normalize(q)


def quat_log(q: jnp.ndarray) -> jnp.ndarray:
    """
    Logarithm map from a unit quaternion to its minimal axis-angle vector.

    ``q`` and ``-q`` describe the same rotation; the representative with a
    non-negative real part is used so the returned angle lies in [0, π].
    """
    q = jnp.asarray(q)
    q = jnp.where(q[0] < 0.0, -q, q)
    w = q[0]
    v = q[1:]

    n_sq = jnp.dot(v, v)
    small = n_sq < _SMALL_ANGLE * _SMALL_ANGLE
    n = jnp.sqrt(jnp.where(small, 1.0, n_sq))
    w_safe = jnp.where(small, w, 1.0)

    # 2·atan(n/w)/n ≈ (2/w)(1 - n²/(3w²)) for small n
    scale = jnp.where(
        small,
        (2.0 / w_safe) * (1.0 - n_sq / (3.0 * w_safe * w_safe)),
        2.0 * jnp.arctan2(n, w) / n,
    )
    return scale * v


def local_update(q: jnp.ndarray, delta: jnp.ndarray) -> jnp.ndarray:
    """
    Manifold increment used by the solver: ``Exp(δ) ⊗ q``, renormalized.

    ``delta`` is a 3-parameter axis-angle perturbation expressed in the world
    frame. Adding ``delta`` to quaternion components directly would leave the
    unit sphere and carry a redundant fourth parameter.
    """
    return compose(quat_exp(delta), q)


def angle_between(q1: jnp.ndarray, q2: jnp.ndarray) -> jnp.ndarray:
    """Rotation angle (radians) of ``q1⁻¹ ⊗ q2``."""
    return jnp.linalg.norm(quat_log(compose(inverse(q1), q2)))


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """
    Exponential map from so(3) (rotation vector) to a rotation matrix.

    Rodrigues' formula with a small-angle fallback. Boundary helper; the
    solver itself never works with matrices.
    """
    w = jnp.asarray(w)
    theta_sq = jnp.dot(w, w)
    small = theta_sq < _SMALL_ANGLE * _SMALL_ANGLE
    theta = jnp.sqrt(jnp.where(small, 1.0, theta_sq))

    K = hat(w)
    a = jnp.where(small, 1.0 - theta_sq / 6.0, jnp.sin(theta) / theta)
    b = jnp.where(small, 0.5 - theta_sq / 24.0, (1.0 - jnp.cos(theta)) / (theta * theta))
    return jnp.eye(3) + a * K + b * (K @ K)


def to_rotation_matrix(q: jnp.ndarray) -> jnp.ndarray:
    """3x3 rotation matrix equivalent to ``q`` (body → world)."""
    w, x, y, z = normalize(q)
    return jnp.array(
        [
            [1.0 - 2.0 * (y * y + z * z), 2.0 * (x * y - w * z), 2.0 * (x * z + w * y)],
            [2.0 * (x * y + w * z), 1.0 - 2.0 * (x * x + z * z), 2.0 * (y * z - w * x)],
            [2.0 * (x * z - w * y), 2.0 * (y * z + w * x), 1.0 - 2.0 * (x * x + y * y)],
        ]
    )


def from_rotation_matrix(R: jnp.ndarray) -> jnp.ndarray:
    """
    Unit quaternion from a rotation matrix (Shepperd's method).

    All four candidate extractions are formed and the best-conditioned one
    (largest diagonal term) is selected. The result has ``w >= 0``.
    """
    R = jnp.asarray(R)
    r00, r11, r22 = R[0, 0], R[1, 1], R[2, 2]

    def _s(val):
        return 2.0 * jnp.sqrt(jnp.maximum(val, 1e-12))

    s0 = _s(1.0 + r00 + r11 + r22)
    s1 = _s(1.0 + r00 - r11 - r22)
    s2 = _s(1.0 - r00 + r11 - r22)
    s3 = _s(1.0 - r00 - r11 + r22)

    candidates = jnp.stack(
        [
            jnp.array([0.25 * s0, (R[2, 1] - R[1, 2]) / s0, (R[0, 2] - R[2, 0]) / s0, (R[1, 0] - R[0, 1]) / s0]),
            jnp.array([(R[2, 1] - R[1, 2]) / s1, 0.25 * s1, (R[0, 1] + R[1, 0]) / s1, (R[0, 2] + R[2, 0]) / s1]),
            jnp.array([(R[0, 2] - R[2, 0]) / s2, (R[0, 1] + R[1, 0]) / s2, 0.25 * s2, (R[1, 2] + R[2, 1]) / s2]),
            jnp.array([(R[1, 0] - R[0, 1]) / s3, (R[0, 2] + R[2, 0]) / s3, (R[1, 2] + R[2, 1]) / s3, 0.25 * s3]),
        ]
    )
    pick = jnp.argmax(jnp.array([r00 + r11 + r22, r00, r11, r22]))
    q = normalize(candidates[pick])
    return jnp.where(q[0] < 0.0, -q, q)


def from_euler(roll: float, pitch: float, yaw: float) -> jnp.ndarray:
    """
    Quaternion for Z-Y-X Euler angles (radians).

    Equivalent to the matrix ``Rz(yaw) · Ry(pitch) · Rx(roll)``.
    """
    qx = jnp.array([jnp.cos(0.5 * roll), jnp.sin(0.5 * roll), 0.0, 0.0])
    qy = jnp.array([jnp.cos(0.5 * pitch), 0.0, jnp.sin(0.5 * pitch), 0.0])
    qz = jnp.array([jnp.cos(0.5 * yaw), 0.0, 0.0, jnp.sin(0.5 * yaw)])
    return compose(compose(qz, qy), qx)


def to_euler(q: jnp.ndarray) -> jnp.ndarray:
    """
    Z-Y-X Euler angles ``(roll, pitch, yaw)`` of ``q``.

    At pitch = ±90° roll and yaw are not separable (gimbal lock); the split
    returned there is one of infinitely many valid ones.
    """
    w, x, y, z = normalize(q)
    roll = jnp.arctan2(2.0 * (w * x + y * z), 1.0 - 2.0 * (x * x + y * y))
    pitch = jnp.arcsin(jnp.clip(2.0 * (w * y - z * x), -1.0, 1.0))
    yaw = jnp.arctan2(2.0 * (w * z + x * y), 1.0 - 2.0 * (y * y + z * z))
    return jnp.array([roll, pitch, yaw])
