from __future__ import annotations

import math

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from path_refine.core.math3d import (
    angle_between,
    compose,
    from_euler,
    from_rotation_matrix,
    identity_quat,
    inverse,
    local_update,
    quat_exp,
    quat_log,
    rotate,
    so3_exp,
    to_euler,
    to_rotation_matrix,
)


def _random_quats(n: int, seed: int = 0) -> list:
    rng = np.random.default_rng(seed)
    qs = rng.standard_normal((n, 4))
    return [jnp.asarray(q / np.linalg.norm(q)) for q in qs]


def _same_rotation(q1, q2, atol=1e-9) -> bool:
    # q and -q are the same rotation
    return bool(jnp.allclose(q1, q2, atol=atol) or jnp.allclose(q1, -q2, atol=atol))


def test_inverse_of_inverse_is_identity_map():
    for q in _random_quats(20):
        assert jnp.allclose(inverse(inverse(q)), q, atol=1e-12)


def test_compose_with_inverse_is_identity():
    for q in _random_quats(20, seed=1):
        assert _same_rotation(compose(q, inverse(q)), identity_quat())
        assert _same_rotation(compose(inverse(q), q), identity_quat())


def test_rotate_compose_consistency():
    """rotate(q1 ⊗ q2, v) == rotate(q1, rotate(q2, v))"""
    rng = np.random.default_rng(2)
    qs = _random_quats(30, seed=3)
    for q1, q2 in zip(qs[::2], qs[1::2]):
        v = jnp.asarray(rng.standard_normal(3))
        lhs = rotate(compose(q1, q2), v)
        rhs = rotate(q1, rotate(q2, v))
        assert jnp.allclose(lhs, rhs, atol=1e-10)


def test_rotate_matches_rotation_matrix():
    rng = np.random.default_rng(4)
    for q in _random_quats(10, seed=5):
        v = jnp.asarray(rng.standard_normal(3))
        assert jnp.allclose(rotate(q, v), to_rotation_matrix(q) @ v, atol=1e-10)


def test_rotation_matrix_roundtrip():
    for q in _random_quats(25, seed=6):
        R = to_rotation_matrix(q)
        assert jnp.allclose(R.T @ R, jnp.eye(3), atol=1e-10)
        assert float(jnp.linalg.det(R)) == pytest.approx(1.0, abs=1e-10)
        assert _same_rotation(from_rotation_matrix(R), q, atol=1e-8)


def test_local_update_keeps_unit_norm():
    rng = np.random.default_rng(7)
    for q in _random_quats(20, seed=8):
        for scale in (0.0, 1e-12, 1e-7, 1e-3, 0.5, 3.0, 10.0):
            delta = jnp.asarray(scale * rng.standard_normal(3))
            q_new = local_update(q, delta)
            assert abs(float(jnp.linalg.norm(q_new)) - 1.0) < 1e-6


def test_local_update_zero_delta_is_noop():
    for q in _random_quats(5, seed=9):
        assert jnp.allclose(local_update(q, jnp.zeros(3)), q, atol=1e-12)


def test_exp_log_roundtrip():
    rng = np.random.default_rng(10)
    for angle in (1e-9, 1e-4, 0.3, 2.5, 3.0):
        axis = rng.standard_normal(3)
        w = jnp.asarray(angle * axis / np.linalg.norm(axis))
        w_est = quat_log(quat_exp(w))
        assert jnp.all(jnp.isfinite(w_est))
        assert jnp.allclose(w_est, w, atol=1e-10)


def test_log_no_nan_for_identity_and_sign_flip():
    assert jnp.allclose(quat_log(identity_quat()), jnp.zeros(3))
    q = quat_exp(jnp.array([0.1, -0.2, 0.3]))
    assert jnp.allclose(quat_log(-q), quat_log(q), atol=1e-12)


def test_exp_derivative_finite_at_zero():
    """The solver differentiates Exp at exactly zero; it must be [0; I/2]."""
    J = jax.jacfwd(quat_exp)(jnp.zeros(3))
    expected = jnp.concatenate([jnp.zeros((1, 3)), 0.5 * jnp.eye(3)])
    assert jnp.all(jnp.isfinite(J))
    assert jnp.allclose(J, expected, atol=1e-12)

    J_rev = jax.jacrev(quat_log)(identity_quat())
    assert jnp.all(jnp.isfinite(J_rev))


def test_quat_exp_matches_rodrigues():
    rng = np.random.default_rng(11)
    for _ in range(10):
        w = jnp.asarray(rng.standard_normal(3))
        assert jnp.allclose(to_rotation_matrix(quat_exp(w)), so3_exp(w), atol=1e-10)


def _rx(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[1, 0, 0], [0, c, -s], [0, s, c]])


def _ry(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def _rz(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])


@pytest.mark.parametrize(
    "roll,pitch,yaw",
    [
        (0.0, 0.0, 0.0),
        (0.3, -0.2, 1.1),
        (-1.2, 0.7, -2.9),
        (0.4, math.pi / 2, 0.1),
        (0.0, -math.pi / 2, 0.8),
    ],
)
def test_from_euler_matches_zyx_matrix_product(roll, pitch, yaw):
    q = from_euler(roll, pitch, yaw)
    R_expected = _rz(yaw) @ _ry(pitch) @ _rx(roll)
    assert np.allclose(np.asarray(to_rotation_matrix(q)), R_expected, atol=1e-10)


def test_from_euler_is_yaw_pitch_roll_composition():
    roll, pitch, yaw = 0.2, -0.4, 1.3
    q_roll = from_euler(roll, 0.0, 0.0)
    q_pitch = from_euler(0.0, pitch, 0.0)
    q_yaw = from_euler(0.0, 0.0, yaw)
    assert _same_rotation(compose(compose(q_yaw, q_pitch), q_roll), from_euler(roll, pitch, yaw))


def test_to_euler_roundtrip_away_from_gimbal_lock():
    angles = jnp.array([0.3, -0.6, 2.0])
    assert jnp.allclose(to_euler(from_euler(*angles)), angles, atol=1e-9)


def test_tangent_parameterization_full_rank_at_gimbal_lock():
    """
    At pitch = 90° the Euler parameterization loses a degree of freedom while
    the quaternion tangent parameterization keeps all three.
    """
    angles = jnp.array([0.4, math.pi / 2, -0.3])
    q = from_euler(*angles)

    def via_euler(a):
        return to_rotation_matrix(from_euler(a[0], a[1], a[2])).ravel()

    def via_tangent(d):
        return to_rotation_matrix(local_update(q, d)).ravel()

    J_euler = np.asarray(jax.jacfwd(via_euler)(angles))
    J_tangent = np.asarray(jax.jacfwd(via_tangent)(jnp.zeros(3)))

    assert np.linalg.matrix_rank(J_euler, tol=1e-8) == 2
    assert np.linalg.matrix_rank(J_tangent, tol=1e-8) == 3


def test_angle_between():
    q1 = from_euler(0.0, 0.0, 0.2)
    q2 = from_euler(0.0, 0.0, 0.7)
    assert float(angle_between(q1, q2)) == pytest.approx(0.5, abs=1e-12)
