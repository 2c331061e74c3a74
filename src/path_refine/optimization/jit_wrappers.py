# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
JIT-compiled, batched linearization kernels.

Problem assembly needs, for every constraint, the whitened residual and its
Jacobian with respect to the local (tangent) parameters of each pose it
touches. Constraints of one type are independent of each other, so each
type gets a single kernel that:

    1. composes the residual with ``slam.manifold.pose_retract``,
    2. differentiates with ``jax.jacfwd`` at δ = 0,
    3. is ``jax.vmap``-ed over all constraints of that type, and
    4. is ``jax.jit``-compiled once per problem shape.

Every constraint writes only its own rows of the stacked system, so the
batch has no shared mutable state.

Shapes (M relative constraints, K anchors)
------------------------------------------
relative_linearize(p_i, q_i, p_j, q_j, t_meas, q_meas, sqrt_info)
    inputs  (M,3) (M,4) (M,3) (M,4) (M,3) (M,4) (M,6,6)
    returns r (M,6), J (M,6,12)   J[:, :, :6] w.r.t. pose i, J[:, :, 6:] w.r.t. pose j

anchor_linearize(p, q, p_meas, q_meas, sqrt_info)
    inputs  (K,3) (K,4) (K,3) (K,4) (K,6,6)
    returns r (K,6), J (K,6,6)

relative_residual / anchor_residual
    same inputs, residuals only (used to evaluate trial steps cheaply)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import jax
import jax.numpy as jnp

from path_refine.slam.manifold import pose_retract, TANGENT_DIM
from path_refine.slam.measurements import relative_pose_residual, anchor_residual


def linearize_relative(residual_fn: Callable) -> Callable:
    """Wrap a two-pose residual into a single-constraint (r, J) function."""

    def linearization(p_i, q_i, p_j, q_j, *params):
        def f(delta: jnp.ndarray) -> jnp.ndarray:
            pi, qi = pose_retract(p_i, q_i, delta[:TANGENT_DIM])
            pj, qj = pose_retract(p_j, q_j, delta[TANGENT_DIM:])
            return residual_fn(pi, qi, pj, qj, *params)

        zero = jnp.zeros(2 * TANGENT_DIM, dtype=p_i.dtype)
        return f(zero), jax.jacfwd(f)(zero)

    return linearization


def linearize_unary(residual_fn: Callable) -> Callable:
    """Wrap a single-pose residual into a single-constraint (r, J) function."""

    def linearization(p, q, *params):
        def f(delta: jnp.ndarray) -> jnp.ndarray:
            pp, qq = pose_retract(p, q, delta)
            return residual_fn(pp, qq, *params)

        zero = jnp.zeros(TANGENT_DIM, dtype=p.dtype)
        return f(zero), jax.jacfwd(f)(zero)

    return linearization


@dataclass
class JittedLinearization:
    """
    Batched, compiled residual/Jacobian kernels for both constraint types.

    Usage:
        kernels = JittedLinearization.from_residuals()
        r, J = kernels.relative_linearize(p_i, q_i, p_j, q_j, t, q, L)
    """
    relative_linearize: Callable
    anchor_linearize: Callable
    relative_residual: Callable
    anchor_residual: Callable

    @staticmethod
    def from_residuals(
        relative_fn: Callable = relative_pose_residual,
        anchor_fn: Callable = anchor_residual,
    ) -> "JittedLinearization":
        return JittedLinearization(
            relative_linearize=jax.jit(jax.vmap(linearize_relative(relative_fn))),
            anchor_linearize=jax.jit(jax.vmap(linearize_unary(anchor_fn))),
            relative_residual=jax.jit(jax.vmap(relative_fn)),
            anchor_residual=jax.jit(jax.vmap(anchor_fn)),
        )
