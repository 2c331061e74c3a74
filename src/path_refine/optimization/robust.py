# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Robust loss functions.

A loss ρ acts on the squared norm ``s = ‖r‖²`` of one constraint's whitened
residual (the information matrix has already been applied). The total cost
becomes ``Σ ρ(s_k)`` instead of ``Σ s_k``, which caps how hard a single
grossly inconsistent constraint can pull on the solution.

The solver folds the loss into the linear system by scaling each
constraint's residual rows and Jacobian rows by ``sqrt(ρ'(s))``. The
gradient of the robust cost is then exact; only the curvature is
approximated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import jax.numpy as jnp


@dataclass(frozen=True)
class TrivialLoss:
    """ρ(s) = s. Plain least squares."""

    def __call__(self, s: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
        s = jnp.asarray(s)
        return s, jnp.ones_like(s)


@dataclass(frozen=True)
class HuberLoss:
    """
    Huber loss with threshold ``delta`` on the residual norm.

        ρ(s) = s                     for s <= δ²
        ρ(s) = 2 δ sqrt(s) - δ²      otherwise
    """
    delta: float

    def __call__(self, s: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
        s = jnp.asarray(s)
        d = self.delta
        inlier = s <= d * d
        root = jnp.sqrt(jnp.where(inlier, 1.0, s))
        rho = jnp.where(inlier, s, 2.0 * d * root - d * d)
        rho_prime = jnp.where(inlier, 1.0, d / root)
        return rho, rho_prime


@dataclass(frozen=True)
class CauchyLoss:
    """
    Cauchy loss with scale ``c``.

        ρ(s) = c² log(1 + s / c²)
    """
    c: float

    def __call__(self, s: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
        s = jnp.asarray(s)
        c2 = self.c * self.c
        rho = c2 * jnp.log1p(s / c2)
        rho_prime = 1.0 / (1.0 + s / c2)
        return rho, rho_prime


LOSSES = {
    "huber": HuberLoss,
    "cauchy": CauchyLoss,
}


def make_loss(name: str, threshold: Optional[float]):
    """Build the loss named ``name``, or :class:`TrivialLoss` when ``threshold`` is None."""
    if threshold is None:
        return TrivialLoss()
    try:
        cls = LOSSES[name]
    except KeyError:
        raise ValueError(f"Unknown robust loss '{name}' (expected one of {sorted(LOSSES)})") from None
    if threshold <= 0.0:
        raise ValueError(f"robust loss threshold must be positive, got {threshold}")
    return cls(float(threshold))
