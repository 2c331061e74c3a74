# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Synthetic trajectories with known ground truth.

Used by the tests and benchmarks to build refinement problems whose exact
answer is known:

    truth = helix_path(20)
    start = perturb_path(truth, sigma_t=0.1, sigma_r=0.05, rng=rng)
    traj = make_trajectory(truth, initial=start)

Relative measurements are generated from the ground truth with
``predicted_relative``, so with zero measurement noise the ground truth is an
exact zero-cost solution.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from path_refine.core.math3d import from_euler, local_update
from path_refine.core.types import Trajectory
from path_refine.slam.measurements import predicted_relative


@dataclass
class SyntheticPath:
    positions: np.ndarray     # (N, 3)
    orientations: np.ndarray  # (N, 4)

    def __len__(self) -> int:
        return self.positions.shape[0]


def helix_path(num_poses: int, radius: float = 2.0, climb: float = 0.1, yaw_step: float = 0.3) -> SyntheticPath:
    """Body moving along a rising helix, facing along its direction of travel."""
    positions, orientations = [], []
    for k in range(num_poses):
        yaw = yaw_step * k
        positions.append([radius * math.cos(yaw), radius * math.sin(yaw), climb * k])
        heading = yaw + 0.5 * math.pi
        pitch = -math.atan2(climb, radius * yaw_step)
        roll = 0.05 * math.sin(0.7 * k)
        orientations.append(np.asarray(from_euler(roll, pitch, heading)))
    return SyntheticPath(np.array(positions, dtype=np.float64), np.array(orientations, dtype=np.float64))


def pitch_sweep_path(num_poses: int, start_pitch: float = 0.0, end_pitch: float = math.pi, step: float = 0.5) -> SyntheticPath:
    """
    Body pitching from ``start_pitch`` to ``end_pitch`` while moving forward.

    With the default range the sweep passes straight through pitch = 90°,
    where Z-Y-X Euler angles lose a degree of freedom.
    """
    positions, orientations = [], []
    for k in range(num_poses):
        pitch = start_pitch + (end_pitch - start_pitch) * k / max(1, num_poses - 1)
        positions.append([step * k, 0.1 * math.sin(0.5 * k), 0.0])
        orientations.append(np.asarray(from_euler(0.1, pitch, 0.2)))
    return SyntheticPath(np.array(positions, dtype=np.float64), np.array(orientations, dtype=np.float64))


def perturb_path(path: SyntheticPath, sigma_t: float, sigma_r: float, rng: np.random.Generator) -> SyntheticPath:
    """Gaussian position noise and axis-angle rotation noise on every pose."""
    positions = path.positions + sigma_t * rng.standard_normal(path.positions.shape)
    orientations = np.array(
        [np.asarray(local_update(q, sigma_r * rng.standard_normal(3))) for q in path.orientations]
    )
    return SyntheticPath(positions, orientations)


def relative_measurement(path: SyntheticPath, i: int, j: int) -> tuple[np.ndarray, np.ndarray]:
    """Exact relative transform pose_i⁻¹ ∘ pose_j from the path."""
    t, q = predicted_relative(path.positions[i], path.orientations[i], path.positions[j], path.orientations[j])
    return np.asarray(t), np.asarray(q)


def make_trajectory(
    truth: SyntheticPath,
    initial: Optional[SyntheticPath] = None,
    skip_edges: bool = False,
    relative_information: Optional[np.ndarray] = None,
    anchor_information: Optional[np.ndarray] = None,
    anchor: bool = True,
    noise: Optional[tuple[float, float]] = None,
    rng: Optional[np.random.Generator] = None,
) -> Trajectory:
    """
    Build a trajectory whose constraints are generated from ``truth``.

    :param truth: Ground-truth path the measurements are taken from.
    :param initial: Starting estimate; defaults to the ground truth itself.
    :param skip_edges: Also add i -> i+2 constraints (redundancy).
    :param relative_information: 6x6 information for every relative constraint.
    :param anchor_information: 6x6 information for the anchor on pose 0.
    :param anchor: Add a full-pose anchor on pose 0 at its true value.
    :param noise: Optional ``(sigma_t, sigma_r)`` measurement noise.
    :param rng: Random generator, required when ``noise`` is set.
    """
    start = initial if initial is not None else truth
    traj = Trajectory.from_arrays(start.positions, start.orientations)

    pairs = [(k, k + 1) for k in range(len(truth) - 1)]
    if skip_edges:
        pairs += [(k, k + 2) for k in range(len(truth) - 2)]

    for i, j in pairs:
        t, q = relative_measurement(truth, i, j)
        if noise is not None:
            sigma_t, sigma_r = noise
            t = t + sigma_t * rng.standard_normal(3)
            q = np.asarray(local_update(q, sigma_r * rng.standard_normal(3)))
        traj.add_relative(i, j, translation=t, rotation=q, information=relative_information)

    if anchor and len(truth):
        traj.add_anchor(
            0,
            position=truth.positions[0],
            orientation=truth.orientations[0],
            information=anchor_information,
        )
    return traj
