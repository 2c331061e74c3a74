# Copyright (c) 2025.
# This file is part of path-refine, released under the MIT License.
"""
Core data structures for path-refine.

These containers only store and validate; all numerical work happens in the
residual, assembly and solver layers.

Classes
-------
Pose
    One trajectory sample: an integer index, a world-frame position (3,) and
    a unit quaternion orientation (4,) in ``(w, x, y, z)`` order mapping body
    to world. Mutable, because the refinement writes refined values back.

RelativeConstraint
    Measured motion from pose ``from_index`` to pose ``to_index``, expressed
    in the frame of ``from_index``: a translation (3,), a rotation quaternion
    (4,) and a 6x6 information matrix ordered ``[tx, ty, tz, rx, ry, rz]``.

AnchorConstraint
    Measured absolute position and/or orientation of a single pose, with a
    matching information matrix (3x3 for one part, 6x6 for both).

Trajectory
    Ordered poses plus the constraints referencing them. Pose indices are
    dense (``0..N-1``) and every constraint must reference existing poses.

Notes
-----
Constraints are frozen: once constructed they are never modified, and the
solver only reads them. Validation happens at construction time and raises
:class:`InvalidConstraint` or :class:`InvalidWeight`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import numpy as np

from .errors import InvalidConstraint, InvalidWeight

ArrayLike = Union[Sequence[float], np.ndarray]

POSE_DOF = 6
_PSD_TOL = 1e-9


def _as_vector(value: ArrayLike, size: int, what: str) -> np.ndarray:
    arr = np.asarray(value, dtype=np.float64).reshape(-1)
    if arr.shape != (size,):
        raise InvalidConstraint(f"{what} must have {size} components, got shape {np.shape(value)}")
    if not np.all(np.isfinite(arr)):
        raise InvalidConstraint(f"{what} contains non-finite values: {arr}")
    return arr


def _as_unit_quaternion(value: ArrayLike, what: str) -> np.ndarray:
    q = _as_vector(value, 4, what)
    n = np.linalg.norm(q)
    if n < 1e-12:
        raise InvalidConstraint(f"{what} has zero norm")
    return q / n


def check_information(information: ArrayLike, size: int) -> np.ndarray:
    """
    Validate an information (inverse covariance) matrix.

    It must be ``size x size``, finite, symmetric, and positive
    semi-definite up to a small relative tolerance.

    :raises InvalidWeight: if any check fails.
    :returns: The matrix as a float64 array, exactly symmetrized.
    """
    info = np.asarray(information, dtype=np.float64)
    if info.shape != (size, size):
        raise InvalidWeight(f"information matrix must be {size}x{size}, got shape {info.shape}")
    if not np.all(np.isfinite(info)):
        raise InvalidWeight("information matrix contains non-finite values")

    scale = max(1.0, float(np.max(np.abs(info))))
    if not np.allclose(info, info.T, rtol=0.0, atol=_PSD_TOL * scale):
        raise InvalidWeight("information matrix is not symmetric")

    info = 0.5 * (info + info.T)
    min_eig = float(np.linalg.eigvalsh(info)[0])
    if min_eig < -_PSD_TOL * scale:
        raise InvalidWeight(f"information matrix is not positive semi-definite (min eigenvalue {min_eig:.3e})")
    return info


def _check_index(value, what: str) -> int:
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, np.integer)):
        raise InvalidConstraint(f"{what} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidConstraint(f"{what} must be non-negative, got {value}")
    return int(value)


@dataclass(eq=False)
class Pose:
    """Position + orientation of the tracked body at one trajectory sample."""
    index: int
    position: np.ndarray
    orientation: np.ndarray

    def __post_init__(self) -> None:
        self.index = _check_index(self.index, "pose index")
        self.position = _as_vector(self.position, 3, "position")
        self.orientation = _as_unit_quaternion(self.orientation, "orientation")


@dataclass(frozen=True, eq=False)
class RelativeConstraint:
    """Measured relative motion ``pose_from⁻¹ ∘ pose_to``."""
    from_index: int
    to_index: int
    translation: np.ndarray
    rotation: np.ndarray
    information: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        i = _check_index(self.from_index, "from_index")
        j = _check_index(self.to_index, "to_index")
        if i == j:
            raise InvalidConstraint(f"relative constraint references pose {i} twice")

        info = np.eye(POSE_DOF) if self.information is None else self.information

        # frozen dataclass: normalized fields are written through object.__setattr__
        object.__setattr__(self, "from_index", i)
        object.__setattr__(self, "to_index", j)
        object.__setattr__(self, "translation", _as_vector(self.translation, 3, "translation"))
        object.__setattr__(self, "rotation", _as_unit_quaternion(self.rotation, "rotation"))
        object.__setattr__(self, "information", check_information(info, POSE_DOF))

    @property
    def pose_indices(self) -> tuple:
        return (self.from_index, self.to_index)


@dataclass(frozen=True, eq=False)
class AnchorConstraint:
    """
    Absolute measurement of a single pose.

    At least one of ``position`` and ``orientation`` must be given. With only
    one of them, ``information`` is 3x3; with both it is 6x6. The part that is
    not measured gets zero weight in :attr:`full_information`.
    """
    pose_index: int
    position: Optional[np.ndarray] = None
    orientation: Optional[np.ndarray] = None
    information: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        idx = _check_index(self.pose_index, "pose_index")
        if self.position is None and self.orientation is None:
            raise InvalidConstraint("anchor needs a position, an orientation, or both")

        size = 6 if (self.position is not None and self.orientation is not None) else 3
        info = np.eye(size) if self.information is None else self.information

        object.__setattr__(self, "pose_index", idx)
        if self.position is not None:
            object.__setattr__(self, "position", _as_vector(self.position, 3, "anchor position"))
        if self.orientation is not None:
            object.__setattr__(self, "orientation", _as_unit_quaternion(self.orientation, "anchor orientation"))
        object.__setattr__(self, "information", check_information(info, size))

    @property
    def pose_indices(self) -> tuple:
        return (self.pose_index,)

    @property
    def measured_position(self) -> np.ndarray:
        return self.position if self.position is not None else np.zeros(3)

    @property
    def measured_orientation(self) -> np.ndarray:
        return self.orientation if self.orientation is not None else np.array([1.0, 0.0, 0.0, 0.0])

    @property
    def full_information(self) -> np.ndarray:
        """6x6 information with zero blocks for the unmeasured part."""
        if self.information.shape == (POSE_DOF, POSE_DOF):
            return self.information
        full = np.zeros((POSE_DOF, POSE_DOF))
        if self.position is not None:
            full[:3, :3] = self.information
        else:
            full[3:, 3:] = self.information
        return full


Constraint = Union[RelativeConstraint, AnchorConstraint]


@dataclass(eq=False)
class Trajectory:
    """
    Ordered poses plus the constraints that relate them.

    Poses get dense indices in insertion order. Constraints are checked
    against the current pose count when added, and again by :meth:`validate`
    before a refinement run.
    """
    poses: List[Pose] = field(default_factory=list)
    constraints: List[Constraint] = field(default_factory=list)

    def __post_init__(self) -> None:
        for k, pose in enumerate(self.poses):
            if pose.index != k:
                raise InvalidConstraint(f"pose at position {k} carries index {pose.index}; indices must be dense")

    def __len__(self) -> int:
        return len(self.poses)

    @classmethod
    def from_arrays(cls, positions: ArrayLike, orientations: ArrayLike) -> "Trajectory":
        """Build a trajectory (without constraints) from (N,3) positions and (N,4) quaternions."""
        positions = np.asarray(positions, dtype=np.float64)
        orientations = np.asarray(orientations, dtype=np.float64)
        if positions.ndim != 2 or orientations.ndim != 2 or positions.shape[0] != orientations.shape[0]:
            raise ValueError("positions and orientations must be (N,3) and (N,4) arrays of equal length")
        traj = cls()
        for p, q in zip(positions, orientations):
            traj.add_pose(p, q)
        return traj

    def add_pose(self, position: ArrayLike, orientation: ArrayLike) -> int:
        """Append a pose and return its index."""
        idx = len(self.poses)
        self.poses.append(Pose(index=idx, position=position, orientation=orientation))
        return idx

    def add_constraint(self, constraint: Constraint) -> Constraint:
        self._check_references(constraint)
        self.constraints.append(constraint)
        return constraint

    def add_relative(
        self,
        from_index: int,
        to_index: int,
        translation: ArrayLike,
        rotation: ArrayLike,
        information: Optional[ArrayLike] = None,
    ) -> RelativeConstraint:
        """Create and add a :class:`RelativeConstraint`."""
        c = RelativeConstraint(
            from_index=from_index,
            to_index=to_index,
            translation=translation,
            rotation=rotation,
            information=information,
        )
        return self.add_constraint(c)

    def add_anchor(
        self,
        pose_index: int,
        position: Optional[ArrayLike] = None,
        orientation: Optional[ArrayLike] = None,
        information: Optional[ArrayLike] = None,
    ) -> AnchorConstraint:
        """Create and add an :class:`AnchorConstraint`."""
        c = AnchorConstraint(
            pose_index=pose_index,
            position=position,
            orientation=orientation,
            information=information,
        )
        return self.add_constraint(c)

    def _check_references(self, constraint: Constraint) -> None:
        n = len(self.poses)
        for idx in constraint.pose_indices:
            if idx >= n:
                raise InvalidConstraint(f"constraint references pose {idx}, but the trajectory has {n} poses")

    def validate(self) -> None:
        """Re-check index density and every constraint reference."""
        for k, pose in enumerate(self.poses):
            if pose.index != k:
                raise InvalidConstraint(f"pose at position {k} carries index {pose.index}; indices must be dense")
        for c in self.constraints:
            self._check_references(c)

    @property
    def relative_constraints(self) -> List[RelativeConstraint]:
        return [c for c in self.constraints if isinstance(c, RelativeConstraint)]

    @property
    def anchor_constraints(self) -> List[AnchorConstraint]:
        return [c for c in self.constraints if isinstance(c, AnchorConstraint)]

    # --- State packing/unpacking ---

    def pack_state(self) -> tuple[np.ndarray, np.ndarray]:
        """Stack pose values into ``(N,3)`` positions and ``(N,4)`` orientations."""
        positions = np.array([p.position for p in self.poses], dtype=np.float64).reshape(-1, 3)
        orientations = np.array([p.orientation for p in self.poses], dtype=np.float64).reshape(-1, 4)
        return positions, orientations

    def unpack_state(self, positions: np.ndarray, orientations: np.ndarray) -> None:
        """Write stacked values back into the poses, in place."""
        positions = np.asarray(positions, dtype=np.float64)
        orientations = np.asarray(orientations, dtype=np.float64)
        for k, pose in enumerate(self.poses):
            pose.position = positions[k].copy()
            q = orientations[k]
            pose.orientation = q / np.linalg.norm(q)
