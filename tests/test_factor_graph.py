from __future__ import annotations

import numpy as np
import pytest

from path_refine.core.errors import InvalidConstraint, UnderdeterminedProblem
from path_refine.core.factor_graph import (
    RESIDUAL_DIM,
    TrajectoryProblem,
    check_gauge,
    find_unpinned_components,
)
from path_refine.core.types import Trajectory
from path_refine.optimization.robust import HuberLoss, TrivialLoss
from path_refine.synthetic import helix_path, make_trajectory, perturb_path

IDENTITY_Q = [1.0, 0.0, 0.0, 0.0]


def _line(n: int) -> Trajectory:
    traj = Trajectory()
    for k in range(n):
        traj.add_pose([float(k), 0.0, 0.0], IDENTITY_Q)
    return traj


def test_problem_dimensions_and_row_order():
    """
    Three poses, two relative constraints and one anchor added first.
    Rows are ordered relatives first, then anchors.
    """
    traj = _line(3)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(1, 2, translation=[1, 0, 0], rotation=IDENTITY_Q)

    problem = TrajectoryProblem(traj)
    assert problem.num_poses == 3
    assert problem.num_relative == 2
    assert problem.num_anchors == 1
    assert problem.num_residuals == 18
    assert problem.num_parameters == 18

    lin = problem.linearize(*traj.pack_state())
    assert lin.residual.shape == (18,)
    assert lin.jacobian.shape == (18, 18)
    assert lin.cost == pytest.approx(0.0, abs=1e-20)
    assert lin.is_finite()

    # constraint_costs follow trajectory order: the anchor is entry 0
    assert lin.constraint_costs.shape == (3,)


def test_jacobian_sparsity_pattern():
    traj = _line(4)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(1, 3, translation=[2, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(2, 3, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_anchor(2, position=[2, 0, 0], orientation=IDENTITY_Q)

    problem = TrajectoryProblem(traj)
    J = problem.linearize(*traj.pack_state()).jacobian.toarray()

    block_used = np.zeros((4, 4), dtype=bool)
    for rb in range(4):
        for cb in range(4):
            block = J[rb * 6:(rb + 1) * 6, cb * 6:(cb + 1) * 6]
            block_used[rb, cb] = bool(np.any(block != 0.0))

    expected = np.array(
        [
            [True, True, False, False],   # 0 -> 1
            [False, True, False, True],   # 1 -> 3
            [False, False, True, True],   # 2 -> 3
            [False, False, True, False],  # anchor on 2
        ]
    )
    assert np.array_equal(block_used, expected)


def test_residual_nonzero_when_inconsistent():
    traj = _line(2)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1.5, 0, 0], rotation=IDENTITY_Q)

    problem = TrajectoryProblem(traj)
    lin = problem.linearize(*traj.pack_state())
    assert lin.cost == pytest.approx(0.25)
    assert lin.constraint_costs[0] == pytest.approx(0.0)
    assert lin.constraint_costs[1] == pytest.approx(0.25)
    assert problem.cost(*traj.pack_state()) == pytest.approx(lin.cost)

    g = lin.gradient()
    assert g.shape == (12,)
    assert np.any(g != 0.0)


def test_no_anchor_is_underdetermined():
    traj = _line(3)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(1, 2, translation=[1, 0, 0], rotation=IDENTITY_Q)
    with pytest.raises(UnderdeterminedProblem):
        TrajectoryProblem(traj)


def test_disconnected_component_without_anchor_is_underdetermined():
    traj = _line(5)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(3, 4, translation=[1, 0, 0], rotation=IDENTITY_Q)

    assert find_unpinned_components(traj) == [[3, 4]]
    with pytest.raises(UnderdeterminedProblem):
        check_gauge(traj)

    # position alone still lets {3, 4} spin about pose 4
    traj.add_anchor(4, position=[4, 0, 0])
    assert find_unpinned_components(traj) == [[3, 4]]
    with pytest.raises(UnderdeterminedProblem):
        check_gauge(traj)

    traj.add_anchor(3, orientation=IDENTITY_Q)
    assert find_unpinned_components(traj) == []
    check_gauge(traj)


def _chain(n: int) -> Trajectory:
    traj = _line(n)
    for k in range(n - 1):
        traj.add_relative(k, k + 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    return traj


def test_orientation_only_anchor_leaves_translation_free():
    traj = _chain(3)
    traj.add_anchor(0, orientation=IDENTITY_Q)
    assert find_unpinned_components(traj) == [[0, 1, 2]]
    with pytest.raises(UnderdeterminedProblem):
        TrajectoryProblem(traj)


def test_position_only_anchor_leaves_rotation_free():
    traj = _chain(3)
    traj.add_anchor(0, position=[0, 0, 0])
    with pytest.raises(UnderdeterminedProblem):
        TrajectoryProblem(traj)

    # a second point still leaves rotation about the line through both
    traj.add_anchor(2, position=[2, 0, 0])
    with pytest.raises(UnderdeterminedProblem):
        TrajectoryProblem(traj)


def test_split_anchors_pin_a_component_jointly():
    traj = _chain(3)
    traj.add_anchor(0, position=[0, 0, 0])
    traj.add_anchor(2, orientation=IDENTITY_Q)
    assert TrajectoryProblem(traj).num_anchors == 2


def test_non_collinear_position_anchors_pin_rotation():
    traj = Trajectory()
    for p in ([0, 0, 0], [1, 0, 0], [1, 1, 0]):
        traj.add_pose(p, IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(1, 2, translation=[0, 1, 0], rotation=IDENTITY_Q)
    for k, pose in enumerate(traj.poses):
        traj.add_anchor(k, position=pose.position)
    check_gauge(traj)


def test_anchor_far_from_origin_still_pins_gauge():
    traj = Trajectory()
    for k in range(3):
        traj.add_pose([5.0e5 + k, -3.0e5, 100.0], IDENTITY_Q)
    for k in range(2):
        traj.add_relative(k, k + 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_anchor(0, position=[5.0e5, -3.0e5, 100.0], orientation=IDENTITY_Q)
    traj.add_anchor(2, position=[5.0e5 + 2, -3.0e5, 100.0], information=1e4 * np.eye(3))
    check_gauge(traj)


def test_semi_definite_anchor_information_is_underdetermined():
    traj = _chain(2)
    traj.add_anchor(
        0, position=[0, 0, 0], orientation=IDENTITY_Q,
        information=np.diag([1.0, 1.0, 1.0, 1.0, 1.0, 0.0]),
    )
    with pytest.raises(UnderdeterminedProblem):
        check_gauge(traj)


def test_missing_pose_reference_raises_before_assembly():
    traj = _line(3)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(1, 2, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.poses.pop()
    with pytest.raises(InvalidConstraint):
        TrajectoryProblem(traj)


def test_weak_observability_flags():
    """
    pose 0: fully anchored, pose 1: tied to pose 0 -> both well observed.
    pose 2: tied to pose 1 with no weight on z -> weak.
    pose 3: no constraint at all -> weak.
    """
    traj = _line(4)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(
        1, 2, translation=[1, 0, 0], rotation=IDENTITY_Q,
        information=np.diag([1.0, 1.0, 0.0, 1.0, 1.0, 1.0]),
    )

    problem = TrajectoryProblem(traj)
    flags = problem.weakly_observed(problem.linearize(*traj.pack_state()))
    assert flags.tolist() == [False, False, True, True]


def test_semi_definite_information_leaves_direction_weak():
    info = np.diag([1.0, 1.0, 0.0, 1.0, 1.0, 1.0])
    traj = _line(2)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1, 0, 0], rotation=IDENTITY_Q, information=info)

    problem = TrajectoryProblem(traj)
    flags = problem.weakly_observed(problem.linearize(*traj.pack_state()))
    assert flags.tolist() == [False, True]


def test_robust_loss_downweights_large_residual_rows():
    traj = _line(3)
    traj.add_anchor(0, position=[0, 0, 0], orientation=IDENTITY_Q)
    traj.add_relative(0, 1, translation=[1.0, 0, 0], rotation=IDENTITY_Q)
    traj.add_relative(1, 2, translation=[5.0, 0, 0], rotation=IDENTITY_Q)
    state = traj.pack_state()

    plain = TrajectoryProblem(traj, loss=TrivialLoss()).linearize(*state)
    robust = TrajectoryProblem(traj, loss=HuberLoss(0.5)).linearize(*state)

    # the 1 -> 2 constraint has error 4: Huber cost 2*0.5*4 - 0.25
    assert plain.cost == pytest.approx(16.0)
    assert robust.cost == pytest.approx(3.75)

    rows = slice(RESIDUAL_DIM, 2 * RESIDUAL_DIM)
    weight = np.sqrt(0.5 / 4.0)
    assert np.allclose(robust.residual[rows], weight * plain.residual[rows])
    assert np.allclose(
        robust.jacobian.toarray()[rows], weight * plain.jacobian.toarray()[rows]
    )
    # inlier rows are untouched
    assert np.allclose(robust.jacobian.toarray()[:RESIDUAL_DIM], plain.jacobian.toarray()[:RESIDUAL_DIM])


def test_problem_reused_across_estimates():
    truth = helix_path(8)
    start = perturb_path(truth, sigma_t=0.05, sigma_r=0.02, rng=np.random.default_rng(0))
    traj = make_trajectory(truth, initial=start, skip_edges=True)
    problem = TrajectoryProblem(traj)

    at_truth = problem.linearize(truth.positions, truth.orientations)
    at_start = problem.linearize(start.positions, start.orientations)
    assert at_truth.cost == pytest.approx(0.0, abs=1e-18)
    assert at_start.cost > 1e-4
    assert at_start.jacobian.shape == at_truth.jacobian.shape
