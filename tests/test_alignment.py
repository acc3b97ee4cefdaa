import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import math

import numpy as np
import pytest

from perch_search.alignment import AlignmentResult, PlanarICP, apply_correction, estimate_rigid_2d
from perch_search.state import ContinuousPose


def _scatter():
    # jittered grid: every point is at least 12 mm from its neighbours
    rng = np.random.default_rng(1)
    g = np.linspace(-0.1, 0.1, 11)
    xx, yy = np.meshgrid(g, g)
    xy = np.column_stack([xx.ravel(), yy.ravel()]) + rng.uniform(-0.004, 0.004, size=(xx.size, 2))
    return np.column_stack([xy, np.full(len(xy), 0.05)])


def _move(points, phi, t):
    c, s = math.cos(phi), math.sin(phi)
    out = points.copy()
    out[:, 0] = c * points[:, 0] - s * points[:, 1] + t[0]
    out[:, 1] = s * points[:, 0] + c * points[:, 1] + t[1]
    return out


def test_estimate_rigid_2d_exact():
    rng = np.random.default_rng(0)
    a = rng.uniform(-0.1, 0.1, size=(30, 2))
    phi = 0.3
    R_true = np.array([[math.cos(phi), -math.sin(phi)], [math.sin(phi), math.cos(phi)]])
    b = a @ R_true.T + [0.02, -0.01]
    R, t = estimate_rigid_2d(a, b)
    assert np.allclose(R, R_true)
    assert np.allclose(t, [0.02, -0.01])


def test_icp_recovers_small_offset():
    target = _scatter()
    source = _move(target, 0.02, (0.002, -0.0015))
    icp = PlanarICP(target, 0.1)
    result = icp.align(source)
    assert result.converged
    aligned = _move(source, result.rotation, result.translation)
    assert np.abs(aligned - target).max() < 1e-6
    assert result.fitness < 1e-5
    # the source cloud is left untouched
    assert np.allclose(source, _move(target, 0.02, (0.002, -0.0015)))


def test_icp_without_correspondences_does_not_converge():
    target = _scatter()
    far = target + [1.0, 0.0, 0.0]
    result = PlanarICP(target, 0.05).align(far)
    assert not result.converged
    assert result.fitness == math.inf
    assert PlanarICP(target, 0.05).align(far[:2]).converged is False


def test_apply_correction():
    pose = ContinuousPose(0.1, 0.0, 0.2)
    res = AlignmentResult(True, 0.0, rotation=math.pi / 2, translation=(0.01, 0.02))
    out = apply_correction(pose, res)
    assert out.x == pytest.approx(0.01)
    assert out.y == pytest.approx(0.12)
    assert out.yaw == pytest.approx(0.2 + math.pi / 2)
    assert np.allclose(res.matrix() @ [0.1, 0.0, 1.0], [0.01, 0.12, 1.0])
    assert apply_correction(pose, AlignmentResult(False, math.inf, rotation=1.0)) == pose


def test_transformation_epsilon_is_off_by_default():
    from perch_search.config import EnvConfig

    assert EnvConfig().icp_transformation_epsilon == 0.0
    target = _scatter()
    source = _move(target, 0.02, (0.002, -0.0015))
    default = PlanarICP(target, 0.1).align(source)
    # any first increment is below a huge threshold, so it stops right away
    coarse = PlanarICP(target, 0.1, transformation_epsilon=1.0).align(source)
    assert coarse.converged and coarse.iterations == 1
    assert default.iterations > 1
