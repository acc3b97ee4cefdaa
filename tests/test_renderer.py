import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import numpy as np
import pytest

from perch_search.cost import depth_range
from perch_search.errors import ConfigurationError, RenderFailure
from perch_search.observation import Observation, voxel_downsample
from perch_search.renderer import DepthRenderer, backproject, covered
from perch_search.state import NO_DEPTH, ContinuousPose, Placement

from conftest import make_camera, make_models, small_intrinsics


def test_look_at_is_a_proper_rotation():
    cam = make_camera()
    R = cam.pose[:3, :3]
    assert np.allclose(R.T @ R, np.eye(3))
    assert np.linalg.det(R) == pytest.approx(1.0)
    # optical axis points down at the table
    assert np.allclose(R[:, 2], [0.0, 0.0, -1.0])
    p = cam.world_to_camera(np.array([[0.0, 0.0, 0.0]]))
    assert np.allclose(p, [[0.0, 0.0, 1.0]])
    assert np.allclose(cam.camera_to_world(p), [[0.0, 0.0, 0.0]])


def test_render_top_of_cylinder():
    renderer = DepthRenderer(make_models(), make_camera())
    depth = renderer.render([Placement(0, ContinuousPose(0.0, 0.0, 0.0))])
    assert depth.dtype == np.uint16
    assert depth.shape == (120, 160)
    # the top disk sits at z = 0.1, 0.9 m in front of the camera
    assert np.all(depth[57:63, 77:83] == 900)
    assert depth[0, 0] == NO_DEPTH
    assert renderer.num_renders == 1

    pts = backproject(depth, renderer.camera, covered(depth))
    top = pts[np.abs(pts[:, 2] - 0.1) < 2e-3]
    assert len(top) > 0
    assert np.abs(top[:, :2]).max() < 0.05


def test_empty_render_and_reuse():
    renderer = DepthRenderer(make_models(), make_camera())
    assert np.all(renderer.render([]) == NO_DEPTH)
    a = renderer.render([Placement(1, ContinuousPose(0.2, 0.0))])
    renderer.render([Placement(0, ContinuousPose(-0.2, 0.1))])
    b = renderer.render([Placement(1, ContinuousPose(0.2, 0.0))])
    np.testing.assert_array_equal(a, b)


def test_render_failures():
    renderer = DepthRenderer(make_models())
    with pytest.raises(RenderFailure):
        renderer.render([])
    renderer.set_camera(make_camera())
    with pytest.raises(RenderFailure):
        renderer.render([Placement(7, ContinuousPose(0.0, 0.0))])


def test_nearer_surface_wins():
    renderer = DepthRenderer(make_models(), make_camera())
    tall = renderer.render([Placement(0, ContinuousPose(0.0, 0.0))])
    short = renderer.render([Placement(1, ContinuousPose(0.0, 0.0))])
    both = renderer.render([Placement(1, ContinuousPose(0.0, 0.0)), Placement(0, ContinuousPose(0.0, 0.0))])
    np.testing.assert_array_equal(both, np.minimum(tall, short))


def test_observation_indices(observation):
    assert len(observation) == int(covered(observation.depth).sum())
    assert len(observation.icp_points) <= len(observation)
    assert observation.has_support(np.array([0.0, 0.0, 0.1]), 0.01)
    assert not observation.has_support(np.array([-0.3, -0.3, 0.05]), 0.05)
    sample = observation.points[len(observation) // 2]
    hits = observation.explained(np.vstack([sample, sample + [0.0, 0.0, 0.5]]), 0.005)
    assert hits.tolist() == [True, False]
    props = depth_range(observation.depth, covered(observation.depth))
    assert props.min_depth == 900 and props.max_depth < NO_DEPTH


def test_observation_save_load(observation, tmp_path):
    path = tmp_path / "obs.npz"
    observation.save(path)
    loaded = Observation.load(path, small_intrinsics())
    np.testing.assert_array_equal(loaded.depth, observation.depth)
    assert np.allclose(loaded.points, observation.points)
    with pytest.raises(ConfigurationError):
        Observation.load(tmp_path / "missing.npz", small_intrinsics())


def test_observation_rejects_empty_and_mismatched():
    cam = make_camera()
    with pytest.raises(ConfigurationError):
        Observation(np.full((120, 160), NO_DEPTH, dtype=np.uint16), cam)
    with pytest.raises(ConfigurationError):
        Observation(np.full((10, 10), 900, dtype=np.uint16), cam)


def test_voxel_downsample_centroids():
    pts = np.array([[0.001, 0.001, 0.0], [0.003, 0.003, 0.0], [0.021, 0.0, 0.0]])
    out = voxel_downsample(pts, 0.01)
    assert len(out) == 2
    assert np.allclose(sorted(out[:, 0]), [0.002, 0.021])
    assert np.allclose(voxel_downsample(pts, 0.0), pts)
