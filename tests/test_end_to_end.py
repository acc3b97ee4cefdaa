import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import argparse
import warnings

import numpy as np
import orjson
import pandas as pd
import pytest

import perch_search.plotting as perch_plot
from perch_search.main import main, parse_placements
from perch_search.recognizer import ObjectRecognizer, placements_frame

from conftest import MODEL_SPECS, TRUTH, make_camera, make_config, make_models


def _assert_matches_truth(poses):
    assert poses["model_id"].tolist() == [m for m, *_ in TRUTH]
    expected = np.array([[x, y] for _, x, y, _ in TRUTH])
    assert np.abs(poses[["x", "y"]].to_numpy() - expected).max() <= 0.02


def test_recognizes_two_cans():
    rec = ObjectRecognizer(make_config(), make_models())
    obs = rec.synthetic_observation(make_camera(), TRUTH)
    result = rec.localize(obs, record_graph=True)
    assert result.solved
    _assert_matches_truth(result.poses)
    assert result.path[0] == 1 and result.path[-1] == 0
    assert len(result.path) == 4
    assert result.planner_stats.solution_cost >= 0
    assert result.env_stats.expansions >= 3
    transforms = result.transforms()
    assert set(transforms) == {0, 1}
    assert np.allclose(transforms[1][:3, 3], [0.2, 0.0, 0.0], atol=0.02)
    assert rec.last_env.graph.number_of_nodes() > 0


def test_worker_pool_gives_same_answer():
    rec = ObjectRecognizer(make_config(), make_models())
    obs = rec.synthetic_observation(make_camera(), TRUTH)
    serial = rec.localize(obs, heuristics=(0, 1))
    pooled = rec.localize(obs, num_workers=2, heuristics=(0, 1))
    assert pooled.solved
    pd.testing.assert_frame_equal(serial.poses, pooled.poses)
    assert pooled.planner_stats.solution_cost == serial.planner_stats.solution_cost


def test_placements_frame_sorted_by_model():
    from perch_search.state import ContinuousPose, Placement, PlacementState

    state = PlacementState((Placement(1, ContinuousPose(0.2, 0.0)), Placement(0, ContinuousPose(0.0, 0.1))))
    df = placements_frame(state, make_models())
    assert df["model_id"].tolist() == [0, 1]
    assert df["name"].tolist() == ["tall_can", "short_can"]


def test_parse_placements():
    assert parse_placements(["0:0.1:-0.2", "1:0:0:1.5"]) == [(0, 0.1, -0.2, 0.0), (1, 0.0, 0.0, 1.5)]
    with pytest.raises(argparse.ArgumentTypeError):
        parse_placements(["0:0.1"])


def _write_config(tmp_path):
    cfg = {
        "num_objects": 2,
        "camera": {"width": 160, "height": 120, "fx": 150.0, "fy": 150.0, "cx": 79.5, "cy": 59.5},
        "models": MODEL_SPECS,
    }
    path = tmp_path / "scene.json"
    path.write_bytes(orjson.dumps(cfg))
    return path


def test_cli_synthetic_scene(tmp_path):
    cfg = _write_config(tmp_path)
    out = tmp_path / "poses.json"
    plot = tmp_path / "poses.png"
    obs = tmp_path / "obs.npz"
    code = main([
        "--config", str(cfg),
        "--synthetic", "0:0:0:0", "--synthetic", "1:0.2:0:0",
        "--camera-eye", "0", "0", "1",
        "--heuristics", "0", "1",
        "--out", str(out),
        "--plot-out", str(plot),
        "--save-observation", str(obs),
    ])
    assert code == 0
    report = orjson.loads(out.read_bytes())
    _assert_matches_truth(pd.DataFrame(report["poses"]))
    assert set(report["transforms"]) == {"0", "1"}
    assert plot.exists() and obs.exists()

    # the saved snapshot can be replayed as a real observation
    code = main(["--config", str(cfg), "--observation", str(obs), "--heuristics", "0", "1"])
    assert code == 0


def test_cli_reports_configuration_errors(tmp_path):
    assert main(["--config", str(tmp_path / "nope.json"), "--synthetic", "0:0:0"]) == 2


def test_plots_are_written(tmp_path, observation):
    rec = ObjectRecognizer(make_config(), make_models())
    result = rec.localize(observation, heuristics=(0, 1), record_graph=True)
    perch_plot.plot_placements(result.state, rec.models, observation.points, out_path=tmp_path / "top.png")
    perch_plot.plot_search_graph(rec.last_env.graph, result.path, out_path=tmp_path / "graph.png")
    perch_plot.save_depth_image(observation.depth, tmp_path / "depth.png", title="observed")
    assert all((tmp_path / name).exists() for name in ("top.png", "graph.png", "depth.png"))


def test_depth_image_without_colormap_warnings(tmp_path, observation):
    from perch_search.state import NO_DEPTH

    with warnings.catch_warnings():
        warnings.simplefilter("error", PendingDeprecationWarning)
        perch_plot.save_depth_image(observation.depth, tmp_path / "depth.png")
        blank = np.full_like(observation.depth, NO_DEPTH)
        perch_plot.save_depth_image(blank, tmp_path / "blank.png")
    assert (tmp_path / "depth.png").exists() and (tmp_path / "blank.png").exists()
