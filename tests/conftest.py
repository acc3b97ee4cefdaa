import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1]))

import os
os.environ.setdefault("MPLBACKEND", "Agg")

import pytest

from perch_search.config import CameraIntrinsics, EnvConfig
from perch_search.environment import ObjectRecognitionEnv
from perch_search.models import cylinder_model
from perch_search.observation import Observation
from perch_search.renderer import Camera, DepthRenderer
from perch_search.state import ContinuousPose, Placement

# Two upright cylinders seen from straight above: a tall wide can at the
# origin and a short narrow one at (0.2, 0).
TRUTH = [(0, 0.0, 0.0, 0.0), (1, 0.2, 0.0, 0.0)]

MODEL_SPECS = [
    {"name": "tall_can", "shape": "cylinder", "radius": 0.04, "height": 0.10},
    {"name": "short_can", "shape": "cylinder", "radius": 0.03, "height": 0.06},
]

CAMERA_EYE = (0.0, 0.0, 1.0)

# Side view from above the table edge (the CLI default); can walls are visible.
OBLIQUE_EYE = (-1.0, 0.0, 0.5)


def small_intrinsics():
    return CameraIntrinsics(width=160, height=120, fx=150.0, fy=150.0, cx=79.5, cy=59.5)


def make_config(**overrides):
    kwargs = dict(
        num_objects=2,
        camera=small_intrinsics(),
        models=[dict(m) for m in MODEL_SPECS],
        collective_timeout_s=120.0,
    )
    kwargs.update(overrides)
    return EnvConfig(**kwargs)


def make_models():
    return [
        cylinder_model("tall_can", 0.04, 0.10),
        cylinder_model("short_can", 0.03, 0.06),
    ]


def make_camera(eye=CAMERA_EYE):
    return Camera.look_at(eye, (0.0, 0.0, 0.0), small_intrinsics())


def truth_placements():
    return [Placement(m, ContinuousPose(x, y, t)) for m, x, y, t in TRUTH]


def make_observation(models=None, camera=None):
    models = models or make_models()
    renderer = DepthRenderer(models, camera or make_camera())
    return Observation.synthetic(renderer, truth_placements())


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def models():
    return make_models()


@pytest.fixture
def camera():
    return make_camera()


@pytest.fixture
def observation(models, camera):
    return make_observation(models, camera)


@pytest.fixture
def oblique_camera():
    return make_camera(OBLIQUE_EYE)


@pytest.fixture
def oblique_observation(models, oblique_camera):
    return make_observation(models, oblique_camera)


@pytest.fixture
def env(config, models, observation):
    return ObjectRecognitionEnv(config, models, observation)
