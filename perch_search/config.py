r"""
Search configuration.

A single :class:`EnvConfig` is built once (from defaults, a mapping, or a JSON
file) and threaded through every component; nothing reads process globals.

Geometry conventions
--------------------
World frame: the support plane is :math:`z = z_\text{table}` and object poses
are :math:`(x, y, \psi)` with yaw :math:`\psi` about world :math:`+z`.
The pose grid spans

.. math::

    x_i = x_\min + i\,\Delta, \quad i = 0,\dots,\left\lfloor\frac{x_\max - x_\min}{\Delta}\right\rfloor,

likewise for :math:`y`, and :math:`\psi_k = k\,\Delta_\psi` with
:math:`\Delta_\psi = 2\pi / n_\theta`.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import orjson

from perch_search.errors import ConfigurationError

__all__ = ["CameraIntrinsics", "EnvConfig", "load_config", "dump_json"]


@dataclass(slots=True)
class CameraIntrinsics:
    """Pinhole intrinsics; defaults are the Kinect values used in the experiments."""
    width: int = 640
    height: int = 480
    fx: float = 576.09757860
    fy: float = 576.09757860
    cx: float = 321.06398107
    cy: float = 242.97676897
    near: float = 0.1
    far: float = 20.0

    def validate(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"camera image size must be positive, got {self.width}x{self.height}")
        if self.fx <= 0 or self.fy <= 0:
            raise ConfigurationError("camera focal lengths must be positive")
        if not (0.0 < self.near < self.far):
            raise ConfigurationError(f"camera clip range invalid: near={self.near}, far={self.far}")


@dataclass(slots=True)
class EnvConfig:
    r"""
    Configuration of one recognition episode.

    Attributes
    ----------
    x_min, x_max, y_min, y_max : float
        Planar search bounds (world metres).
    res : float
        Linear grid resolution :math:`\Delta`. Also sets the ICP correspondence
        bound :math:`\Delta/2` and the support-test slack.
    num_thetas : int
        Number of yaw samples over :math:`[0, 2\pi)`.
    table_height : float
        Height of the support plane.
    num_objects : int
        Number of objects in the scene; a state holding this many placements is
        a goal.
    position_tolerance, yaw_tolerance : float
        State-equality tolerances.
    sensor_resolution : float
        Radius used to decide whether a hypothesized point is explained.
    icp_max_iterations, icp_fitness_epsilon, icp_transformation_epsilon : float
        Local alignment stopping criteria. A transformation epsilon of 0 disables
        the increment test.
    downsample_leaf : float
        Voxel size of the ICP target cloud.
    icp_cost_multiplier : int
        Scale applied to ICP residuals in the greedy heuristic.
    wire_capacity : int
        Maximum placements representable in one wire record.
    use_source_cost : bool
        Enables the observed-pixel (source) cost term for serial evaluation.
    source_radius : float
        Neighbour radius of the source cost term.
    collective_timeout_s : float or None
        Deadline for each collective receive inside an expansion step.
    splat_radius : int
        Half-width (pixels) of the square each rendered point covers.
    point_spacing : float
        Surface sampling step for primitive models.
    camera : CameraIntrinsics
        Sensor intrinsics.
    models : list of dict
        Model specs, see :func:`perch_search.models.model_from_spec`.
    image_debug : bool
        Save depth images of expanded states to ``debug_dir``.
    """
    x_min: float = -0.3
    x_max: float = 0.31
    y_min: float = -0.3
    y_max: float = 0.31
    res: float = 0.2
    num_thetas: int = 16
    table_height: float = 0.0
    num_objects: int = 1
    position_tolerance: float = 0.02
    yaw_tolerance: float = 0.1
    sensor_resolution: float = 0.005
    icp_max_iterations: int = 50
    icp_fitness_epsilon: float = 1e-5
    icp_transformation_epsilon: float = 0.0
    downsample_leaf: float = 0.005
    icp_cost_multiplier: int = 1_000_000
    wire_capacity: int = 4
    use_source_cost: bool = False
    source_radius: float = 0.05
    collective_timeout_s: Optional[float] = 600.0
    splat_radius: int = 1
    point_spacing: float = 0.003
    camera: CameraIntrinsics = field(default_factory=CameraIntrinsics)
    models: List[Dict[str, Any]] = field(default_factory=list)
    image_debug: bool = False
    debug_dir: str = "perch_debug"

    @property
    def theta_res(self) -> float:
        return 2.0 * math.pi / self.num_thetas

    def validate(self, num_models: Optional[int] = None) -> "EnvConfig":
        r"""
        Check the configuration and return ``self``.

        Parameters
        ----------
        num_models : int, optional
            Size of the model library actually loaded; defaults to
            ``len(self.models)``.

        Raises
        ------
        ConfigurationError
            On empty model library, inverted bounds, non-positive resolutions,
            an object count that exceeds the library or the wire capacity, or
            invalid camera intrinsics.
        """
        n_models = len(self.models) if num_models is None else int(num_models)
        if n_models <= 0:
            raise ConfigurationError("model library is empty")
        if not (self.x_min < self.x_max and self.y_min < self.y_max):
            raise ConfigurationError(
                f"invalid bounds x=[{self.x_min}, {self.x_max}] y=[{self.y_min}, {self.y_max}]"
            )
        if self.res <= 0 or self.num_thetas <= 0:
            raise ConfigurationError("grid resolution and theta count must be positive")
        if self.num_objects <= 0:
            raise ConfigurationError("num_objects must be at least 1")
        if self.num_objects > n_models:
            raise ConfigurationError(
                f"num_objects={self.num_objects} exceeds the {n_models} available models"
            )
        if self.wire_capacity <= 0 or self.num_objects > self.wire_capacity:
            raise ConfigurationError(
                f"num_objects={self.num_objects} does not fit the wire capacity {self.wire_capacity}"
            )
        if self.sensor_resolution <= 0 or self.downsample_leaf < 0:
            raise ConfigurationError("sensor_resolution must be positive and downsample_leaf non-negative")
        if self.icp_max_iterations <= 0:
            raise ConfigurationError("icp_max_iterations must be positive")
        if self.collective_timeout_s is not None and self.collective_timeout_s <= 0:
            raise ConfigurationError("collective_timeout_s must be positive or null")
        if self.splat_radius < 0 or self.point_spacing <= 0:
            raise ConfigurationError("splat_radius must be >= 0 and point_spacing > 0")
        self.camera.validate()
        return self

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "EnvConfig":
        """Build from a (JSON-decoded) mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - known)
        if unknown:
            raise ConfigurationError(f"unknown configuration keys: {', '.join(unknown)}")
        kwargs = dict(raw)
        cam = kwargs.pop("camera", None)
        try:
            if cam is not None:
                kwargs["camera"] = cam if isinstance(cam, CameraIntrinsics) else CameraIntrinsics(**cam)
            cfg = cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"invalid configuration: {e}") from e
        cfg.models = [dict(m) for m in cfg.models]
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def load_config(path: Union[str, Path]) -> EnvConfig:
    r"""
    Load an :class:`EnvConfig` from a JSON file.

    Parameters
    ----------
    path : str or pathlib.Path
        JSON document with flat keys, an optional ``"camera"`` object and a
        ``"models"`` list.

    Returns
    -------
    EnvConfig
        Parsed (not yet validated) configuration.

    Raises
    ------
    ConfigurationError
        If the file is missing, is not valid JSON, or has unknown keys.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"config file not found: {p}")
    try:
        raw = orjson.loads(p.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ConfigurationError(f"failed to parse JSON config {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"config root must be an object, got {type(raw).__name__}")
    return EnvConfig.from_mapping(raw)


def dump_json(obj: Any, path: Union[str, Path]) -> None:
    """Write ``obj`` as indented JSON (numpy arrays and scalars allowed)."""
    Path(path).write_bytes(orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_SERIALIZE_NUMPY))
