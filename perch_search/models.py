r"""
Object model library.

Every model is represented by a dense sample of its surface in a local frame
whose origin is the centre of the base footprint and whose base lies on
:math:`z=0`. A placement :math:`(x, y, \psi)` maps a model point
:math:`p = (p_x, p_y, p_z)` to world coordinates

.. math::

    w = \begin{pmatrix} R(\psi) & 0 \\ 0 & 1 \end{pmatrix} p
        + \begin{pmatrix} x \\ y \\ z_\text{table} \end{pmatrix},
    \qquad
    R(\psi) = \begin{pmatrix}\cos\psi & -\sin\psi \\ \sin\psi & \cos\psi\end{pmatrix}.

Footprint radii are derived from the base points (:math:`p_z < 0.01`): with
footprint extents :math:`\Delta_x, \Delta_y`,

.. math::

    r_\text{in} = \tfrac12 \min(\Delta_x, \Delta_y), \qquad
    r_\text{out} = \tfrac12 \max(\Delta_x, \Delta_y).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Sequence

import numpy as np

from perch_search.errors import ConfigurationError
from perch_search.state import ContinuousPose

__all__ = [
    "ObjectModel",
    "cylinder_model",
    "box_model",
    "model_from_spec",
    "load_models",
    "transform_points",
    "placement_transform",
]

FOOTPRINT_HEIGHT = 0.01


@dataclass(slots=True)
class ObjectModel:
    r"""
    Surface-sampled rigid object.

    Parameters
    ----------
    name : str
        Human-readable identifier.
    points : ndarray, shape (N, 3)
        Surface samples in any frame; they are re-centred on construction so
        that the base footprint is centred at the origin and the lowest point is
        at :math:`z=0`.
    symmetric : bool
        Rotationally symmetric about the vertical axis; yaw is then ignored by
        pose enumeration and state equality.

    Attributes
    ----------
    inscribed_radius, circumscribed_radius : float
        Footprint radii used for overlap pruning and the support test.
    height : float
        Extent along :math:`z`.
    """
    name: str
    points: np.ndarray
    symmetric: bool = False
    inscribed_radius: float = field(init=False, default=0.0)
    circumscribed_radius: float = field(init=False, default=0.0)
    height: float = field(init=False, default=0.0)

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[1] != 3 or pts.shape[0] == 0:
            raise ConfigurationError(f"model {self.name!r}: points must be a non-empty (N,3) array")
        pts = pts - np.array([0.0, 0.0, pts[:, 2].min()])
        base = pts[pts[:, 2] < FOOTPRINT_HEIGHT]
        lo = base[:, :2].min(axis=0)
        hi = base[:, :2].max(axis=0)
        centre = 0.5 * (lo + hi)
        pts[:, :2] -= centre
        ext = hi - lo
        self.points = np.ascontiguousarray(pts)
        self.inscribed_radius = 0.5 * float(ext.min())
        self.circumscribed_radius = 0.5 * float(ext.max())
        self.height = float(pts[:, 2].max())


def transform_points(points: np.ndarray, pose: ContinuousPose, table_height: float = 0.0) -> np.ndarray:
    """Apply a planar placement to model-frame points; returns a new (N,3) array."""
    c, s = math.cos(pose.yaw), math.sin(pose.yaw)
    out = np.empty_like(points)
    out[:, 0] = c * points[:, 0] - s * points[:, 1] + pose.x
    out[:, 1] = s * points[:, 0] + c * points[:, 1] + pose.y
    out[:, 2] = points[:, 2] + table_height
    return out


def placement_transform(pose: ContinuousPose, table_height: float = 0.0) -> np.ndarray:
    """4x4 homogeneous model-to-world transform of a placement."""
    c, s = math.cos(pose.yaw), math.sin(pose.yaw)
    T = np.eye(4)
    T[:2, :2] = [[c, -s], [s, c]]
    T[:3, 3] = [pose.x, pose.y, table_height]
    return T


def _disk(radius: float, z: float, spacing: float) -> np.ndarray:
    # concentric rings keep the rim sampled exactly at ``radius``
    rings = [np.zeros((1, 2))]
    n_rings = max(1, int(math.ceil(radius / spacing)))
    for k in range(1, n_rings + 1):
        r = radius * k / n_rings
        n = max(6, int(math.ceil(2.0 * math.pi * r / spacing)))
        a = np.linspace(0.0, 2.0 * math.pi, n, endpoint=False)
        rings.append(np.column_stack([r * np.cos(a), r * np.sin(a)]))
    xy = np.vstack(rings)
    return np.column_stack([xy, np.full(len(xy), z)])


def cylinder_model(name: str, radius: float, height: float, *, spacing: float = 0.003,
                   symmetric: bool = True) -> ObjectModel:
    """Upright cylinder sampled on its top, bottom and side surfaces."""
    if radius <= 0 or height <= 0:
        raise ConfigurationError(f"cylinder {name!r}: radius and height must be positive")
    n_a = max(12, int(math.ceil(2.0 * math.pi * radius / spacing)))
    n_z = max(2, int(math.ceil(height / spacing)) + 1)
    a = np.linspace(0.0, 2.0 * math.pi, n_a, endpoint=False)
    z = np.linspace(0.0, height, n_z)
    aa, zz = np.meshgrid(a, z)
    side = np.column_stack([radius * np.cos(aa).ravel(), radius * np.sin(aa).ravel(), zz.ravel()])
    pts = np.vstack([side, _disk(radius, 0.0, spacing), _disk(radius, height, spacing)])
    return ObjectModel(name, pts, symmetric=symmetric)


def box_model(name: str, size_x: float, size_y: float, size_z: float, *, spacing: float = 0.003,
              symmetric: bool = False) -> ObjectModel:
    """Axis-aligned box sampled on all six faces."""
    dims = np.array([size_x, size_y, size_z], dtype=np.float64)
    if np.any(dims <= 0):
        raise ConfigurationError(f"box {name!r}: all sizes must be positive")
    axes = [np.linspace(-d / 2.0, d / 2.0, max(2, int(math.ceil(d / spacing)) + 1)) for d in dims]
    faces: List[np.ndarray] = []
    for k in range(3):
        i, j = [a for a in range(3) if a != k]
        u, v = np.meshgrid(axes[i], axes[j])
        for sign in (-1.0, 1.0):
            f = np.empty((u.size, 3))
            f[:, i] = u.ravel()
            f[:, j] = v.ravel()
            f[:, k] = sign * dims[k] / 2.0
            faces.append(f)
    return ObjectModel(name, np.vstack(faces), symmetric=symmetric)


def model_from_spec(spec: Mapping[str, Any], *, spacing: float = 0.003) -> ObjectModel:
    r"""
    Build a model from a configuration entry.

    Supported shapes::

        {"name": "can", "shape": "cylinder", "radius": 0.04, "height": 0.1}
        {"name": "box", "shape": "box", "size": [0.1, 0.05, 0.08]}
        {"name": "mug", "shape": "points", "path": "mug.npy", "symmetric": false}

    ``symmetric`` defaults to ``True`` for cylinders and ``False`` otherwise.
    """
    shape = str(spec.get("shape", "")).lower()
    name = str(spec.get("name", shape or "model"))
    try:
        if shape == "cylinder":
            return cylinder_model(name, float(spec["radius"]), float(spec["height"]),
                                  spacing=spacing, symmetric=bool(spec.get("symmetric", True)))
        if shape == "box":
            sx, sy, sz = (float(v) for v in spec["size"])
            return box_model(name, sx, sy, sz, spacing=spacing, symmetric=bool(spec.get("symmetric", False)))
        if shape == "points":
            pts = np.load(Path(spec["path"]))
            return ObjectModel(name, pts, symmetric=bool(spec.get("symmetric", False)))
    except KeyError as e:
        raise ConfigurationError(f"model {name!r}: missing field {e}") from e
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"model {name!r}: {e}") from e
    raise ConfigurationError(f"model {name!r}: unknown shape {shape!r}")


def load_models(specs: Sequence[Mapping[str, Any]], *, spacing: float = 0.003) -> List[ObjectModel]:
    if not specs:
        raise ConfigurationError("model library is empty")
    return [model_from_spec(s, spacing=spacing) for s in specs]
