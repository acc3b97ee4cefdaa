#!/usr/bin/env python3
r"""
Tabletop object pose recognition runner (headless-safe).

Loads a JSON configuration (search bounds, camera intrinsics, model library),
obtains an observation (an ``.npz`` depth snapshot or a synthetic scene
rendered from ground-truth placements), runs the perception-as-search
recognizer, and reports the recovered poses.

Search formulation
------------------
States are partial assignments of models to planar poses
:math:`(x, y, \psi)`; each edge places one more model and costs the number of
rendered points of the new object that the observation does not explain.
Poses come from a grid of resolution :math:`\Delta` and are refined locally
by planar ICP before costing.

CLI overview
------------
See :func:`build_parser` for all options. Typical usage:

.. code-block:: bash

   perch-search --config scene.json --synthetic 0:0:0:0 --synthetic 1:0.2:0:0
   perch-search --config scene.json --observation snapshot.npz --workers 4 --out poses.json
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from perch_search.config import EnvConfig, dump_json, load_config
from perch_search.errors import PerchError
from perch_search.models import load_models
from perch_search.observation import Observation
from perch_search.recognizer import ObjectRecognizer
from perch_search.renderer import Camera

DEFAULT_EYE = (-1.0, 0.0, 0.5)


def build_parser() -> argparse.ArgumentParser:
    r"""
    Construct the command-line interface.

    Returns
    -------
    argparse.ArgumentParser
        Parser with options for the configuration, the observation source,
        the worker pool, the search budget and output/plotting.

    Notes
    -----
    Exactly one of ``--observation`` or ``--synthetic`` must be given.
    ``--synthetic`` takes ``MODEL:X:Y:YAW`` (yaw in radians) and may repeat.
    """
    p = argparse.ArgumentParser(description="Recognize tabletop object poses by rendering-based search.")
    p.add_argument("--config", type=str, default="config.json",
                   help="Path to JSON config with bounds, camera and models (default: config.json).")
    src = p.add_mutually_exclusive_group(required=True)
    src.add_argument("--observation", type=str, default=None,
                     help="Observation .npz with 'depth' (uint16 mm) and 'camera_pose' (4x4).")
    src.add_argument("--synthetic", type=str, action="append", default=None, metavar="MODEL:X:Y:YAW",
                     help="Ground-truth placement to render as the observation (repeatable).")
    p.add_argument("--camera-eye", type=float, nargs=3, default=list(DEFAULT_EYE), metavar=("X", "Y", "Z"),
                   help="Camera position for synthetic scenes (default: -1 0 0.5).")
    p.add_argument("--camera-target", type=float, nargs=3, default=[0.0, 0.0, 0.0], metavar=("X", "Y", "Z"),
                   help="Point the synthetic camera looks at (default: origin).")
    p.add_argument("-w", "--workers", type=int, default=1,
                   help="Processes used for cost evaluation, coordinator included (default: 1).")
    p.add_argument("--max-time", type=float, default=None,
                   help="Search time budget in seconds (default: unlimited).")
    p.add_argument("--heuristics", type=int, nargs="+", default=[0, 1, 2],
                   help="Heuristic indices for the multi-heuristic search; first is the anchor.")
    p.add_argument("--inflation", type=float, default=1.0, help="Heuristic inflation w1 (default: 1).")
    p.add_argument("--anchor-factor", type=float, default=1.0, help="Anchor factor w2 (default: 1).")
    p.add_argument("--out", type=str, default=None, help="Write recovered poses and stats as JSON.")
    p.add_argument("--save-observation", type=str, default=None,
                   help="Write the (synthetic) observation to this .npz path.")
    p.add_argument("--plot", action="store_true", default=False,
                   help="Show the recovered placements (default: False).")
    p.add_argument("--plot-out", type=str, default=None,
                   help="Save the placement plot to this image path.")
    p.add_argument("--debug-dir", type=str, default=None,
                   help="Save a depth image of every expanded state into this directory.")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging.")
    return p


def setup_logging(verbose: bool = False) -> None:
    r"""
    Configure process-wide logging.

    Parameters
    ----------
    verbose : bool, optional
        If ``True``, set level to ``DEBUG``; otherwise ``INFO``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


def apply_plotting_guard(enable_plots: bool) -> None:
    r"""
    Force the non-interactive ``Agg`` backend when no window will be shown.

    Must run before :mod:`matplotlib.pyplot` is imported; saving figures keeps
    working under ``Agg``.
    """
    if enable_plots:
        return
    os.environ.setdefault("MPLBACKEND", "Agg")
    import matplotlib
    matplotlib.use("Agg", force=True)


def parse_placements(items: Sequence[str]) -> List[Tuple[int, float, float, float]]:
    """Parse ``MODEL:X:Y:YAW`` strings (``YAW`` optional, default 0)."""
    out = []
    for item in items:
        parts = item.split(":")
        if len(parts) not in (3, 4):
            raise argparse.ArgumentTypeError(f"expected MODEL:X:Y[:YAW], got {item!r}")
        try:
            m = int(parts[0])
            x, y = float(parts[1]), float(parts[2])
            yaw = float(parts[3]) if len(parts) == 4 else 0.0
        except ValueError as e:
            raise argparse.ArgumentTypeError(f"bad placement {item!r}: {e}") from e
        out.append((m, x, y, yaw))
    return out


def run(args: argparse.Namespace) -> int:
    cfg_path = Path(args.config)
    logging.info("Reading config from %s", cfg_path)
    config: EnvConfig = load_config(cfg_path)
    if args.debug_dir:
        config.image_debug = True
        config.debug_dir = args.debug_dir
    models = load_models(config.models, spacing=config.point_spacing)
    recognizer = ObjectRecognizer(config, models)

    truth: Optional[List[Tuple[int, float, float, float]]] = None
    if args.synthetic:
        truth = parse_placements(args.synthetic)
        camera = Camera.look_at(args.camera_eye, args.camera_target, config.camera)
        observation = recognizer.synthetic_observation(camera, truth)
        logging.info("Synthetic observation with %d objects, %d points", len(truth), len(observation))
    else:
        observation = Observation.load(args.observation, config.camera, downsample_leaf=config.downsample_leaf)
        logging.info("Loaded observation %s (%d points)", args.observation, len(observation))
    if args.save_observation:
        observation.save(args.save_observation)

    result = recognizer.localize(
        observation,
        num_workers=args.workers,
        heuristics=args.heuristics,
        inflation=args.inflation,
        anchor_factor=args.anchor_factor,
        max_time_s=args.max_time,
    )
    if not result.solved:
        logging.error("No solution found.")
        return 1

    print(result.poses.to_string(index=False))
    if args.out:
        dump_json({
            "poses": result.poses.to_dict(orient="records"),
            "transforms": {str(k): v for k, v in result.transforms(config.table_height).items()},
            "env_stats": result.env_stats.as_dict(),
            "solution_cost": result.planner_stats.solution_cost,
            "expansions": result.planner_stats.expansions,
        }, args.out)
        logging.info("Wrote results to %s", args.out)

    if args.plot or args.plot_out:
        import perch_search.plotting as perch_plot  # noqa: WPS433
        from perch_search.state import ContinuousPose, Placement, PlacementState

        truth_state = None
        if truth:
            truth_state = PlacementState(tuple(Placement(m, ContinuousPose(x, y, t)) for m, x, y, t in truth))
        perch_plot.plot_placements(result.state, models, observation.points, truth=truth_state,
                                   out_path=args.plot_out, show=args.plot)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    r"""
    Command-line entry point.

    Pipeline
    --------
    1. Parse CLI (:func:`build_parser`) and set up logging (:func:`setup_logging`).
    2. Enforce the headless plotting guard (:func:`apply_plotting_guard`).
    3. Load and validate the configuration and model library.
    4. Load or synthesize the observation.
    5. Run :meth:`perch_search.recognizer.ObjectRecognizer.localize`.
    6. Print poses, optionally write JSON and plots.

    Returns
    -------
    int
        Process exit status: 0 on success, 1 when no solution was found,
        2 on configuration or protocol errors.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    apply_plotting_guard(args.plot)
    try:
        return run(args)
    except (PerchError, argparse.ArgumentTypeError) as e:
        logging.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
