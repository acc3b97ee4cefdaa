import logging
from pathlib import Path
from typing import Optional, Sequence, Union

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.patches as patches
import networkx as nx

from perch_search.models import ObjectModel
from perch_search.state import NO_DEPTH, PlacementState


def _finish(fig, out_path: Optional[Union[str, Path]], *, do_show: bool = False) -> None:
    r"""
    Save and/or show a figure, then always close it.

    Parameters
    ----------
    fig : matplotlib.figure.Figure
        Figure to finalize.
    out_path : str or pathlib.Path, optional
        When given, the figure is written there (format from the suffix).
    do_show : bool
        Call ``plt.show()`` before closing.
    """
    fig.tight_layout()
    if out_path is not None:
        fig.savefig(out_path, dpi=100)
    if do_show:
        plt.show()
    plt.close(fig)


def save_depth_image(
    depth: np.ndarray,
    out_path: Union[str, Path],
    *,
    title: Optional[str] = None,
) -> None:
    r"""
    Write a depth image with the ``jet`` colormap; background pixels are white.

    Depth values are millimetres; the color range spans the covered pixels only
    so small depth differences stay visible.
    """
    masked = np.ma.masked_greater_equal(depth.astype(np.float64), NO_DEPTH)
    # an empty scene still gets a (blank) image
    vmin, vmax = (masked.min(), masked.max()) if masked.count() else (0.0, 1.0)
    fig, ax = plt.subplots(figsize=(6, 4.5))
    cmap = plt.get_cmap("jet").with_extremes(bad="white")
    im = ax.imshow(masked, cmap=cmap, interpolation="nearest", vmin=vmin, vmax=vmax)
    fig.colorbar(im, ax=ax, label="depth [mm]")
    ax.set_axis_off()
    if title:
        ax.set_title(title)
    _finish(fig, out_path)


def plot_placements(
    state: PlacementState,
    models: Sequence[ObjectModel],
    observed_points: Optional[np.ndarray] = None,
    *,
    truth: Optional[PlacementState] = None,
    out_path: Optional[Union[str, Path]] = None,
    show: bool = False,
) -> None:
    r"""
    Top view of the recognized placements.

    Each placement is drawn as its circumscribed footprint (solid) and inscribed
    footprint (dashed) with a yaw tick; observed points are scattered in grey
    and optional ground truth is drawn as crosses.
    """
    fig, ax = plt.subplots(figsize=(6, 6))
    if observed_points is not None and len(observed_points):
        step = max(1, len(observed_points) // 5000)
        pts = observed_points[::step]
        ax.scatter(pts[:, 0], pts[:, 1], s=1, c="0.6", label="observed")
    colors = plt.get_cmap("tab10")
    for k, pl in enumerate(state.placements):
        m = models[pl.model_id]
        c = colors(pl.model_id % 10)
        x, y = pl.pose.x, pl.pose.y
        ax.add_patch(patches.Circle((x, y), m.circumscribed_radius, fill=False, ec=c, lw=1.5))
        ax.add_patch(patches.Circle((x, y), m.inscribed_radius, fill=False, ec=c, ls="--", lw=1.0))
        r = m.circumscribed_radius
        ax.plot([x, x + r * np.cos(pl.pose.yaw)], [y, y + r * np.sin(pl.pose.yaw)], color=c)
        ax.annotate(f"{m.name} ({k})", (x, y), textcoords="offset points", xytext=(4, 4), fontsize=8)
    if truth is not None:
        for pl in truth.placements:
            ax.plot(pl.pose.x, pl.pose.y, "kx", ms=8)
    ax.set_aspect("equal")
    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_title("Recognized placements")
    _finish(fig, out_path, do_show=show)


def plot_search_graph(
    graph: nx.DiGraph,
    path: Optional[Sequence[int]] = None,
    *,
    out_path: Optional[Union[str, Path]] = None,
    show: bool = False,
) -> None:
    """Layered drawing of the explored search graph (layer = objects placed)."""
    if graph.number_of_nodes() == 0:
        logging.info("Search graph is empty; nothing to plot.")
        return
    layers = {}
    for n, data in graph.nodes(data=True):
        layers[n] = int(data.get("size", 0))
    nx.set_node_attributes(graph, layers, "layer")
    pos = nx.multipartite_layout(graph, subset_key="layer")
    on_path = set(zip(path, path[1:])) if path else set()
    fig, ax = plt.subplots(figsize=(8, 6))
    nx.draw_networkx_nodes(graph, pos, ax=ax, node_size=20, node_color="tab:blue")
    nx.draw_networkx_edges(
        graph, pos, ax=ax, arrows=False,
        edge_color=["tab:red" if e in on_path else "0.8" for e in graph.edges()],
        width=[2.0 if e in on_path else 0.5 for e in graph.edges()],
    )
    ax.set_title(f"Search graph ({graph.number_of_nodes()} states)")
    ax.set_axis_off()
    _finish(fig, out_path, do_show=show)
