"""
Top view of the real-world trajectories (x/y ground plane).

``plot_trajectories`` draws every person as a line with its id at the last
position; ``animate_trajectories`` replays the table frame by frame with short
trails.
"""

from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib.animation import FuncAnimation


def color_for_id(nr: int):
    rng = np.random.RandomState(nr % (2**32 - 1))
    return rng.rand(3,)


def _bounds(table: pd.DataFrame, pad: float = 0.05):
    xmin, xmax = table["x"].min(), table["x"].max()
    ymin, ymax = table["y"].min(), table["y"].max()
    dx = (xmax - xmin) * pad if xmax > xmin else 1.0
    dy = (ymax - ymin) * pad if ymax > ymin else 1.0
    return xmin - dx, xmax + dx, ymin - dy, ymax + dy


def _prepare_axes(ax, table: pd.DataFrame, unit: str):
    xmin, xmax, ymin, ymax = _bounds(table)
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_aspect("equal", adjustable="box")
    ax.set_xlabel(f"X [{unit}]")
    ax.set_ylabel(f"Y [{unit}]")


def plot_trajectories(table: pd.DataFrame, ax=None, unit: str = "cm", title: str = "Trajectories (X,Y)",
                      mark_interpolated: bool = True):
    """Static plot of all persons of a TrackerReal table; returns the axes."""
    if ax is None:
        _, ax = plt.subplots(figsize=(10, 6))
    if table.empty:
        ax.set_title(f"{title} - no data")
        return ax
    _prepare_axes(ax, table, unit)
    for nr, part in table.groupby("person", sort=True):
        col = color_for_id(int(nr))
        ax.plot(part["x"], part["y"], "-", color=col, alpha=0.8, linewidth=1.5)
        if mark_interpolated and "interpolated" in part:
            interp = part[part["interpolated"].astype(bool)]
            if not interp.empty:
                ax.scatter(interp["x"], interp["y"], s=8, color=col, marker="x")
        last = part.iloc[-1]
        ax.text(last["x"], last["y"], f"{int(nr)}", color=col, fontsize=9, weight="bold")
    ax.set_title(title)
    return ax


def animate_trajectories(table: pd.DataFrame, max_trail: int = 30, interval: int = 50,
                         unit: str = "cm") -> Optional[FuncAnimation]:
    if table.empty:
        print("[WARNING] No trajectories to animate.")
        return None
    frames = sorted(int(f) for f in table["frame"].unique())
    by_frame = {int(f): part for f, part in table.groupby("frame")}

    fig, ax = plt.subplots(figsize=(10, 6))
    _prepare_axes(ax, table, unit)
    ax.set_title("Person positions (X,Y)")
    scat = ax.scatter([], [], s=60)
    title = ax.text(0.01, 0.99, "", transform=ax.transAxes, va="top", ha="left")
    artists = []

    def update(frame):
        for a in artists:
            a.remove()
        artists.clear()
        part = by_frame.get(frame)
        if part is None or part.empty:
            scat.set_offsets(np.empty((0, 2)))
            title.set_text(f"Frame: {frame}")
            return [scat, title]
        scat.set_offsets(part[["x", "y"]].to_numpy())
        scat.set_color([color_for_id(int(nr)) for nr in part["person"]])
        history = table[(table["frame"] <= frame) & (table["frame"] > frame - max_trail)]
        for nr, trail in history.groupby("person"):
            col = color_for_id(int(nr))
            if len(trail) > 1:
                line, = ax.plot(trail["x"], trail["y"], "-", color=col, alpha=0.6, linewidth=2)
                artists.append(line)
            last = trail.iloc[-1]
            if int(last["frame"]) == frame:
                artists.append(ax.text(last["x"], last["y"], f"{int(nr)}", color=col, fontsize=9,
                                       weight="bold"))
        title.set_text(f"Frame: {frame}")
        return [scat, title] + artists

    anim = FuncAnimation(fig, update, frames=frames, blit=False, interval=interval, repeat=False)
    return anim


def save_plot(table: pd.DataFrame, path: str, unit: str = "cm"):
    fig, ax = plt.subplots(figsize=(10, 6))
    plot_trajectories(table, ax=ax, unit=unit)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"[INFO] Trajectory plot saved to: {path}")
