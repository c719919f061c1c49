"""
Writers for real-world trajectories computed by TrackerReal.

    .txt   whitespace separated table with a commented header
    .dat   gnuplot friendly, one block per person separated by blank lines
    .trav  XML trajectoriesDataset

All writers go through a temporary file, so a failed export never leaves a
half written target.
"""

import os
import xml.etree.ElementTree as ET
from datetime import datetime
from typing import Dict, Optional

import pandas as pd

from . import config
from .config import ExportSettings
from .utils import atomic_write

TXT_COLUMNS = {
    "person": "id",
    "frame": "frame",
    "x": "x/{unit}",
    "y": "y/{unit}",
    "z": "z/{unit}",
    "view_x": "viewDirX",
    "view_y": "viewDirY",
    "angle_of_view": "angleOfView/deg",
    "marker_id": "markerID",
    "interpolated": "interpolated",
}


def _scaled(table: pd.DataFrame, settings: ExportSettings) -> pd.DataFrame:
    df = table.copy()
    if settings.in_meter:
        df[["x", "y", "z"]] = df[["x", "y", "z"]] / 100.0
    return df


def _comment_table(comments: Dict[int, str]):
    lines = ["# ID| Comment"]
    for nr in sorted(comments):
        text = comments[nr].replace("\n", "\n#     ")
        lines.append(f"# {nr:>2}| {text}")
    return lines


def write_txt(table: pd.DataFrame, path: str, settings: Optional[ExportSettings] = None,
              trc_file: str = "", comments: Optional[Dict[int, str]] = None,
              verbose: bool = config.VERBOSE):
    settings = settings or ExportSettings()
    unit = "m" if settings.in_meter else "cm"
    df = _scaled(table, settings)
    columns = ["person", "frame", "x", "y", "z"]
    if settings.view_direction:
        columns += ["view_x", "view_y"]
    if settings.angle_of_view:
        columns.append("angle_of_view")
    if settings.marker_id:
        columns.append("marker_id")
    if settings.fill_gaps:
        columns.append("interpolated")

    with atomic_write(path) as f:
        f.write(f"# pedtrack version: {config.VERSION}\n")
        f.write(f"# generated: {datetime.now().isoformat(timespec='seconds')}\n")
        if trc_file:
            f.write(f"# trajectory file: {trc_file}\n")
        f.write(f"# framerate: {settings.fps:g} fps\n")
        if comments:
            for line in _comment_table(comments):
                f.write(line + "\n")
        f.write("# " + " ".join(TXT_COLUMNS[c].format(unit=unit) for c in columns) + "\n")
        for row in df[columns].itertuples(index=False):
            values = []
            for c, v in zip(columns, row):
                if c in ("person", "frame", "marker_id"):
                    values.append(str(int(v)))
                elif c == "interpolated":
                    values.append(str(int(bool(v))))
                else:
                    values.append(f"{v:.6f}" if settings.in_meter else f"{v:.3f}")
            f.write(" ".join(values) + "\n")
    if verbose:
        print(f"[INFO] Real-world trajectories written to: {path}")


def write_dat(table: pd.DataFrame, path: str, settings: Optional[ExportSettings] = None,
              verbose: bool = config.VERBOSE):
    """One block per person ('frame x y z'), blocks separated by two blank lines."""
    settings = settings or ExportSettings()
    df = _scaled(table, settings)
    with atomic_write(path) as f:
        first = True
        for nr, part in df.groupby("person", sort=True):
            if not first:
                f.write("\n\n")
            first = False
            f.write(f"# person {int(nr)}\n")
            for row in part.itertuples(index=False):
                f.write(f"{int(row.frame)} {row.x:.6f} {row.y:.6f} {row.z:.6f}\n")
    if verbose:
        print(f"[INFO] Gnuplot trajectories written to: {path}")


def write_trav(table: pd.DataFrame, path: str, settings: Optional[ExportSettings] = None,
               verbose: bool = config.VERBOSE):
    settings = settings or ExportSettings()
    df = table.copy()
    df[["x", "y", "z"]] = df[["x", "y", "z"]] / 100.0
    root = ET.Element("trajectoriesDataset")
    header = ET.SubElement(root, "header", version="1.0")
    ET.SubElement(header, "agents").text = str(df["person"].nunique())
    ET.SubElement(header, "frameRate").text = f"{settings.fps:g}"
    ET.SubElement(header, "unit").text = "m"
    trajectories = ET.SubElement(root, "trajectories")
    for frame, part in df.groupby("frame", sort=True):
        frame_el = ET.SubElement(trajectories, "frame", ID=str(int(frame)))
        for row in part.sort_values("person").itertuples(index=False):
            agent = ET.SubElement(frame_el, "agent", ID=str(int(row.person)))
            ET.SubElement(agent, "location", x=f"{row.x:.4f}", y=f"{row.y:.4f}", z=f"{row.z:.4f}")
    ET.indent(root)
    with atomic_write(path, "wb") as f:
        ET.ElementTree(root).write(f, encoding="utf-8", xml_declaration=True)
    if verbose:
        print(f"[INFO] TRAV trajectories written to: {path}")


def export_tracks(table: pd.DataFrame, destination: str, settings: Optional[ExportSettings] = None,
                  write_trc_fn=None, **kwargs):
    """
    Dispatches on the file extension. A destination without extension writes
    both the .trc (through ``write_trc_fn``) and the .txt file.
    """
    root, ext = os.path.splitext(destination)
    ext = ext.lower()
    if ext == "":
        if write_trc_fn is not None:
            write_trc_fn(root + ".trc")
        write_txt(table, root + ".txt", settings, **kwargs)
    elif ext == ".trc":
        if write_trc_fn is None:
            raise ValueError("no trajectory writer given for .trc export")
        write_trc_fn(destination)
    elif ext == ".txt":
        write_txt(table, destination, settings, **kwargs)
    elif ext == ".dat":
        write_dat(table, destination, settings)
    elif ext == ".trav":
        write_trav(table, destination, settings)
    else:
        raise ValueError(f"unsupported export format: {ext}")
