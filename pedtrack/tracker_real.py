"""
Real-world projection of the pixel trajectories.

TrackerReal never modifies the PersonStorage: every run starts again from the
pixel positions, so a new calibration or new export options only require a new
``calculate``. The result is one row per person and frame, persons ascending,
frames ascending within a person.
"""

from dataclasses import dataclass
from typing import Collection, Iterator, List, Optional, Tuple

import numpy as np
import pandas as pd
from tqdm import tqdm

from . import config
from .calibration import ExtrinsicCalibration, height_from_head_size
from .config import ExportSettings
from .errors import CalibrationError, NotCalibratedError
from .missing_frames import MissingFrames
from .track_person import TrackPerson
from .utils import median_of_3
from .vector import Vec2F

COLUMNS = ["person", "frame", "time", "x", "y", "z", "quality", "view_x", "view_y",
           "angle_of_view", "marker_id", "interpolated"]


@dataclass(frozen=True)
class ExportRecord:
    person: int
    frame: int
    time: float
    x: float
    y: float
    z: float
    quality: int
    view_x: float
    view_y: float
    angle_of_view: float
    marker_id: int
    interpolated: bool


def _runs(frames: pd.Series) -> pd.Series:
    """Label of the contiguous frame run every row belongs to."""
    return (frames.diff() != 1).cumsum()


class TrackerReal:
    def __init__(self, verbose: bool = config.VERBOSE):
        self.verbose = verbose
        self.table = pd.DataFrame(columns=COLUMNS)
        self.skipped_points = 0
        self.eliminated_points = 0
        self.eliminated_persons: List[int] = []

    def __len__(self) -> int:
        return len(self.table)

    # ===============================
    # Projection of a single person
    # ===============================
    def _point_height(self, person: TrackPerson, point, px: Vec2F, extr, settings: ExportSettings) -> float:
        if settings.alternate_height and point.head_px:
            h = height_from_head_size(extr, px, point.head_px)
            if h is not None and config.MIN_HEIGHT <= h <= config.MAX_HEIGHT:
                return h
        if person.height is not None and person.height > config.MIN_HEIGHT:
            return person.height
        return settings.default_height

    def _project_person(self, person: TrackPerson, extr: ExtrinsicCalibration,
                        settings: ExportSettings) -> pd.DataFrame:
        rows = []
        border = settings.border_size
        for frame, point in person.items():
            px = point.pos - (border, border)
            view = (np.nan, np.nan)
            try:
                if settings.use_stereo and point.sp is not None:
                    world = point.sp
                    h = world.z
                else:
                    h = self._point_height(person, point, px, extr, settings)
                    world = extr.get_3d_point(px, h)
                if point.orient is not None:
                    ahead = extr.get_3d_point(px + point.orient * 10.0, h)
                    view = tuple((ahead - world).xy().unit())
            except CalibrationError:
                self.skipped_points += 1
                continue
            rows.append((frame, world.x, world.y, world.z, point.quality, view[0], view[1],
                         point.marker_id if point.marker_id >= 0 else person.marker_id))
        return pd.DataFrame(rows, columns=["frame", "x", "y", "z", "quality", "view_x", "view_y", "marker_id"])

    # ===============================
    # Optional processing steps
    # ===============================
    def _eliminate_points(self, df: pd.DataFrame, settings: ExportSettings) -> pd.DataFrame:
        keep = df["quality"] >= settings.elim_quality
        frames, xs, ys = df["frame"].to_numpy(), df["x"].to_numpy(), df["y"].to_numpy()
        for i in range(1, len(df) - 1):
            if frames[i] - frames[i - 1] != 1 or frames[i + 1] - frames[i] != 1:
                continue
            mx = median_of_3(xs[i - 1], xs[i], xs[i + 1])
            my = median_of_3(ys[i - 1], ys[i], ys[i + 1])
            if np.hypot(xs[i] - mx, ys[i] - my) > settings.max_jump:
                keep.iloc[i] = False
        self.eliminated_points += int((~keep).sum())
        return df[keep].reset_index(drop=True)

    @staticmethod
    def _plausible(df: pd.DataFrame, settings: ExportSettings) -> bool:
        if len(df) < settings.min_points:
            return False
        steps = df[["frame", "x", "y"]].diff().dropna()
        steps = steps[steps["frame"] > 0]
        if steps.empty:
            return True
        speed = np.hypot(steps["x"], steps["y"]) / (steps["frame"] / settings.fps)
        return float(speed.mean()) <= settings.max_speed

    @staticmethod
    def _fill_gaps(df: pd.DataFrame) -> pd.DataFrame:
        if df.empty:
            return df.assign(interpolated=pd.Series(dtype=bool))
        full = df.set_index("frame").reindex(range(int(df["frame"].min()), int(df["frame"].max()) + 1))
        interpolated = full["x"].isna()
        full[["x", "y", "z"]] = full[["x", "y", "z"]].interpolate(method="index")
        full["quality"] = full["quality"].fillna(0).astype(int)
        full["marker_id"] = full["marker_id"].ffill().astype(int)
        full["interpolated"] = interpolated
        full.index.name = "frame"
        return full.reset_index()

    @staticmethod
    def _smooth(df: pd.DataFrame, window: int) -> pd.DataFrame:
        """Centered moving average within contiguous runs; first and last point of a run stay put."""
        if window < 2 or len(df) < 3:
            return df
        df = df.copy()
        runs = _runs(df["frame"])
        for _, idx in df.groupby(runs).groups.items():
            if len(idx) < 3:
                continue
            part = df.loc[idx, ["x", "y", "z"]]
            smoothed = part.rolling(window, center=True, min_periods=1).mean()
            inner = idx[1:-1]
            df.loc[inner, ["x", "y", "z"]] = smoothed.loc[inner].to_numpy()
        return df

    @staticmethod
    def _movement_direction(df: pd.DataFrame) -> pd.DataFrame:
        """Fills missing view directions from the movement between neighbouring frames."""
        df = df.copy()
        runs = _runs(df["frame"])
        for _, idx in df.groupby(runs).groups.items():
            part = df.loc[idx]
            if len(part) < 2:
                continue
            dx = part["x"].shift(-1).fillna(part["x"]) - part["x"].shift(1).fillna(part["x"])
            dy = part["y"].shift(-1).fillna(part["y"]) - part["y"].shift(1).fillna(part["y"])
            norm = np.hypot(dx, dy).replace(0, np.nan)
            missing = part["view_x"].isna()
            df.loc[idx[missing.to_numpy()], "view_x"] = (dx / norm)[missing].to_numpy()
            df.loc[idx[missing.to_numpy()], "view_y"] = (dy / norm)[missing].to_numpy()
        return df

    @staticmethod
    def _angle_of_view(df: pd.DataFrame, extr: ExtrinsicCalibration) -> pd.Series:
        """Angle (deg) between the viewing ray to the person and the vertical."""
        c = extr.camera_position
        horizontal = np.hypot(df["x"] - c.x, df["y"] - c.y)
        return np.degrees(np.arctan2(horizontal, c.z - df["z"]))

    # ===============================
    # Main entry
    # ===============================
    def calculate(self, storage, extr: ExtrinsicCalibration, settings: Optional[ExportSettings] = None,
                  missing: Optional[MissingFrames] = None, persons: Collection[int] = (),
                  progress: bool = False) -> int:
        """Projects all (or the selected) persons; returns the number of persons exported."""
        settings = settings or ExportSettings()
        if not extr.is_calibrated:
            raise NotCalibratedError("real-world export needs the extrinsic calibration")
        self.skipped_points = 0
        self.eliminated_points = 0
        self.eliminated_persons = []
        parts = []
        for index, person in enumerate(tqdm(list(storage), desc="Real world", disable=not progress)):
            if persons and index not in persons:
                continue
            df = self._project_person(person, extr, settings)
            if settings.elim_points and not df.empty:
                df = self._eliminate_points(df, settings)
            if settings.elim_trajectories and not self._plausible(df, settings):
                self.eliminated_persons.append(person.nr)
                continue
            if df.empty:
                continue
            if settings.fill_gaps:
                df = self._fill_gaps(df)
            else:
                df["interpolated"] = False
            if settings.smooth:
                df = self._smooth(df, settings.smooth_window)
            if settings.view_direction:
                df = self._movement_direction(df)
            df["angle_of_view"] = self._angle_of_view(df, extr) if settings.angle_of_view else np.nan
            if settings.use_missing_frames and missing is not None and len(missing):
                df["frame"] = [missing.nominal_frame(int(f)) for f in df["frame"]]
            df["person"] = person.nr
            df["time"] = df["frame"] / settings.fps
            parts.append(df)

        if parts:
            table = pd.concat(parts, ignore_index=True)[COLUMNS]
            table = table.sort_values(["person", "frame"], kind="stable").reset_index(drop=True)
            table = table.astype({"person": int, "frame": int, "quality": int, "marker_id": int,
                                  "interpolated": bool})
        else:
            table = pd.DataFrame(columns=COLUMNS)
        self.table = table

        if self.verbose:
            print(f"[INFO] Real-world trajectories: {table['person'].nunique()} persons, {len(table)} points.")
            if self.skipped_points:
                print(f"[WARNING] {self.skipped_points} points could not be projected and were skipped.")
            if self.eliminated_points:
                print(f"[INFO] Eliminated {self.eliminated_points} implausible points.")
            if self.eliminated_persons:
                print(f"[INFO] Eliminated implausible trajectories: {self.eliminated_persons}")
        return int(table["person"].nunique()) if len(table) else 0

    # ===============================
    # Accessors
    # ===============================
    def to_dataframe(self, settings: Optional[ExportSettings] = None) -> pd.DataFrame:
        """Copy of the result table, reduced to the columns enabled in ``settings``."""
        df = self.table.copy()
        if settings is None:
            return df
        drop = []
        if not settings.view_direction:
            drop += ["view_x", "view_y"]
        if not settings.angle_of_view:
            drop.append("angle_of_view")
        if not settings.marker_id:
            drop.append("marker_id")
        if not settings.fill_gaps:
            drop.append("interpolated")
        return df.drop(columns=drop)

    def records(self) -> Iterator[ExportRecord]:
        for row in self.table.itertuples(index=False):
            yield ExportRecord(**row._asdict())

    def person_ids(self) -> List[int]:
        return sorted(int(p) for p in self.table["person"].unique())

    def calc_min_max(self) -> Tuple[float, float, float, float]:
        """(x_min, x_max, y_min, y_max) of all exported positions."""
        if self.table.empty:
            return 0.0, 0.0, 0.0, 0.0
        return (float(self.table["x"].min()), float(self.table["x"].max()),
                float(self.table["y"].min()), float(self.table["y"].max()))
