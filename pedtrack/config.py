# config.py
from dataclasses import dataclass, asdict, fields
from typing import Dict, Optional, Tuple


VERBOSE = True
VERSION = "0.9.0"

# =====================
# Geometry / person model
# =====================
HEAD_SIZE = 21.0                # cm, average head length
DEFAULT_HEIGHT = 176.0          # cm, used when a person has no own height
MIN_HEIGHT = 50.0               # cm, heights below are treated as unknown
MAX_HEIGHT = 250.0
DEFAULT_HEAD_PX = 30.0          # px, used while no extrinsic calibration is available

# =====================
# Quality / point sources
# =====================
MAX_QUALITY = 100
LEGACY_MANUAL_QUALITY = 110     # old files mark manual points with this quality

# =====================
# Tracking
# =====================
TRACK_REGION_SCALE = 16         # search window = head size * scale / 10
TRACK_REGION_LEVELS = 3         # pyramid levels
TRACK_REPEAT = True
TRACK_REPEAT_QUAL = 50
TRACK_MAX_GAP = 5               # frames a trajectory may be bridged by the tracker
TRACK_REFINE_RADIUS = 2         # px searched around the upscaled match on finer levels
MIN_TEMPLATE_HALF = 4
BACK_TRACK_OFFSET = 5           # backward tracking starts at largest first frame + offset

# =====================
# Storage
# =====================
ADD_POINT_MAX_DIST = 20.0       # px, fallback when no head size is available
AMBIGUITY_TOLERANCE = 0.5       # px, equidistant candidates within this are ambiguous
PURGE_RECO_RATIO = 0.2
PURGE_QUALITY_FLOOR = 70

# =====================
# Calibration
# =====================
UNDISTORT_MAX_ITER = 50
UNDISTORT_EPS = 1e-10           # squared residual in normalized image coordinates
CHESSBOARD_SIZE = (9, 6)        # inner corners
CHESSBOARD_SQUARE = 2.5         # cm

# =====================
# Recognition
# =====================
RECO_STEP = 1
MIN_BLOB_AREA = 30
MAX_BLOB_AREA = 5000
MORPH_KERNEL = 3
FG_THRESHOLD = 0.10             # minimum share of a blob that must be foreground
MULTICOLOR_NO_DOT_QUALITY = 75
DOT_MAX_VALUE = 60              # HSV value below which a pixel counts as dark dot
ARUCO_DICT = "DICT_4X4_50"

# =====================
# Background filter
# =====================
HISTORY = 250
VAR_THRESHOLD = 12
DETECT_SHADOWS = False

# =====================
# Stereo
# =====================
STEREO_NUM_DISPARITIES = 64
STEREO_BLOCK_SIZE = 7
STEREO_NEIGHBOURHOOD = 2        # px radius for the median disparity

# =====================
# Export
# =====================
FPS_DEFAULT = 25.0
SMOOTH_WINDOW = 5
ELIM_QUALITY = 30
MAX_JUMP = 60.0                 # cm between successive frames
MIN_TRAJECTORY_POINTS = 10
MAX_SPEED = 1000.0              # cm/s


@dataclass
class TrackingSettings:
    online_tracking: bool = True
    perform_recognition: bool = True
    reco_step: int = RECO_STEP
    recognition_method: str = "COLOR"
    track_repeat: bool = TRACK_REPEAT
    track_repeat_qual: int = TRACK_REPEAT_QUAL
    track_region_scale: int = TRACK_REGION_SCALE
    track_region_levels: int = TRACK_REGION_LEVELS
    track_max_gap: int = TRACK_MAX_GAP
    track_roi: Optional[Tuple[int, int, int, int]] = None
    reco_roi: Optional[Tuple[int, int, int, int]] = None
    default_height: float = DEFAULT_HEIGHT
    auto_back_track: bool = True
    stereo_recognition: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict) -> "TrackingSettings":
        known = {f.name for f in fields(TrackingSettings)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("track_roi", "reco_roi"):
            if values.get(key) is not None:
                values[key] = tuple(int(v) for v in values[key])
        return TrackingSettings(**values)


@dataclass
class ExportSettings:
    use_stereo: bool = False
    alternate_height: bool = False
    default_height: float = DEFAULT_HEIGHT
    use_missing_frames: bool = True
    fps: float = FPS_DEFAULT
    elim_points: bool = False
    elim_quality: int = ELIM_QUALITY
    max_jump: float = MAX_JUMP
    elim_trajectories: bool = False
    min_points: int = MIN_TRAJECTORY_POINTS
    max_speed: float = MAX_SPEED
    fill_gaps: bool = False
    smooth: bool = False
    smooth_window: int = SMOOTH_WINDOW
    view_direction: bool = False
    angle_of_view: bool = False
    marker_id: bool = False
    border_size: int = 0
    in_meter: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)

    @staticmethod
    def from_dict(data: Dict) -> "ExportSettings":
        known = {f.name for f in fields(ExportSettings)}
        return ExportSettings(**{k: v for k, v in data.items() if k in known})
