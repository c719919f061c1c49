from .config import VERSION as __version__
from .config import ExportSettings, TrackingSettings
from .calibration import ExtrinsicCalibration, IntrinsicCalibration
from .errors import (AmbiguousSelectionError, CalibrationError, ImportDataError, NotCalibratedError,
                     PedTrackError, RecognitionConfigError, TrcFormatError)
from .filters import FilterChain
from .missing_frames import MissingFrames
from .person_storage import Direction, PersonStorage
from .pipeline import FramePipeline
from .project import ProjectContext
from .recognition import RecognitionMethod, create_recognizer
from .stereo import StereoContext
from .track_io import import_trc, import_txt_3d, read_trc, write_trc
from .track_person import PointSource, TrackPerson, TrackPoint
from .tracker import Tracker
from .tracker_real import TrackerReal
from .vector import Vec2F, Vec3F
