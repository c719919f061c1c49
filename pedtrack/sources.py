import glob
import os
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import cv2
import numpy as np

from . import config


class FrameSource(ABC):
    """Random access to the frames of a sequence. Unreadable frames return None."""

    @abstractmethod
    def get_frame(self, index: int) -> Optional[np.ndarray]:
        pass

    @property
    @abstractmethod
    def num_frames(self) -> int:
        pass

    @property
    def fps(self) -> float:
        return config.FPS_DEFAULT

    @property
    def size(self) -> Tuple[int, int]:
        img = self.get_frame(0)
        if img is None:
            return 0, 0
        return img.shape[1], img.shape[0]

    def get_stereo_frame(self, index: int) -> Optional[np.ndarray]:
        """Right view of a stereo pair; None for monocular sources."""
        return None

    def release(self):
        pass


class VideoFileSource(FrameSource):
    def __init__(self, path: str, right_path: Optional[str] = None):
        self.path = path
        self.cap = cv2.VideoCapture(path)
        if not self.cap.isOpened():
            raise FileNotFoundError(f"Could not open video: {path}")
        self.right = VideoFileSource(right_path) if right_path else None
        self._next = 0
        self.current_frame_num = -1

    def get_frame(self, index: int) -> Optional[np.ndarray]:
        if index < 0 or index >= self.num_frames:
            return None
        if index != self._next:
            self.cap.set(cv2.CAP_PROP_POS_FRAMES, index)
        ret, frame = self.cap.read()
        self._next = index + 1
        if not ret:
            print(f"[WARNING] Could not decode frame {index} of {self.path}")
            return None
        self.current_frame_num = index
        return frame

    def get_stereo_frame(self, index: int) -> Optional[np.ndarray]:
        return None if self.right is None else self.right.get_frame(index)

    @property
    def num_frames(self) -> int:
        return int(self.cap.get(cv2.CAP_PROP_FRAME_COUNT))

    @property
    def fps(self) -> float:
        fps = self.cap.get(cv2.CAP_PROP_FPS)
        return float(fps) if fps and fps > 0 else config.FPS_DEFAULT

    @property
    def size(self) -> Tuple[int, int]:
        return int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH)), int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    def release(self):
        self.cap.release()
        if self.right is not None:
            self.right.release()


class ImageSequenceSource(FrameSource):
    def __init__(self, pattern: str, fps: float = config.FPS_DEFAULT, right_pattern: Optional[str] = None):
        self.files: List[str] = sorted(glob.glob(pattern))
        if not self.files:
            raise FileNotFoundError(f"No images match: {pattern}")
        self.right_files = sorted(glob.glob(right_pattern)) if right_pattern else []
        self._fps = fps
        self.current_frame_num = -1

    def get_frame(self, index: int) -> Optional[np.ndarray]:
        if index < 0 or index >= len(self.files):
            return None
        img = cv2.imread(self.files[index], cv2.IMREAD_COLOR)
        if img is None:
            print(f"[WARNING] Could not read image {os.path.basename(self.files[index])}")
            return None
        self.current_frame_num = index
        return img

    def get_stereo_frame(self, index: int) -> Optional[np.ndarray]:
        if index < 0 or index >= len(self.right_files):
            return None
        return cv2.imread(self.right_files[index], cv2.IMREAD_COLOR)

    @property
    def num_frames(self) -> int:
        return len(self.files)

    @property
    def fps(self) -> float:
        return self._fps


class ArraySource(FrameSource):
    """Frames held in memory; ``None`` entries simulate undecodable frames."""

    def __init__(self, frames, fps: float = config.FPS_DEFAULT, right_frames=None):
        self.frames = list(frames)
        self.right_frames = list(right_frames) if right_frames is not None else None
        self._fps = fps
        self.current_frame_num = -1

    def get_frame(self, index: int) -> Optional[np.ndarray]:
        if index < 0 or index >= len(self.frames):
            return None
        self.current_frame_num = index
        return self.frames[index]

    def get_stereo_frame(self, index: int) -> Optional[np.ndarray]:
        if self.right_frames is None or not 0 <= index < len(self.right_frames):
            return None
        return self.right_frames[index]

    @property
    def num_frames(self) -> int:
        return len(self.frames)

    @property
    def fps(self) -> float:
        return self._fps
