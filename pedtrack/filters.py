"""
Image filter chain applied to every frame before tracking and recognition.

Fixed order: swap -> brightness/contrast -> border -> undistort -> background.
Each stage remembers the key of the input it last processed together with its
own parameter version, so a frame is only recomputed from the first stage whose
input or parameters changed.
"""

import hashlib
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np

from . import config
from .calibration import IntrinsicCalibration


def image_hash(img: np.ndarray) -> str:
    h = hashlib.blake2b(digest_size=16)
    h.update(str(img.shape).encode())
    h.update(np.ascontiguousarray(img).tobytes())
    return h.hexdigest()


class FilterStage:
    name = "filter"
    params: Tuple[str, ...] = ()

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self._version = 0
        self._memo_key = None
        self._memo_out: Optional[np.ndarray] = None

    def key(self):
        return self.name, self.enabled, self._version

    def set_param(self, **values):
        """Changes parameters; any real change invalidates this stage and all later ones."""
        for k, v in values.items():
            if k != "enabled" and k not in self.params:
                raise AttributeError(f"{self.name} filter has no parameter '{k}'")
            if getattr(self, k) != v:
                setattr(self, k, v)
                self._version += 1

    def invalidate(self):
        self._version += 1

    def apply(self, img: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def get_settings(self) -> dict:
        data = {"enabled": self.enabled}
        for p in self.params:
            v = getattr(self, p)
            data[p] = list(v) if isinstance(v, tuple) else v
        return data

    def set_settings(self, settings: dict):
        values = {k: (tuple(v) if isinstance(v, list) else v) for k, v in settings.items()
                  if k == "enabled" or k in self.params}
        self.set_param(**values)


class SwapFilter(FilterStage):
    name = "swap"
    params = ("horizontal", "vertical")

    def __init__(self, enabled=False, horizontal=False, vertical=False):
        super().__init__(enabled)
        self.horizontal = horizontal
        self.vertical = vertical

    def apply(self, img):
        if self.horizontal and self.vertical:
            return cv2.flip(img, -1)
        if self.horizontal:
            return cv2.flip(img, 1)
        if self.vertical:
            return cv2.flip(img, 0)
        return img


class BrightContrastFilter(FilterStage):
    name = "bright_contrast"
    params = ("brightness", "contrast")

    def __init__(self, enabled=False, brightness=0, contrast=0):
        super().__init__(enabled)
        self.brightness = brightness    # -100..100, added to the grey values
        self.contrast = contrast        # -100..100 percent

    def apply(self, img):
        alpha = (100.0 + self.contrast) / 100.0
        return cv2.convertScaleAbs(img, alpha=alpha, beta=float(self.brightness))


class BorderFilter(FilterStage):
    name = "border"
    params = ("size", "color")

    def __init__(self, enabled=False, size=0, color=(0, 0, 0)):
        super().__init__(enabled)
        self.size = size
        self.color = tuple(color)

    def apply(self, img):
        if self.size <= 0:
            return img
        s = int(self.size)
        return cv2.copyMakeBorder(img, s, s, s, s, cv2.BORDER_CONSTANT, value=self.color)


class CalibFilter(FilterStage):
    name = "calib"
    params = ()

    def __init__(self, enabled=False, intrinsic: Optional[IntrinsicCalibration] = None):
        super().__init__(enabled)
        self.intrinsic = intrinsic
        self._maps: Dict[Tuple[int, int], tuple] = {}

    def set_calibration(self, intrinsic: Optional[IntrinsicCalibration]):
        self.intrinsic = intrinsic
        self._maps.clear()
        self.invalidate()

    def apply(self, img):
        if self.intrinsic is None:
            return img
        size = (img.shape[1], img.shape[0])
        if size not in self._maps:
            self._maps[size] = self.intrinsic.undistort_maps(size)
        map1, map2 = self._maps[size]
        return cv2.remap(img, map1, map2, interpolation=cv2.INTER_LINEAR)

    def get_settings(self):
        data = super().get_settings()
        data["intrinsic"] = None if self.intrinsic is None else self.intrinsic.to_dict()
        return data

    def set_settings(self, settings):
        super().set_settings(settings)
        if settings.get("intrinsic") is not None:
            self.set_calibration(IntrinsicCalibration.from_dict(settings["intrinsic"]))


class BackgroundFilter(FilterStage):
    """
    Learns the background with MOG2 and exposes the foreground ``mask`` for the
    recognizers. The image itself passes unchanged.
    """
    name = "background"
    params = ("history", "var_threshold", "detect_shadows")

    def __init__(self, enabled=False, history=config.HISTORY, var_threshold=config.VAR_THRESHOLD,
                 detect_shadows=config.DETECT_SHADOWS):
        super().__init__(enabled)
        self.history = history
        self.var_threshold = var_threshold
        self.detect_shadows = detect_shadows
        self.mask: Optional[np.ndarray] = None
        self._mog = None

    def set_param(self, **values):
        super().set_param(**values)
        self._mog = None

    def reset(self):
        self._mog = None
        self.mask = None
        self.invalidate()

    def apply(self, img):
        if self._mog is None:
            self._mog = cv2.createBackgroundSubtractorMOG2(
                history=self.history,
                varThreshold=self.var_threshold,
                detectShadows=self.detect_shadows,
            )
        fg = self._mog.apply(img)
        fg = cv2.medianBlur(fg, 5)
        _, self.mask = cv2.threshold(fg, 200, 255, cv2.THRESH_BINARY)
        return img


class FilterChain:
    def __init__(self, stages: Optional[List[FilterStage]] = None):
        self.swap = SwapFilter()
        self.bright_contrast = BrightContrastFilter()
        self.border = BorderFilter()
        self.calib = CalibFilter()
        self.background = BackgroundFilter()
        self.stages = stages or [self.swap, self.bright_contrast, self.border, self.calib, self.background]
        self.last_changed: List[str] = []
        self.last_key = None

    def apply(self, img: np.ndarray, image_key=None) -> np.ndarray:
        """
        Runs all stages. ``image_key`` identifies the input frame (for example
        the frame number of a video); without it the image content is hashed.
        ``last_changed`` lists the stages that had to recompute.
        """
        key = image_hash(img) if image_key is None else image_key
        self.last_key = key
        out = img
        changed = []
        for stage in self.stages:
            key = (key, stage.key())
            if stage._memo_key == key and stage._memo_out is not None:
                out = stage._memo_out
                continue
            if stage.enabled:
                out = stage.apply(out)
            stage._memo_key = key
            stage._memo_out = out
            changed.append(stage.name)
        self.last_changed = changed
        return out

    def changed(self, name: str) -> bool:
        return name in self.last_changed

    @property
    def foreground(self) -> Optional[np.ndarray]:
        return self.background.mask if self.background.enabled else None

    @property
    def border_size(self) -> int:
        return int(self.border.size) if self.border.enabled else 0

    def get_settings(self) -> dict:
        return {s.name: s.get_settings() for s in self.stages}

    def set_settings(self, settings: dict):
        for s in self.stages:
            if s.name in settings:
                s.set_settings(settings[s.name])

    def apply_geometry(self, img: np.ndarray) -> np.ndarray:
        """Swap, border and undistortion only, without memo (second view of a stereo pair)."""
        for stage in (self.swap, self.border, self.calib):
            if stage.enabled:
                img = stage.apply(img)
        return img
