import os
import tempfile
from contextlib import contextmanager
from typing import Optional, Tuple

import cv2
import numpy as np

Rect = Tuple[int, int, int, int]   # x, y, w, h


def clip_roi(roi: Optional[Rect], img_shape, even: bool = False) -> Rect:
    """
    Clips an (x, y, w, h) rectangle to the image. ``None`` means the whole image.
    With ``even`` the width and height are shrunk to even numbers (needed for
    pyramid downscaling without rounding drift).
    """
    h_img, w_img = img_shape[:2]
    if roi is None:
        x, y, w, h = 0, 0, w_img, h_img
    else:
        x, y, w, h = (int(round(v)) for v in roi)
    x1, y1 = max(x, 0), max(y, 0)
    x2, y2 = min(x + w, w_img), min(y + h, h_img)
    w, h = max(x2 - x1, 0), max(y2 - y1, 0)
    if even:
        w -= w % 2
        h -= h % 2
    return x1, y1, w, h


def roi_view(img: np.ndarray, roi: Optional[Rect], even: bool = False):
    x, y, w, h = clip_roi(roi, img.shape, even)
    return img[y:y + h, x:x + w], (x, y, w, h)


def in_roi(pos, roi: Optional[Rect]) -> bool:
    if roi is None:
        return True
    x, y, w, h = roi
    return x <= pos[0] < x + w and y <= pos[1] < y + h


def median_of_3(a: float, b: float, c: float) -> float:
    if a <= b:
        if b <= c:
            return b
        return max(a, c)
    if a <= c:
        return a
    return max(b, c)


def to_gray(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


@contextmanager
def atomic_write(path: str, mode: str = "w", encoding: Optional[str] = "utf-8"):
    """
    Writes to a temporary file next to ``path`` and moves it into place only
    when the block finished without an exception.
    """
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", dir=directory)
    kwargs = {} if "b" in mode else {"encoding": encoding, "newline": "\n"}
    try:
        with os.fdopen(fd, mode, **kwargs) as f:
            yield f
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
