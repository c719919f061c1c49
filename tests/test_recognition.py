import cv2
import numpy as np
import pytest

from pedtrack.errors import RecognitionConfigError
from pedtrack.recognition import (CodeMarkerRecognizer, ColorBlobRecognizer, ColorRange, MultiColorRecognizer,
                                  RecognitionContext, RecognitionMethod, StereoRecognizer, create_recognizer)
from pedtrack.stereo import StereoContext
from pedtrack.track_person import PointSource


def test_color_blob_found_at_centre(make_frame):
    img = make_frame([(200, 120)], radius=12)
    points = ColorBlobRecognizer(ColorRange(0, 10)).recognize(img)
    assert len(points) == 1
    p = points[0]
    assert p.distance_to((200, 120)) < 0.5
    assert p.source == PointSource.RECOGNIZED
    assert p.quality > 80
    assert p.color[0] > 200 and p.color[2] < 40
    assert p.head_px == pytest.approx(25.0, abs=2.0)


def test_hue_range_wraps_around_red(make_frame):
    img = make_frame([(100, 100)])
    cv2.circle(img, (300, 300), 10, (60, 0, 255), -1)     # hue about 173
    assert len(ColorBlobRecognizer(ColorRange(0, 10)).recognize(img)) == 1
    assert len(ColorBlobRecognizer(ColorRange(170, 10)).recognize(img)) == 2


def test_roi_limits_search_and_keeps_image_coordinates(make_frame):
    img = make_frame([(100, 100), (400, 300)])
    points = ColorBlobRecognizer(ColorRange(0, 10)).recognize(img, roi=(300, 200, 200, 200))
    assert len(points) == 1
    assert points[0].distance_to((400, 300)) < 0.5


def test_small_blobs_and_background_are_ignored(make_frame):
    img = make_frame([(100, 100)], radius=2)
    assert ColorBlobRecognizer(ColorRange(0, 10)).recognize(img) == []
    img = make_frame([(100, 100)])
    context = RecognitionContext(foreground=np.zeros(img.shape[:2], np.uint8))
    assert ColorBlobRecognizer(ColorRange(0, 10)).recognize(img, None, context) == []


@pytest.mark.parametrize("kwargs", [dict(h_min=0, h_max=200), dict(h_min=0, h_max=10, s_min=200, s_max=100),
                                    dict(h_min=-1, h_max=10)])
def test_invalid_color_range(kwargs):
    with pytest.raises(RecognitionConfigError):
        ColorRange(**kwargs)


def test_aruco_marker_gives_id_and_direction():
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_4X4_50)
    marker = cv2.aruco.generateImageMarker(dictionary, 7, 100)
    img = np.full((400, 400), 255, np.uint8)
    img[100:200, 150:250] = marker
    img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    points = CodeMarkerRecognizer("DICT_4X4_50").recognize(img)
    assert len(points) == 1
    p = points[0]
    assert p.marker_id == 7
    assert p.distance_to((200, 150)) < 1.5
    assert p.orient.x == pytest.approx(0.0, abs=0.05)
    assert p.orient.y == pytest.approx(-1.0, abs=0.05)
    assert p.head_px == pytest.approx(100.0, abs=3.0)


def test_aruco_id_filter():
    dictionary = cv2.aruco.getPredefinedDictionary(cv2.aruco.DICT_4X4_50)
    img = np.full((400, 400), 255, np.uint8)
    img[100:200, 150:250] = cv2.aruco.generateImageMarker(dictionary, 7, 100)
    assert CodeMarkerRecognizer("DICT_4X4_50", ids=[3]).recognize(img) == []


def test_unknown_aruco_dictionary():
    with pytest.raises(RecognitionConfigError):
        CodeMarkerRecognizer("DICT_DOES_NOT_EXIST")
    with pytest.raises(RecognitionConfigError):
        CodeMarkerRecognizer("__name__")


def test_multicolor_dot_gives_direction():
    img = np.full((300, 300, 3), 200, np.uint8)
    cv2.circle(img, (150, 100), 15, (0, 255, 0), -1)
    cv2.circle(img, (158, 100), 4, (20, 20, 20), -1)
    points = MultiColorRecognizer([ColorRange(50, 70)]).recognize(img)
    assert len(points) == 1
    p = points[0]
    assert p.quality == 100
    assert p.distance_to((158, 100)) < 1.0
    assert p.orient.x == pytest.approx(1.0, abs=0.1)


def test_multicolor_without_dot_has_lower_quality():
    img = np.full((300, 300, 3), 200, np.uint8)
    cv2.circle(img, (150, 100), 15, (0, 255, 0), -1)
    points = MultiColorRecognizer([ColorRange(50, 70)]).recognize(img)
    assert len(points) == 1
    assert points[0].quality == 75
    assert points[0].orient is None


def test_stereo_recognizer_finds_head_peak(extr):
    stereo = StereoContext(extr, baseline=10.0)
    disparity = np.full((480, 640), 800.0 * 10.0 / 500.0, np.float32)
    # dome: 166 cm at the rim up to 176 cm in the middle
    for r in range(10, -1, -1):
        cv2.circle(disparity, (320, 240), r, 800.0 * 10.0 / (500.0 - (176.0 - r)), -1)
    stereo.set_disparity(disparity)
    points = StereoRecognizer().recognize(np.zeros((480, 640, 3), np.uint8), None,
                                          RecognitionContext(stereo=stereo, head_size_px=30.0))
    assert len(points) == 1
    p = points[0]
    assert p.distance_to((320, 240)) < 1.0
    assert p.sp.z == pytest.approx(176.0, abs=2.5)


def test_stereo_recognizer_without_stereo_returns_nothing():
    assert StereoRecognizer().recognize(np.zeros((10, 10, 3), np.uint8)) == []


def test_create_recognizer():
    assert create_recognizer("COLOR").method == RecognitionMethod.COLOR
    assert isinstance(create_recognizer(RecognitionMethod.CODE), CodeMarkerRecognizer)
    with pytest.raises(RecognitionConfigError):
        create_recognizer("INFRARED")


def test_settings_round_trip():
    reco = MultiColorRecognizer([ColorRange(10, 20)], use_dot=False)
    other = MultiColorRecognizer()
    other.set_settings(reco.get_settings())
    assert other.color_ranges == [ColorRange(10, 20)]
    assert other.use_dot is False
