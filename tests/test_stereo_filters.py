import numpy as np
import pytest

from pedtrack.calibration import ExtrinsicCalibration
from pedtrack.errors import NotCalibratedError
from pedtrack.filters import FilterChain, image_hash
from pedtrack.stereo import StereoContext


# ===============================
# Stereo
# ===============================
def ground_disparity():
    return np.full((480, 640), 800.0 * 10.0 / 500.0, np.float32)


def test_world_point_from_disparity(extr):
    stereo = StereoContext(extr, baseline=10.0)
    disparity = ground_disparity()
    disparity[200:280, 300:340] = 800.0 * 10.0 / 324.0
    stereo.set_disparity(disparity)
    ground = stereo.world_point((100.0, 100.0))
    assert ground.z == pytest.approx(0.0, abs=1e-3)
    assert ground.x == pytest.approx((100.0 - 320.0) * 500.0 / 800.0, abs=1e-2)
    assert stereo.height_at((320.0, 240.0)) == pytest.approx(176.0, abs=1e-2)
    heights = stereo.height_map()
    assert heights.shape == (480, 640)
    assert heights[240, 320] == pytest.approx(176.0, abs=1e-2)


def test_invalid_disparity_gives_none(extr):
    stereo = StereoContext(extr, baseline=10.0)
    disparity = ground_disparity()
    disparity[0:20, 0:20] = 0.0
    stereo.set_disparity(disparity)
    assert stereo.world_point((5.0, 5.0)) is None
    assert stereo.world_point((-5.0, 5.0)) is None
    assert np.isnan(stereo.height_map()[5, 5])


def test_no_images_no_disparity(extr):
    stereo = StereoContext(extr, baseline=10.0)
    assert stereo.get_disparity() is None
    assert stereo.world_point((1.0, 1.0)) is None


def test_world_point_needs_pose(intrinsic):
    stereo = StereoContext(ExtrinsicCalibration(intrinsic), baseline=10.0)
    stereo.set_disparity(ground_disparity())
    with pytest.raises(NotCalibratedError):
        stereo.world_point((100.0, 100.0))


def test_stereo_argument_checks(extr):
    with pytest.raises(ValueError):
        StereoContext(extr, baseline=0.0)
    stereo = StereoContext(extr, baseline=10.0)
    with pytest.raises(ValueError):
        stereo.init(np.zeros((10, 10), np.uint8), np.zeros((10, 12), np.uint8))


def test_sgbm_disparity_of_shifted_texture(extr):
    rng = np.random.RandomState(0)
    left = rng.randint(0, 255, (240, 320)).astype(np.uint8)
    right = np.roll(left, -8, axis=1)
    stereo = StereoContext(extr, baseline=10.0, num_disparities=32, block_size=7)
    stereo.init(left, right)
    disparity = stereo.get_disparity()
    centre = disparity[100:140, 140:180]
    assert np.nanmedian(centre) == pytest.approx(8.0, abs=1.0)


# ===============================
# Filter chain
# ===============================
def test_image_hash_changes_with_content():
    a = np.zeros((4, 4), np.uint8)
    b = a.copy()
    b[0, 0] = 1
    assert image_hash(a) == image_hash(a.copy())
    assert image_hash(a) != image_hash(b)


def test_disabled_chain_passes_image_through(make_frame):
    chain = FilterChain()
    img = make_frame([(100, 100)])
    assert chain.apply(img, image_key=0) is img
    assert chain.foreground is None
    assert chain.border_size == 0


def test_unchanged_input_is_not_recomputed(make_frame):
    chain = FilterChain()
    img = make_frame([(100, 100)])
    chain.apply(img, image_key=1)
    assert chain.last_changed == ["swap", "bright_contrast", "border", "calib", "background"]
    chain.apply(img, image_key=1)
    assert chain.last_changed == []
    chain.apply(img)
    assert chain.last_changed == ["swap", "bright_contrast", "border", "calib", "background"]
    chain.apply(img.copy())
    assert chain.last_changed == []


def test_parameter_change_recomputes_from_that_stage(make_frame):
    chain = FilterChain()
    img = make_frame([(100, 100)])
    chain.apply(img, image_key=1)
    chain.bright_contrast.set_param(enabled=True, brightness=20)
    out = chain.apply(img, image_key=1)
    assert chain.last_changed == ["bright_contrast", "border", "calib", "background"]
    assert int(out[0, 0, 0]) == 60
    chain.bright_contrast.set_param(brightness=20)
    chain.apply(img, image_key=1)
    assert chain.last_changed == []


def test_border_and_swap(make_frame):
    chain = FilterChain()
    img = make_frame([(10, 20)], radius=2)
    chain.border.set_param(enabled=True, size=5)
    chain.swap.set_param(enabled=True, horizontal=True)
    out = chain.apply(img)
    assert out.shape == (490, 650, 3)
    assert chain.border_size == 5
    # mirrored blob now near the right edge, shifted by the border
    assert out[20 + 5, 640 - 1 - 10 + 5, 2] == 255
    assert chain.apply_geometry(img).shape == (490, 650, 3)


def test_unknown_parameter_raises():
    with pytest.raises(AttributeError):
        FilterChain().border.set_param(width=3)


def test_calib_filter_without_distortion_keeps_image(make_frame, intrinsic):
    chain = FilterChain()
    chain.calib.set_calibration(intrinsic)
    chain.calib.set_param(enabled=True)
    img = make_frame([(300, 200)])
    out = chain.apply(img)
    assert np.abs(out.astype(int) - img.astype(int)).max() <= 1


def test_background_filter_produces_foreground_mask(make_frame):
    chain = FilterChain()
    chain.background.set_param(enabled=True, history=10)
    for i in range(10):
        chain.apply(make_frame([]), image_key=i)
    chain.apply(make_frame([(320, 240)], radius=20, color=(255, 255, 255)), image_key=10)
    mask = chain.foreground
    assert mask.shape == (480, 640)
    assert mask[240, 320] == 255
    assert mask[10, 10] == 0


def test_settings_round_trip():
    chain = FilterChain()
    chain.border.set_param(enabled=True, size=7, color=(1, 2, 3))
    chain.bright_contrast.set_param(contrast=15)
    other = FilterChain()
    other.set_settings(chain.get_settings())
    assert other.border.enabled
    assert other.border.size == 7
    assert other.border.color == (1, 2, 3)
    assert other.bright_contrast.contrast == 15
