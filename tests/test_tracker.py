import pytest

from pedtrack.person_storage import PersonStorage
from pedtrack.track_person import PointSource, TrackPoint
from pedtrack.tracker import Tracker, extract_template, match_template_pyramid


def run(tracker, storage, frames, start=0, step=1, **kwargs):
    for i, img in enumerate(frames):
        frame = start + i * step
        for proposal in tracker.track(img, storage, frame, **kwargs):
            storage.commit_tracked(proposal.person, proposal.frame, proposal.point)


@pytest.fixture
def storage():
    return PersonStorage(verbose=False)


def test_extract_template_bounds_and_flat_patch(make_frame):
    img = make_frame([(100, 100)])[:, :, 0]
    assert extract_template(img, (100, 100), 15).shape == (31, 31)
    assert extract_template(img, (5, 100), 15) is None
    assert extract_template(img, (400, 400), 15) is None


def test_match_template_finds_shift(make_frame):
    a = make_frame([(200, 150)])[:, :, 2]
    b = make_frame([(205, 147)])[:, :, 2]
    tpl = extract_template(a, (200, 150), 15)
    shift, quality = match_template_pyramid(b, tpl, (200, 150), 24)
    assert shift == pytest.approx((5.0, -3.0), abs=0.6)
    assert quality > 90


def test_tracker_follows_moving_blob(make_frame, storage):
    positions = [(100 + 3 * i, 100 + 2 * i) for i in range(6)]
    storage.add_point(TrackPoint(positions[0], 100, PointSource.RECOGNIZED), 0)
    run(Tracker(verbose=False), storage, [make_frame([p]) for p in positions])
    person = storage[0]
    assert person.frames() == list(range(6))
    for f in range(1, 6):
        point = person.at(f)
        assert point.source == PointSource.TRACKED
        assert point.distance_to(positions[f]) < 1.5
        assert point.quality >= 50


def test_tracking_backwards(make_frame, storage):
    positions = {f: (300 - 4 * f, 200) for f in range(5)}
    storage.add_point(TrackPoint(positions[4], 100, PointSource.RECOGNIZED), 4)
    frames = [make_frame([positions[f]]) for f in (4, 3, 2, 1, 0)]
    run(Tracker(verbose=False), storage, frames, start=4, step=-1)
    assert storage[0].frames() == [0, 1, 2, 3, 4]
    assert storage[0].at(0).distance_to(positions[0]) < 1.5


def test_miss_leaves_gap_and_is_bridged(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    frames = [make_frame([(100, 100)]), make_frame([(103, 100)]), make_frame([]), make_frame([(109, 100)])]
    run(Tracker(verbose=False), storage, frames)
    person = storage[0]
    assert person.frames() == [0, 1, 3]
    assert person.at(3).distance_to((109, 100)) < 1.5


def test_gap_larger_than_max_gap_is_not_bridged(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    frames = [make_frame([(100, 100)]), make_frame([]), make_frame([]), make_frame([(100, 100)])]
    run(Tracker(verbose=False), storage, frames, max_gap=2)
    assert storage[0].frames() == [0]


def test_non_adjacent_frame_does_not_track(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    tracker = Tracker(verbose=False)
    assert tracker.track(make_frame([(100, 100)]), storage, 0) == []
    assert tracker.track(make_frame([(100, 100)]), storage, 5) == []
    assert tracker.prev_frame == 5


def test_roi_excludes_persons(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    frames = [make_frame([(100, 100)]), make_frame([(102, 100)])]
    run(Tracker(verbose=False), storage, frames, roi=(300, 0, 300, 480))
    assert storage[0].frames() == [0]


def test_to_track_selects_persons(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    storage.add_point(TrackPoint((400, 300), 100, PointSource.RECOGNIZED), 0)
    frames = [make_frame([(100, 100), (400, 300)]), make_frame([(101, 100), (401, 300)])]
    run(Tracker(verbose=False), storage, frames, to_track={1})
    assert storage[0].frames() == [0]
    assert storage[1].frames() == [0, 1]


def test_existing_point_is_not_overwritten(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    storage.add_point(TrackPoint((104, 100), 100, PointSource.RECOGNIZED), 1)
    frames = [make_frame([(100, 100)]), make_frame([(102, 100)])]
    run(Tracker(verbose=False), storage, frames)
    assert storage[0].at(1).source == PointSource.RECOGNIZED
    assert storage[0].at(1).pos == (104.0, 100.0)


def test_reset_forgets_previous_frame(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    tracker = Tracker(verbose=False)
    tracker.track(make_frame([(100, 100)]), storage, 0)
    tracker.reset()
    assert tracker.track(make_frame([(101, 100)]), storage, 1) == []


def test_resize_drops_previous_image_of_other_size(make_frame, storage):
    tracker = Tracker(verbose=False)
    tracker.track(make_frame([(100, 100)]), storage, 0)
    tracker.resize((640, 480))
    assert tracker.prev_frame == 0
    tracker.resize((650, 490))
    assert tracker.prev_frame is None


def test_no_candidate_without_repeat_adds_nothing(make_frame, storage):
    storage.add_point(TrackPoint((100, 100), 100, PointSource.RECOGNIZED), 0)
    tracker = Tracker(verbose=False)
    tracker.track(make_frame([(100, 100)]), storage, 0, repeat=False)
    assert tracker.track(make_frame([]), storage, 1, repeat=False) == []
    assert storage.largest_last_frame() == 0
    assert storage[0].frames() == [0]
