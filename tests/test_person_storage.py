import pytest

from pedtrack.errors import AmbiguousSelectionError
from pedtrack.person_storage import Direction, PersonStorage
from pedtrack.track_person import PointSource, TrackPerson, TrackPoint


def reco(x, y, q=100):
    return TrackPoint((x, y), q, PointSource.RECOGNIZED)


def line_person(nr, frames, y=0.0, source=PointSource.TRACKED, q=80):
    return TrackPerson.from_points(nr, {f: TrackPoint((10.0 * f, y), q, source) for f in frames})


@pytest.fixture
def storage():
    return PersonStorage(max_distance=20.0, verbose=False)


def test_empty_storage_frame_bounds(storage):
    assert storage.largest_last_frame() == -1
    assert storage.smallest_first_frame() == -1
    assert storage.largest_first_frame() == -1


def test_add_point_joins_nearest_or_creates(storage):
    assert storage.add_point(reco(100, 100), 0) == 0
    assert storage.add_point(reco(105, 101), 1) == 0
    assert storage.add_point(reco(300, 300), 1) == 1
    assert len(storage) == 2
    assert [p.nr for p in storage] == [1, 2]
    assert storage[0].frames() == [0, 1]


def test_add_point_respects_only_visible(storage):
    storage.add_point(reco(100, 100), 0)
    assert storage.add_point(reco(400, 400), 0, only_visible={0}) == -1
    assert len(storage) == 1
    # joining a visible person is still allowed
    assert storage.add_point(reco(102, 100), 1, only_visible={0}) == 0


def test_add_point_selection_limits_candidates():
    storage = PersonStorage(max_distance=10.0, verbose=False)
    storage.add_point(reco(100, 100), 0)
    storage.add_point(reco(115, 100), 0)
    assert len(storage) == 2
    assert storage.add_point(reco(106, 100), 1, selection={1}) == 1
    assert storage.add_point(reco(106, 100), 0) == 0


def test_add_points_greedy_closest_pairs(storage):
    storage.add_person(TrackPerson.from_points(0, {0: reco(100, 100)}))
    storage.add_person(TrackPerson.from_points(0, {0: reco(110, 100)}))
    result = storage.add_points([reco(112, 100), reco(104, 100), reco(500, 100)], 1)
    assert result == [1, 0, 2]
    assert len(storage) == 3
    assert storage[2].first_frame == 1


def test_distance_fn_overrides_max_distance(storage):
    storage.add_point(reco(100, 100), 0)
    storage.distance_fn = lambda pos, frame: 50.0
    assert storage.add_point(reco(140, 100), 1) == 0


def test_recognized_point_replaces_tracked(storage):
    storage.add_person(line_person(0, range(3)))
    storage.add_point(reco(11, 0), 1)
    assert storage[0].at(1).source == PointSource.RECOGNIZED
    assert len(storage) == 1


@pytest.mark.parametrize("direction, expected", [
    (Direction.PREVIOUS, [6, 7, 8, 9]),
    (Direction.FOLLOWING, [0, 1, 2, 3, 4]),
])
def test_del_point_directions(storage, direction, expected):
    storage.add_person(line_person(0, range(10)))
    assert storage.del_point((50, 0), direction, 5)
    assert storage[0].frames() == expected


def test_del_point_whole_removes_person_and_renumbers(storage):
    storage.add_person(line_person(0, range(10)))
    storage.add_person(line_person(0, range(10), y=100.0))
    assert storage.del_point((50, 0), Direction.WHOLE, 5)
    assert len(storage) == 1
    assert storage[0].nr == 1
    assert storage[0].at(0).y == 100.0


def test_del_point_nothing_near(storage):
    storage.add_person(line_person(0, range(10)))
    assert not storage.del_point((50, 300), Direction.WHOLE, 5)
    assert len(storage) == 1


def test_equidistant_pick_is_ambiguous(storage):
    storage.add_person(line_person(0, range(3), y=0.0))
    storage.add_person(line_person(0, range(3), y=10.0))
    with pytest.raises(AmbiguousSelectionError) as exc:
        storage.nearest_person((10, 5), 1)
    assert exc.value.candidates == [0, 1]
    assert "too many matches" in str(exc.value)


def test_proximal_persons_frame_window(storage):
    storage.add_person(line_person(0, [0, 1, 2]))
    storage.add_person(line_person(0, [8, 9]))
    assert storage.get_proximal_persons((20, 0), frame_range=(0, 0, 2)) == [(0, 2, 0.0)]
    found = storage.get_proximal_persons((80, 0), frame_range=(3, 3, 6))
    assert [(i, f) for i, f, _ in found] == [(1, 8)]


def test_del_point_all_with_selection(storage):
    storage.add_person(line_person(0, range(10)))
    storage.add_person(line_person(0, range(10), y=100.0))
    assert storage.del_point_all(Direction.FOLLOWING, 5, selection={1}) == 1
    assert storage[0].frames() == list(range(10))
    assert storage[1].frames() == list(range(5))


def test_del_points_roi(storage):
    storage.add_person(line_person(0, range(10)))
    assert storage.del_points_roi((0, -5, 35, 10), inside=True) == 4
    assert storage[0].first_frame == 4
    assert storage.del_points_roi((0, -5, 35, 10), inside=False) == 6
    assert len(storage) == 0


def test_split_person_at(storage):
    storage.add_person(line_person(0, range(10)))
    assert storage.split_person_at((50, 0), 5)
    assert len(storage) == 2
    assert storage[0].frames() == [0, 1, 2, 3, 4]
    assert storage[1].frames() == [5, 6, 7, 8, 9]
    assert storage[1].nr == 2
    assert not storage.split_person_at((0, 0), 0)


def test_merge_and_overlapping_pairs(storage):
    storage.add_person(line_person(0, range(0, 5)))
    storage.add_person(line_person(0, range(20, 25)))
    storage.add_person(line_person(0, range(3, 8)))
    assert storage.overlapping_pairs() == [(0, 2)]
    assert storage.overlapping_pairs([1]) == []
    index = storage.merge_persons(0, 2)
    assert index == 0
    assert len(storage) == 2
    assert storage[0].frames() == list(range(8))
    assert [p.nr for p in storage] == [1, 2]


def test_purge_removes_weak_tracked_points(storage):
    weak = line_person(0, range(10), q=40)
    weak.insert(9, TrackPoint((90, 0), 90, PointSource.TRACKED))
    strong = line_person(0, range(10), y=100.0, source=PointSource.RECOGNIZED, q=100)
    storage.add_persons([weak, strong])
    removed = storage.purge(frame=9)
    assert removed == 9
    assert storage[0].frames() == [9]
    assert len(storage[1]) == 10


def test_purge_only_up_to_frame(storage):
    storage.add_person(line_person(0, range(10), q=40))
    assert storage.purge(frame=4) == 5
    assert storage[0].frames() == [5, 6, 7, 8, 9]


def test_frame_bounds_and_visibility(storage):
    storage.add_person(line_person(0, range(2, 6)))
    storage.add_person(line_person(0, range(4, 12)))
    assert storage.smallest_first_frame() == 2
    assert storage.largest_first_frame() == 4
    assert storage.largest_last_frame() == 11
    assert storage.smallest_last_frame() == 5
    assert storage.visible(4) == 2
    assert storage.visible(10) == 1
    assert storage.total_points() == 12


def test_add_points_leftover_joins_matched_person(storage):
    storage.add_point(reco(100, 100), 9)
    result = storage.add_points([reco(101, 100, q=80), reco(103, 100, q=90)], 10)
    assert result == [0, 0]
    assert len(storage) == 1
    # the better point wins the frame
    assert storage[0].at(10).quality == 90
    assert storage[0].at(10).x == 103.0


def test_add_points_close_candidates_make_one_person(storage):
    result = storage.add_points([reco(100, 100), reco(102, 100)], 0)
    assert result == [0, 0]
    assert len(storage) == 1
    assert storage[0].at(0).x == 100.0


def test_proximal_persons_reports_frame_of_closest_point(storage):
    storage.add_person(line_person(0, range(5)))
    found = storage.get_proximal_persons((31, 0), frame_range=(2, 2, 2))
    assert found == [(0, 3, pytest.approx(1.0))]


def test_move_point_stores_manual_point(storage):
    storage.add_person(line_person(0, range(3)))
    storage[0].at(1).marker_id = 4
    moved = storage.move_point(0, 1, (15, 3))
    assert moved.source == PointSource.MANUAL
    assert moved.quality == 100
    assert storage[0].at(1).pos == (15.0, 3.0)
    assert storage[0].at(1).marker_id == 4
    # a tracked or recognized point can no longer replace it
    storage.add_point(reco(12, 0), 1)
    assert storage[0].at(1).source == PointSource.MANUAL
    storage.move_point(0, 7, (70, 0))
    assert storage[0].frames() == [0, 1, 2, 7]
