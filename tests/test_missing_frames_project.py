import json

import pytest

from pedtrack import config
from pedtrack.config import TrackingSettings
from pedtrack.missing_frames import MissingFrame, MissingFrames
from pedtrack.project import ProjectContext, newer_than_version, parse_version


# ===============================
# Missing frames
# ===============================
def test_nominal_frames_shift_after_gap():
    missing = MissingFrames()
    missing.add(10, 2)
    assert missing.nominal_frame(5) == 5
    assert missing.nominal_frame(10) == 12
    assert missing.nominal_frame(11) == 13
    assert missing.video_frame(12) == 10
    assert missing.video_frame(10) == -1
    assert missing.video_frame(11) == -1
    assert missing.video_frame(9) == 9


def test_entries_are_sorted_and_replaced():
    missing = MissingFrames()
    missing.add(20, 1)
    missing.add(5, 3)
    missing.add(20, 4)
    assert missing.entries == [MissingFrame(5, 3), MissingFrame(20, 4)]
    assert missing.total() == 7
    missing.add(5, 0)
    assert missing.entries == [MissingFrame(20, 4)]
    with pytest.raises(ValueError):
        missing.add(3, -1)


def test_from_timestamps():
    ts = [0.0, 0.04, 0.08, 0.20, 0.24]
    missing = MissingFrames.from_timestamps(ts, fps=25.0, verbose=False)
    assert missing.to_list() == [[3, 2]]
    assert missing.nominal_frame(4) == 6


def test_list_round_trip():
    missing = MissingFrames.from_list([[4, 1], [9, 2]])
    assert MissingFrames.from_list(json.loads(json.dumps(missing.to_list()))).entries == missing.entries


# ===============================
# Versions
# ===============================
def test_version_padding():
    assert parse_version("1.2") == [1, 2, 0]
    assert newer_than_version("1.2", "1.1.9")
    assert not newer_than_version("1.2", "1.2.0")
    assert not newer_than_version("0.8.9", "0.9")


@pytest.mark.parametrize("bad", ["1", "1.2.3.4", "a.b.c"])
def test_bad_versions(bad):
    with pytest.raises(ValueError):
        parse_version(bad)


# ===============================
# Project context
# ===============================
def test_existing_file_resolves_relative_to_project(tmp_path):
    (tmp_path / "calib.json").write_text("{}")
    project = ProjectContext(str(tmp_path / "session.json"))
    found = project.existing_file(" missing.json ; calib.json ")
    assert found == str(tmp_path / "calib.json")
    assert project.existing_file("nothing.json;also_nothing.json") is None


def test_file_list_relative_and_absolute(tmp_path):
    project = ProjectContext(str(tmp_path / "session.json"))
    rel, abs_path = project.file_list("videos/run1.avi").split(";")
    assert rel.replace("\\", "/") == "videos/run1.avi"
    assert abs_path == str(tmp_path / "videos" / "run1.avi")


class _Component:
    def __init__(self):
        self.settings = TrackingSettings()

    def get_settings(self):
        return self.settings.to_dict()

    def set_settings(self, data):
        self.settings = TrackingSettings.from_dict(data)


def test_settings_round_trip(tmp_path):
    project = ProjectContext(str(tmp_path / "session.json"))
    comp = _Component()
    comp.settings.reco_step = 4
    comp.settings.track_roi = (1, 2, 3, 4)
    project.save_settings(str(tmp_path / "settings.json"), {"tracking": comp})

    other = _Component()
    version = project.load_settings("settings.json", {"tracking": other})
    assert other.settings.reco_step == 4
    assert other.settings.track_roi == (1, 2, 3, 4)
    assert version == config.VERSION


def test_settings_from_newer_version_warn(tmp_path, capsys):
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"version": "99.0", "tracking": {"reco_step": 2}}))
    other = _Component()
    ProjectContext(str(tmp_path / "p.json")).load_settings(str(path), {"tracking": other})
    assert "[WARNING]" in capsys.readouterr().out
    assert other.settings.reco_step == 2
