import argparse
import json
import os

from pedtrack import config
from pedtrack.calibration import ExtrinsicCalibration
from pedtrack.config import ExportSettings
from pedtrack.export import export_tracks
from pedtrack.missing_frames import MissingFrames
from pedtrack.person_storage import PersonStorage
from pedtrack.track_io import import_trc, write_trc
from pedtrack.tracker_real import TrackerReal


def parse_args():
    parser = argparse.ArgumentParser(description="Convert pixel trajectories (.trc) to real-world coordinates.")
    parser.add_argument("trc", help="trajectory file")
    parser.add_argument("--calib", required=True, help="calibration json (mtx, dist, rvec, tvec)")
    parser.add_argument("--out", help="destination (.txt, .dat, .trav, .trc or no extension for .trc + .txt)")
    parser.add_argument("--settings", help="json with export settings")
    parser.add_argument("--missing", help="json list of [video_frame, count] pairs")
    parser.add_argument("--fps", type=float)
    parser.add_argument("--height", type=float, help="default person height in cm")
    parser.add_argument("--meter", action="store_true")
    parser.add_argument("--smooth", action="store_true")
    parser.add_argument("--fill-gaps", action="store_true")
    parser.add_argument("--elim", action="store_true", help="eliminate implausible points and trajectories")
    parser.add_argument("--view", action="store_true", help="export view direction and angle of view")
    parser.add_argument("--quiet", action="store_true")
    return parser.parse_args()


def load_export_settings(args) -> ExportSettings:
    settings = ExportSettings()
    if args.settings:
        with open(args.settings, "r") as f:
            settings = ExportSettings.from_dict(json.load(f))
    if args.fps:
        settings.fps = args.fps
    if args.height:
        settings.default_height = args.height
    if args.meter:
        settings.in_meter = True
    if args.smooth:
        settings.smooth = True
    if args.fill_gaps:
        settings.fill_gaps = True
    if args.elim:
        settings.elim_points = settings.elim_trajectories = True
    if args.view:
        settings.view_direction = settings.angle_of_view = True
    return settings


def main():
    args = parse_args()
    verbose = not args.quiet
    settings = load_export_settings(args)
    extr = ExtrinsicCalibration.from_json(args.calib)

    storage = PersonStorage(verbose=verbose)
    import_trc(args.trc, storage, verbose=verbose)

    missing = None
    if args.missing:
        with open(args.missing, "r") as f:
            missing = MissingFrames.from_list(json.load(f))

    real = TrackerReal(verbose=verbose)
    n = real.calculate(storage, extr, settings, missing, progress=verbose)
    if n == 0:
        print("[WARNING] No trajectory could be exported.")

    destination = args.out or os.path.splitext(args.trc)[0] + ".txt"
    comments = {p.nr: p.comment for p in storage if p.comment}
    export_tracks(real.to_dataframe(), destination, settings,
                  write_trc_fn=lambda path: write_trc(path, storage, verbose=verbose),
                  trc_file=os.path.basename(args.trc), comments=comments, verbose=verbose)
    if verbose:
        print(f"[INFO] Done. pedtrack {config.VERSION}")


if __name__ == "__main__":
    main()
