import argparse
import os

from pedtrack import config
from pedtrack.calibration import ExtrinsicCalibration
from pedtrack.filters import FilterChain
from pedtrack.person_storage import PersonStorage
from pedtrack.pipeline import FramePipeline
from pedtrack.project import ProjectContext
from pedtrack.recognition import ColorRange, create_recognizer
from pedtrack.sources import ImageSequenceSource, VideoFileSource
from pedtrack.stereo import StereoContext
from pedtrack.track_io import import_trc, write_trc


def parse_args():
    parser = argparse.ArgumentParser(description="Track marked pedestrians in a video and write a .trc file.")
    parser.add_argument("video", help="video file or image pattern (e.g. 'frames/*.png')")
    parser.add_argument("--calib", help="calibration json (mtx, dist, rvec, tvec)")
    parser.add_argument("--out", help="output .trc (default: next to the video)")
    parser.add_argument("--settings", help="project settings json written by --save-settings")
    parser.add_argument("--save-settings", help="write the effective settings to this json")
    parser.add_argument("--method", default=None, choices=["COLOR", "CODE", "MULTICOLOR", "STEREO"])
    parser.add_argument("--hue", type=int, nargs=2, metavar=("MIN", "MAX"), help="hue range of the hats (0..179)")
    parser.add_argument("--reco-step", type=int, default=None)
    parser.add_argument("--roi", type=int, nargs=4, metavar=("X", "Y", "W", "H"))
    parser.add_argument("--start", type=int, default=0)
    parser.add_argument("--fps", type=float, default=config.FPS_DEFAULT, help="frame rate of image sequences")
    parser.add_argument("--no-back-track", action="store_true")
    parser.add_argument("--undistort", action="store_true", help="undistort frames with the intrinsics")
    parser.add_argument("--background", action="store_true", help="restrict recognition to the foreground")
    parser.add_argument("--right", help="right video of a stereo pair")
    parser.add_argument("--baseline", type=float, default=0.0, help="stereo baseline in cm")
    parser.add_argument("--append", help="existing .trc whose trajectories are continued")
    parser.add_argument("--quiet", action="store_true")
    return parser.parse_args()


def open_source(args):
    if any(ch in args.video for ch in "*?["):
        return ImageSequenceSource(args.video, fps=args.fps)
    return VideoFileSource(args.video, right_path=args.right)


def main():
    args = parse_args()
    verbose = not args.quiet
    project = ProjectContext(args.settings)

    extr = None
    if args.calib:
        calib_path = project.existing_file(args.calib)
        if calib_path is None:
            raise FileNotFoundError(f"Calibration file not found: {args.calib}")
        extr = ExtrinsicCalibration.from_json(calib_path)

    source = open_source(args)
    print(f"[INFO] {source.num_frames} frames, {source.fps:g} fps, size {source.size}")

    storage = PersonStorage(verbose=verbose)
    if args.append:
        import_trc(args.append, storage, verbose=verbose)

    filters = FilterChain()
    stereo = None
    if args.right:
        if extr is None or args.baseline <= 0:
            raise ValueError("stereo tracking needs --calib and a positive --baseline")
        stereo = StereoContext(extr, args.baseline)

    pipeline = FramePipeline(storage, filters, extr=extr, stereo=stereo, verbose=verbose)
    if args.settings:
        project.load_settings(args.settings, {"pipeline": pipeline})

    s = pipeline.settings
    if args.method:
        s.recognition_method = args.method
    if args.reco_step:
        s.reco_step = args.reco_step
    if args.roi:
        s.track_roi = s.reco_roi = tuple(args.roi)
    if args.undistort and extr is not None:
        filters.calib.set_calibration(extr.intrinsic)
        filters.calib.set_param(enabled=True)
        # positions are measured in undistorted frames
        extr.distorted = False
    if args.background:
        filters.background.set_param(enabled=True)
    if args.hue:
        recognizer = create_recognizer(s.recognition_method)
        if hasattr(recognizer, "color_range"):
            recognizer.color_range = ColorRange(args.hue[0], args.hue[1])
        else:
            print(f"[WARNING] --hue is ignored for recognition method {s.recognition_method}")
        pipeline.set_recognizer(recognizer)
    s.stereo_recognition = stereo is not None and s.recognition_method == "STEREO"

    if args.save_settings:
        project.save_settings(args.save_settings, {"pipeline": pipeline})

    try:
        result = pipeline.track_all(source, start=args.start,
                                    auto_back_track=False if args.no_back_track else None)
    finally:
        source.release()

    if result.unreadable:
        print(f"[WARNING] {result.unreadable} frames could not be read.")
    if s.stereo_recognition:
        storage.recalc_height(s.default_height)

    out_path = args.out or os.path.splitext(args.video.replace("*", "all"))[0] + ".trc"
    write_trc(out_path, storage, progress=verbose, verbose=verbose)


if __name__ == "__main__":
    main()
