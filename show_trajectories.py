"""
Top view of the trajectories of a .trc file.

Usage
-----
python show_trajectories.py tracks.trc --calib calib.json [--animate] [--save plot.png]
"""

import argparse

import matplotlib.pyplot as plt

from pedtrack.calibration import ExtrinsicCalibration
from pedtrack.config import ExportSettings
from pedtrack.person_storage import PersonStorage
from pedtrack.plotting import animate_trajectories, plot_trajectories, save_plot
from pedtrack.track_io import import_trc
from pedtrack.tracker_real import TrackerReal


def main():
    parser = argparse.ArgumentParser(description="Plot real-world trajectories.")
    parser.add_argument("trc")
    parser.add_argument("--calib", required=True)
    parser.add_argument("--height", type=float, default=None)
    parser.add_argument("--animate", action="store_true")
    parser.add_argument("--save", help="write the plot to this image instead of showing it")
    args = parser.parse_args()

    storage = PersonStorage()
    import_trc(args.trc, storage)
    settings = ExportSettings()
    if args.height:
        settings.default_height = args.height
    real = TrackerReal()
    real.calculate(storage, ExtrinsicCalibration.from_json(args.calib), settings)
    table = real.to_dataframe()

    if args.save:
        save_plot(table, args.save)
        return
    if args.animate:
        anim = animate_trajectories(table)  # keep a reference while the window is open
        if anim is None:
            return
    else:
        plot_trajectories(table)
    plt.show()


if __name__ == "__main__":
    main()
