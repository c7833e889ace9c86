#!/usr/bin/env python3
"""Demo script for stereo SLAM on a folder of rectified image pairs.

The sequence directory is expected to hold ``left/`` and ``right/``
subdirectories with identically named images. Image names are taken as
timestamps in nanoseconds (the EuRoC convention), falling back to the frame
index at the configured frame rate.

Usage:
    python examples/stereo_slam.py --sequence data/seq --settings settings.yaml \
        --vocabulary data/vocabulary.npz
    python examples/stereo_slam.py ... --viz --save-map out/map.npz

Requirements:
    - Settings YAML with ``sensor: stereo`` and the rectified camera
    - Trained vocabulary (see scripts/train_vocabulary.py)
    - The ``viz`` extra (rerun-sdk) for ``--viz``
"""

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np

from covislam import SLAMSystem, TrackingState

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".pgm")


def stereo_pairs(sequence: Path, fps: float):
    """Yield (left, right, timestamp in seconds) for every image pair."""
    left_paths = sorted(p for p in (sequence / "left").iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
    for i, left_path in enumerate(left_paths):
        right_path = sequence / "right" / left_path.name
        left = cv2.imread(str(left_path), cv2.IMREAD_GRAYSCALE)
        right = cv2.imread(str(right_path), cv2.IMREAD_GRAYSCALE)
        if left is None or right is None:
            print(f"Skipping unreadable pair {left_path.name}")
            continue
        stem = left_path.stem
        timestamp = int(stem) * 1e-9 if stem.isdigit() else i / fps
        yield left, right, timestamp


def main() -> None:
    parser = argparse.ArgumentParser(description="Run covislam on a stereo sequence")
    parser.add_argument("--sequence", type=Path, required=True, help="Directory with left/ and right/")
    parser.add_argument("--settings", type=Path, required=True, help="Settings YAML")
    parser.add_argument("--vocabulary", type=Path, default=Path("data/vocabulary.npz"))
    parser.add_argument("--output", type=Path, default=Path("output"), help="Trajectory directory")
    parser.add_argument("--save-map", type=Path, default=None, help="Write the final map here")
    parser.add_argument("--max-frames", type=int, default=None)
    parser.add_argument("--viz", action="store_true", help="Stream the map to a Rerun viewer")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(threadName)s %(name)s: %(message)s",
    )

    visualizer = None
    slam = SLAMSystem(args.settings, args.vocabulary)
    if args.viz:
        from covislam.visualization import RerunVisualizer

        visualizer = RerunVisualizer(slam.camera, app_name="covislam-stereo")

    print("=" * 80)
    print("STEREO SLAM")
    print("=" * 80)
    print(f"{'Frame':>6} {'State':^16} {'Inlr':>5} {'KF':>4} {'Map':>6} {'LC':>3} | {'ms':>6} | Position")
    print("-" * 80)

    lost_frames = 0
    with slam:
        for i, (left, right, timestamp) in enumerate(stereo_pairs(args.sequence, slam.config.camera.fps)):
            if args.max_frames is not None and i >= args.max_frames:
                break

            T = slam.track_stereo(left, right, timestamp)
            state = slam.tracking_state
            if state is TrackingState.LOST:
                lost_frames += 1

            if visualizer is not None:
                visualizer.log_frame(slam.tracker.current_frame, left)
                if T is not None:
                    visualizer.log_camera_pose(T)
                if i % 5 == 0:
                    visualizer.log_snapshot(slam.snapshot())

            if i % 20 == 0:
                position = "-" if T is None else np.array2string(T[:3, 3], precision=3)
                print(
                    f"{i:>6} {state.name:^16} {slam.tracker.num_inliers:>5} "
                    f"{slam.map.num_keyframes:>4} {slam.map.num_map_points:>6} "
                    f"{slam.loop_closer.num_loops:>3} | {slam.tracker.last_timing.total_ms:>6.1f} | {position}"
                )

    args.output.mkdir(parents=True, exist_ok=True)
    n_frames = slam.save_trajectory_tum(args.output / "trajectory_tum.txt")
    n_keyframes = slam.save_keyframe_trajectory_tum(args.output / "keyframes_tum.txt")
    slam.save_trajectory_kitti(args.output / "trajectory_kitti.txt")
    if args.save_map is not None:
        slam.save_map(args.save_map)

    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(f"  Tracked frames: {n_frames}")
    print(f"  Lost frames:    {lost_frames}")
    print(f"  Keyframes:      {n_keyframes}")
    print(f"  Map points:     {slam.map.num_map_points}")
    print(f"  Loops closed:   {slam.loop_closer.num_loops}")
    print(f"  Trajectories written to {args.output}")


if __name__ == "__main__":
    main()
