"""Frontend components for SLAM.

Only the self-contained building blocks are re-exported here:
- SE3 / Sim3: Rigid and similarity transformations
- PinholeCamera: Calibration, projection and triangulation
- FeatureDetector / ScalePyramid: ORB extraction and scale handling
- StereoMatcher: Left-right matching for stereo depth
- Frame / FrameBuilder: Per-image feature container

The map-aware pieces (matcher, initializer, keyframe policy, tracker) live
in their submodules, e.g. ``covislam.frontend.tracking``, since they depend
on ``covislam.map`` which itself builds on the modules above.
"""

from .pose import SE3, Sim3
from .camera import PinholeCamera, triangulate_points
from .feature_detector import FeatureDetector, Features, ScalePyramid
from .stereo_matcher import StereoMatcher
from .frame import Frame, FrameBuilder

__all__ = [
    # Pose
    "SE3",
    "Sim3",
    # Camera
    "PinholeCamera",
    "triangulate_points",
    # Features
    "FeatureDetector",
    "Features",
    "ScalePyramid",
    # Stereo Matching
    "StereoMatcher",
    # Frames
    "Frame",
    "FrameBuilder",
]
