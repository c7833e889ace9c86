"""Loop closure for Visual SLAM.

This module provides place recognition, geometric verification and loop
correction, to detect when the camera revisits a previously seen location
and correct accumulated drift.

Key components:
- VisualVocabulary: Bag of visual words for image similarity
- KeyFrameDatabase: Inverted index of keyframe BoW vectors
- GeometricVerifier: Sim3 / rigid RANSAC verification of candidates
- PoseGraph: Closed-form correction over the spanning tree
- GlobalBundleAdjustment: Background full-map optimization
- LoopCloser: Worker thread running the detection and correction pipeline
"""

from .geometric_verification import (
    Correspondences,
    GeometricVerifier,
    Sim3Solver,
    VerificationResult,
    umeyama_alignment,
)
from .global_ba import GlobalBAStats, GlobalBundleAdjustment
from .loop_closing import LoopCandidate, LoopCloser, LoopClosingResult
from .place_recognition import KeyFrameDatabase, QueryResult
from .pose_graph import CorrectionResult, PoseGraph
from .vocabulary import VisualVocabulary

__all__ = [
    # Vocabulary
    "VisualVocabulary",
    # Place Recognition
    "KeyFrameDatabase",
    "QueryResult",
    # Geometric Verification
    "GeometricVerifier",
    "VerificationResult",
    "Correspondences",
    "Sim3Solver",
    "umeyama_alignment",
    # Pose Graph
    "PoseGraph",
    "CorrectionResult",
    # Global BA
    "GlobalBundleAdjustment",
    "GlobalBAStats",
    # Loop Closer
    "LoopCloser",
    "LoopCandidate",
    "LoopClosingResult",
]
