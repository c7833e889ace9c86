"""Shared map: keyframes, map points, covisibility graph and spanning tree."""

from .covisibility import CovisibilityGraph
from .keyframe import KeyFrame
from .map import Map, MapSnapshot
from .map_point import MapPoint

__all__ = [
    "CovisibilityGraph",
    "KeyFrame",
    "Map",
    "MapPoint",
    "MapSnapshot",
]
