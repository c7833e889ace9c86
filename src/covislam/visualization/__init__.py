"""Visualization module for covislam using Rerun."""

from .rerun_visualizer import RerunVisualizer

__all__ = ["RerunVisualizer"]
