"""Common utility functions."""

from .geo import bounding_box, calculate_distance

__all__ = [
    "bounding_box",
    "calculate_distance",
]
