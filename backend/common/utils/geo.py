"""
Geographic utility functions.

This module provides core geospatial calculations used throughout the application.
"""

import math
from math import radians, cos, sin, asin, sqrt
from typing import Sequence, Tuple

EARTH_RADIUS_METERS = 6371000


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using Haversine formula.
    
    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point
    
    Returns:
        Distance in meters
    """
    lat1, lon1, lat2, lon2 = map(radians, [float(lat1), float(lon1), float(lat2), float(lon2)])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = sin(dlat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(dlon / 2) ** 2
    c = 2 * asin(sqrt(a))
    return c * EARTH_RADIUS_METERS


def bounding_box(lat: float, lon: float, radius_meters: float) -> Tuple[float, float, float, float]:
    """
    Approximate lat/lon box around a circle, for pre-filtering before the haversine check.
    
    Returns:
        (min_lat, max_lat, min_lon, max_lon)
    """
    lat_offset = radius_meters / 111000.0
    # Avoid dividing by zero at the poles
    lon_scale = max(abs(math.cos(math.radians(lat))), 1e-6)
    lon_offset = radius_meters / (111000.0 * lon_scale)
    return lat - lat_offset, lat + lat_offset, lon - lon_offset, lon + lon_offset


def point_in_polygon(lat: float, lon: float, polygon: Sequence[Tuple[float, float]]) -> bool:
    """
    Ray casting test on a (lat, lon) polygon.

    Edges are treated as straight lines on the lat/lon grid, which is fine
    for city-sized zones. Points exactly on an edge may land on either side.
    """
    lat, lon = float(lat), float(lon)
    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        lat_i, lon_i = polygon[i]
        lat_j, lon_j = polygon[j]
        if (lon_i > lon) != (lon_j > lon):
            crossing = (lat_j - lat_i) * (lon - lon_i) / (lon_j - lon_i) + lat_i
            if lat < crossing:
                inside = not inside
        j = i
    return inside
