"""Map points and lines, ORB feature extraction, two-view triangulation and local mapping for visual SLAM."""

__version__ = "0.1.0"