"""Shaded-relief tile pyramids from airborne LiDAR point clouds."""

__version__ = "0.3.0"
