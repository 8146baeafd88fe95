"""FAST corners, octree keypoint distribution and ORB descriptor matching."""

__version__ = "0.1.0"

__all__ = [
    "fusion",
    "imaging",
    "keyframe_matcher",
    "keypoint",
    "matcher",
    "matching",
    "octree",
]