"""Map, keyframe, map point, keyframe database and loop-detection structures for visual SLAM."""

__version__ = "0.1.0"