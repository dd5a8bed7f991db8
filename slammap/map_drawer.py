"""Geometry for drawing the map: points, keyframe frustums, graph edges, camera.

Nothing here talks to a graphics library. Each method returns plain arrays
that a viewer can hand to whatever renderer it uses.
"""

from __future__ import annotations

import threading
from typing import Any, Mapping

import numpy as np

# Height and depth of a drawn camera frustum, relative to its half width.
_FRUSTUM_HEIGHT_RATIO = 0.75
_FRUSTUM_DEPTH_RATIO = 0.6
# Minimum covisibility weight for an edge to be drawn.
_GRAPH_MIN_WEIGHT = 100

_SETTING_KEYS = {
    "keyframe_size": "Viewer.KeyFrameSize",
    "keyframe_line_width": "Viewer.KeyFrameLineWidth",
    "graph_line_width": "Viewer.GraphLineWidth",
    "point_size": "Viewer.PointSize",
    "camera_size": "Viewer.CameraSize",
    "camera_line_width": "Viewer.CameraLineWidth",
}


def camera_frustum_lines(size: float) -> np.ndarray:
    """The 8 segments of a camera frustum in camera coordinates, shape (8, 2, 3)."""
    w = float(size)
    h = w * _FRUSTUM_HEIGHT_RATIO
    z = w * _FRUSTUM_DEPTH_RATIO
    origin = (0.0, 0.0, 0.0)
    corners = {
        "tr": (w, h, z),
        "br": (w, -h, z),
        "bl": (-w, -h, z),
        "tl": (-w, h, z),
    }
    segments = [
        (origin, corners["tr"]),
        (origin, corners["br"]),
        (origin, corners["bl"]),
        (origin, corners["tl"]),
        (corners["tr"], corners["br"]),
        (corners["tl"], corners["bl"]),
        (corners["tl"], corners["tr"]),
        (corners["bl"], corners["br"]),
    ]
    return np.array(segments, dtype=np.float64)


def _to_world(segments: np.ndarray, twc: np.ndarray) -> np.ndarray:
    """Map camera-frame segments into the world with the camera-to-world transform."""
    return segments @ twc[:3, :3].T + twc[:3, 3]


def _positions(points: list[Any]) -> np.ndarray:
    return np.array([p.world_pos() for p in points], dtype=np.float64).reshape(-1, 3)


class MapDrawer:
    """Produces what a viewer draws for a map and the current camera.

    ``settings`` maps the viewer keys (``Viewer.KeyFrameSize``,
    ``Viewer.KeyFrameLineWidth``, ``Viewer.GraphLineWidth``,
    ``Viewer.PointSize``, ``Viewer.CameraSize``, ``Viewer.CameraLineWidth``)
    to numbers; a missing key reads as 0.
    """

    def __init__(self, world_map: Any, settings: Mapping[str, Any] | None = None) -> None:
        self.world_map = world_map
        settings = settings or {}
        self.keyframe_size = float(settings.get(_SETTING_KEYS["keyframe_size"], 0.0))
        self.keyframe_line_width = float(
            settings.get(_SETTING_KEYS["keyframe_line_width"], 0.0)
        )
        self.graph_line_width = float(settings.get(_SETTING_KEYS["graph_line_width"], 0.0))
        self.point_size = float(settings.get(_SETTING_KEYS["point_size"], 0.0))
        self.camera_size = float(settings.get(_SETTING_KEYS["camera_size"], 0.0))
        self.camera_line_width = float(
            settings.get(_SETTING_KEYS["camera_line_width"], 0.0)
        )
        self._camera_lock = threading.Lock()
        self._camera_pose: np.ndarray | None = None

    def map_point_layers(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of ordinary points and of reference points, each shape (n, 3).

        Bad points are left out, and reference points appear only in the
        second layer. Both layers are empty while the map has no points.
        """
        points = self.world_map.all_map_points()
        references = self.world_map.reference_map_points()
        if not points:
            empty = np.zeros((0, 3))
            return empty, empty.copy()
        reference_set = dict.fromkeys(references)
        ordinary = [p for p in points if not p.is_bad() and p not in reference_set]
        highlighted = [p for p in reference_set if not p.is_bad()]
        return _positions(ordinary), _positions(highlighted)

    def keyframe_frustums(self) -> list[np.ndarray]:
        """World-frame frustum segments, shape (8, 2, 3), for every keyframe."""
        template = camera_frustum_lines(self.keyframe_size)
        return [
            _to_world(template, kf.pose_inverse()) for kf in self.world_map.all_keyframes()
        ]

    def graph_edges(self) -> list[tuple[np.ndarray, np.ndarray]]:
        """Segments between camera centres for strong covisibility links,
        spanning-tree parents and loop edges, each link drawn once."""
        edges: list[tuple[np.ndarray, np.ndarray]] = []
        for kf in self.world_map.all_keyframes():
            center = kf.camera_center()
            for other in kf.covisibles_by_weight(_GRAPH_MIN_WEIGHT):
                if other.id < kf.id:
                    continue
                edges.append((center, other.camera_center()))
            parent = kf.parent()
            if parent is not None:
                edges.append((center, parent.camera_center()))
            for other in sorted(kf.loop_edges(), key=lambda k: k.id):
                if other.id < kf.id:
                    continue
                edges.append((center, other.camera_center()))
        return edges

    def current_camera_lines(self) -> np.ndarray:
        """World-frame frustum segments of the current camera, shape (8, 2, 3)."""
        twc = self.current_opengl_camera_matrix().reshape(4, 4, order="F")
        return _to_world(camera_frustum_lines(self.camera_size), twc)

    def set_current_camera_pose(self, tcw: Any) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=np.float64).reshape(4, 4)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """The camera-to-world transform as 16 values in column-major order.

        The identity is returned until a camera pose has been set.
        """
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).ravel(order="F")
        rwc = pose[:3, :3].T
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = -rwc @ pose[:3, 3]
        return twc.ravel(order="F")