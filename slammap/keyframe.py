"""Keyframes: selected frames that anchor the map and the covisibility graph."""

from __future__ import annotations

import itertools
import math
import threading
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

import numpy as np

GRID_COLS = 64
GRID_ROWS = 48
# Minimum number of shared points for a covisibility edge.
_CONNECTION_THRESHOLD = 15
_DESCRIPTOR_BYTES = 32


@dataclass(frozen=True)
class KeyPoint:
    """An image feature: position, pyramid level and detector attributes."""

    x: float
    y: float
    octave: int = 0
    size: float = 31.0
    angle: float = -1.0
    response: float = 0.0


class KeyFrame:
    """A keyframe with its pose, features, map point matches and graph links."""

    _ids = itertools.count()

    def __init__(
        self,
        keys: Iterable[KeyPoint],
        *,
        fx: float,
        fy: float,
        cx: float,
        cy: float,
        bounds: tuple[float, float, float, float],
        world_map: Any,
        pose: Any = None,
        keys_un: Iterable[KeyPoint] | None = None,
        u_right: Sequence[float] | None = None,
        depth: Sequence[float] | None = None,
        descriptors: Any = None,
        bf: float = 0.0,
        th_depth: float = 0.0,
        scale_factor: float = 1.2,
        n_scale_levels: int = 8,
        frame_id: int = 0,
        timestamp: float = 0.0,
        keyframe_db: Any = None,
        vocabulary: Any = None,
        bow_vec: dict[int, float] | None = None,
        feat_vec: dict[int, list[int]] | None = None,
        map_points: Sequence[Any] | None = None,
        keyframe_id: int | None = None,
    ) -> None:
        self.keys = list(keys)
        self.n = len(self.keys)
        self.keys_un = list(keys_un) if keys_un is not None else list(self.keys)
        self.u_right = [float(v) for v in u_right] if u_right is not None else [-1.0] * self.n
        self.depth = [float(v) for v in depth] if depth is not None else [-1.0] * self.n
        if descriptors is None:
            self.descriptors = np.zeros((self.n, _DESCRIPTOR_BYTES), dtype=np.uint8)
        else:
            self.descriptors = np.array(descriptors, dtype=np.uint8)
        matches = list(map_points) if map_points is not None else [None] * self.n
        for name, size in (
            ("keys_un", len(self.keys_un)),
            ("u_right", len(self.u_right)),
            ("depth", len(self.depth)),
            ("descriptors", len(self.descriptors)),
            ("map_points", len(matches)),
        ):
            if size != self.n:
                raise ValueError(f"{name} has {size} entries, expected {self.n}")

        min_x, max_x, min_y, max_y = (float(v) for v in bounds)
        if max_x <= min_x or max_y <= min_y:
            raise ValueError("image bounds are empty")
        self.min_x, self.max_x, self.min_y, self.max_y = min_x, max_x, min_y, max_y
        self.grid_cols = GRID_COLS
        self.grid_rows = GRID_ROWS
        self.grid_element_width_inv = GRID_COLS / (max_x - min_x)
        self.grid_element_height_inv = GRID_ROWS / (max_y - min_y)

        self.fx, self.fy, self.cx, self.cy = float(fx), float(fy), float(cx), float(cy)
        self.invfx = 1.0 / self.fx
        self.invfy = 1.0 / self.fy
        self.K = np.array(
            [[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]]
        )
        self.bf = float(bf)
        self.b = self.bf / self.fx
        self.th_depth = float(th_depth)
        self._half_baseline = self.b / 2

        self.n_scale_levels = int(n_scale_levels)
        self.scale_factor = float(scale_factor)
        self.log_scale_factor = math.log(self.scale_factor)
        self.scale_factors = [self.scale_factor**i for i in range(self.n_scale_levels)]
        self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s for s in self.level_sigma2]

        self.frame_id = frame_id
        self.timestamp = timestamp
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.bow_vec: dict[int, float] = dict(bow_vec or {})
        self.feat_vec: dict[int, list[int]] = dict(feat_vec or {})
        self._map = world_map

        # Bookkeeping shared with tracking, local mapping and loop closing.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self._pose_lock = threading.RLock()
        self._connections_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._map_points = matches
        self._connections: dict[KeyFrame, int] = {}
        self._ordered: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: dict[KeyFrame, None] = {}
        self._loop_edges: dict[KeyFrame, None] = {}
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._grid: list[list[list[int]]] = [
            [[] for _ in range(GRID_ROWS)] for _ in range(GRID_COLS)
        ]
        for index, kp in enumerate(self.keys_un):
            col = math.floor((kp.x - min_x) * self.grid_element_width_inv)
            row = math.floor((kp.y - min_y) * self.grid_element_height_inv)
            if 0 <= col < GRID_COLS and 0 <= row < GRID_ROWS:
                self._grid[col][row].append(index)

        self.id = next(KeyFrame._ids) if keyframe_id is None else int(keyframe_id)
        self.set_pose(np.eye(4) if pose is None else pose)

    # Pose

    def set_pose(self, tcw: Any) -> None:
        """Set the world-to-camera transform and derive its inverse and centres."""
        tcw = np.array(tcw, dtype=np.float64).reshape(4, 4)
        rwc = tcw[:3, :3].T
        ow = -rwc @ tcw[:3, 3]
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = ow
        cw = twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0])
        with self._pose_lock:
            self._tcw = tcw
            self._twc = twc
            self._ow = ow
            self._cw = cw[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the midpoint of the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, keyframe: KeyFrame, weight: int) -> None:
        with self._connections_lock:
            if self._connections.get(keyframe) == weight:
                return
            self._connections[keyframe] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Re-sort the connected keyframes by decreasing weight."""
        with self._connections_lock:
            pairs = sorted(
                self._connections.items(),
                key=lambda item: (item[1], item[0].id),
                reverse=True,
            )
            self._ordered = [kf for kf, _ in pairs]
            self._ordered_weights = [w for _, w in pairs]

    def connected_keyframes(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._connections)

    def vector_covisible_keyframes(self) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered)

    def best_covisibility_keyframes(self, n: int) -> list[KeyFrame]:
        with self._connections_lock:
            return list(self._ordered[: max(n, 0)])

    def covisibles_by_weight(self, weight: int) -> list[KeyFrame]:
        """Keyframes sharing at least ``weight`` points.

        As in the graph search this mirrors, nothing is returned when every
        connection reaches ``weight``.
        """
        with self._connections_lock:
            cut = next(
                (i for i, w in enumerate(self._ordered_weights) if w < weight), None
            )
            if cut is None:
                return []
            return list(self._ordered[:cut])

    def weight(self, keyframe: KeyFrame) -> int:
        with self._connections_lock:
            return self._connections.get(keyframe, 0)

    def erase_connection(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            if keyframe not in self._connections:
                return
            del self._connections[keyframe]
        self.update_best_covisibles()

    def update_connections(self) -> None:
        """Rebuild covisibility links from the keyframes that share map points."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for keyframe in point.observations():
                if keyframe.id == self.id:
                    continue
                counter[keyframe] = counter.get(keyframe, 0) + 1
        if not counter:
            return

        n_max = 0
        kf_max: KeyFrame | None = None
        pairs: list[tuple[int, KeyFrame]] = []
        for keyframe, count in counter.items():
            if count > n_max:
                n_max, kf_max = count, keyframe
            if count >= _CONNECTION_THRESHOLD:
                pairs.append((count, keyframe))
                keyframe.add_connection(self, count)
        if not pairs and kf_max is not None:
            pairs.append((n_max, kf_max))
            kf_max.add_connection(self, n_max)

        pairs.sort(key=lambda pair: (pair[0], pair[1].id), reverse=True)
        new_parent = None
        with self._connections_lock:
            self._connections = counter
            self._ordered = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]
            if self._first_connection and self.id != 0:
                self._parent = new_parent = self._ordered[0]
                self._first_connection = False
        if new_parent is not None:
            new_parent.add_child(self)

    # Spanning tree and loop edges

    def add_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children[keyframe] = None

    def erase_child(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._children.pop(keyframe, None)

    def change_parent(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._parent = keyframe
        keyframe.add_child(self)

    def children(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._children)

    def parent(self) -> KeyFrame | None:
        with self._connections_lock:
            return self._parent

    def has_child(self, keyframe: KeyFrame) -> bool:
        with self._connections_lock:
            return keyframe in self._children

    def add_loop_edge(self, keyframe: KeyFrame) -> None:
        with self._connections_lock:
            self._not_erase = True
            self._loop_edges[keyframe] = None

    def loop_edges(self) -> set[KeyFrame]:
        with self._connections_lock:
            return set(self._loop_edges)

    # Map point matches

    def add_map_point(self, point: Any, index: int) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def erase_map_point_match(self, match: Any) -> None:
        """Drop a match given either by keypoint index or by map point."""
        if isinstance(match, (int, np.integer)):
            with self._features_lock:
                self._map_points[int(match)] = None
            return
        index = match.index_in_keyframe(self)
        if index >= 0:
            with self._features_lock:
                self._map_points[index] = None

    def replace_map_point_match(self, index: int, point: Any) -> None:
        with self._features_lock:
            self._map_points[index] = point

    def map_points(self) -> set[Any]:
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Number of good matched points seen by at least ``min_obs`` observations."""
        with self._features_lock:
            points = list(self._map_points)
        good = (p for p in points if p is not None and not p.is_bad())
        if min_obs > 0:
            return sum(1 for p in good if p.n_observations() >= min_obs)
        return sum(1 for _ in good)

    def map_point_matches(self) -> list[Any]:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, index: int) -> Any:
        with self._features_lock:
            return self._map_points[index]

    # Erasure

    def set_not_erase(self) -> None:
        with self._connections_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again unless loop edges pin the keyframe."""
        with self._connections_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, its points, the map and the database."""
        with self._connections_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return
            connected = list(self._connections)

        for keyframe in connected:
            keyframe.erase_connection(self)
        with self._features_lock:
            points = list(self._map_points)
        for point in points:
            if point is not None:
                point.erase_observation(self)

        with self._connections_lock, self._features_lock:
            self._connections = {}
            self._ordered = []
            self._ordered_weights = []

            parent = self._parent
            candidates: dict[KeyFrame, None] = {} if parent is None else {parent: None}
            children = dict(self._children)
            # Give each child, one at a time, the candidate parent it shares most with.
            while children:
                best = -1
                best_child: KeyFrame | None = None
                best_parent: KeyFrame | None = None
                for child in children:
                    if child.is_bad():
                        continue
                    for linked in child.vector_covisible_keyframes():
                        for candidate in candidates:
                            if linked.id == candidate.id:
                                w = child.weight(linked)
                                if w > best:
                                    best, best_child, best_parent = w, child, linked
                if best_child is None or best_parent is None:
                    break
                best_child.change_parent(best_parent)
                candidates[best_child] = None
                del children[best_child]

            if parent is not None:
                for child in children:
                    child.change_parent(parent)
                parent.erase_child(self)
                with self._pose_lock:
                    self.tcp = self._tcw @ parent.pose_inverse()
            self._children = children
            self._bad = True

        self._map.erase_keyframe(self)
        if self.keyframe_db is not None:
            self.keyframe_db.erase(self)

    def is_bad(self) -> bool:
        with self._connections_lock:
            return self._bad

    # Geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of keypoints strictly within ``r`` of (x, y) on both axes."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(
            self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv)
        )
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(
            self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv)
        )
        if max_cell_y < 0:
            return []

        found = []
        for column in self._grid[min_cell_x : max_cell_x + 1]:
            for cell in column[min_cell_y : max_cell_y + 1]:
                for index in cell:
                    kp = self.keys_un[index]
                    if abs(kp.x - x) < r and abs(kp.y - y) < r:
                        found.append(index)
        return found

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> np.ndarray | None:
        """World position of keypoint ``i`` from its depth, or None without depth."""
        z = self.depth[i]
        if z <= 0:
            return None
        kp = self.keys[i]
        camera_point = np.array(
            [(kp.x - self.cx) * z * self.invfx, (kp.y - self.cy) * z * self.invfy, z]
        )
        with self._pose_lock:
            return self._twc[:3, :3] @ camera_point + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """Depth at position (n-1)//q of the sorted depths of matched points."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points)
            tcw = self._tcw.copy()
        row, zcw = tcw[2, :3], tcw[2, 3]
        depths = sorted(
            float(row @ p.world_pos() + zcw) for p in points if p is not None
        )
        if not depths:
            raise ValueError("keyframe has no matched map points")
        return depths[(len(depths) - 1) // q]