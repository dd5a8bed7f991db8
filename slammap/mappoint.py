"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary (ORB) descriptors given as bytes."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors must have the same length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


class MapPoint:
    """A landmark with its observations, descriptor and viewing statistics.

    Built either from a reference keyframe, or from a frame and the index of
    the keypoint in it (points created by tracking, not yet in a keyframe).
    """

    global_lock = threading.Lock()
    _ids = itertools.count()

    def __init__(
        self,
        position: Any,
        world_map: Any,
        reference_keyframe: Any = None,
        *,
        frame: Any = None,
        frame_index: int | None = None,
    ) -> None:
        if (reference_keyframe is None) == (frame is None):
            raise ValueError("give either a reference keyframe or a frame")
        self._lock = threading.RLock()
        self._map = world_map
        self._world_pos = np.array(position, dtype=np.float64).reshape(3)
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._descriptor: np.ndarray | None = None

        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

        if reference_keyframe is not None:
            self.first_keyframe_id = reference_keyframe.id
            self.first_frame = reference_keyframe.frame_id
            self._reference_keyframe = reference_keyframe
            self._normal = np.zeros(3)
            self._min_distance = 0.0
            self._max_distance = 0.0
        else:
            if frame_index is None:
                raise ValueError("a frame needs the index of its keypoint")
            self.first_keyframe_id = -1
            self.first_frame = frame.id
            self._reference_keyframe = None
            center = np.asarray(frame.camera_center(), dtype=np.float64).reshape(3)
            offset = self._world_pos - center
            dist = float(np.linalg.norm(offset))
            self._normal = offset / dist
            level = frame.keys_un[frame_index].octave
            self._max_distance = dist * frame.scale_factors[level]
            self._min_distance = (
                self._max_distance / frame.scale_factors[frame.n_scale_levels - 1]
            )
            self._descriptor = np.array(frame.descriptors[frame_index], dtype=np.uint8)

        with world_map.point_creation_lock:
            self.id = next(MapPoint._ids)

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def set_world_pos(self, position: Any) -> None:
        with MapPoint.global_lock, self._lock:
            self._world_pos = np.array(position, dtype=np.float64).reshape(3)

    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    def reference_keyframe(self) -> Any:
        with self._lock:
            return self._reference_keyframe

    def add_observation(self, keyframe: Any, index: int) -> None:
        """Record that ``keyframe`` sees this point at keypoint ``index``."""
        with self._lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._n_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Forget an observation; a point left with two or fewer goes bad."""
        bad = False
        with self._lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._n_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._lock:
            return dict(self._observations)

    def n_observations(self) -> int:
        with self._lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad, detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            observations = self._observations
            self._observations = {}
        for keyframe, index in observations.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replaced(self) -> MapPoint | None:
        with self._lock:
            return self._replaced

    def replace(self, other: MapPoint) -> None:
        """Merge this point into ``other`` and retire it."""
        if other.id == self.id:
            return
        with self._lock:
            observations = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = other

        for keyframe, index in observations.items():
            if not other.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, other)
                other.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)

        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        if not observations:
            return

        descriptors = [
            np.asarray(keyframe.descriptors[index], dtype=np.uint8)
            for keyframe, index in observations.items()
            if not keyframe.is_bad()
        ]
        if not descriptors:
            return

        n = len(descriptors)
        distances = np.zeros((n, n), dtype=np.int64)
        for i, j in itertools.combinations(range(n), 2):
            distances[i, j] = distances[j, i] = descriptor_distance(
                descriptors[i], descriptors[j]
            )

        median_position = int(0.5 * (n - 1))
        medians = [sorted(row)[median_position] for row in distances]
        best = min(range(n), key=lambda i: medians[i])

        with self._lock:
            self._descriptor = descriptors[best].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_keyframe(self, keyframe: Any) -> int:
        """Index of the keypoint in ``keyframe`` seeing this point, or -1."""
        with self._lock:
            return self._observations.get(keyframe, -1)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._lock:
            return keyframe in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            reference = self._reference_keyframe
            position = self._world_pos.copy()
        if not observations:
            return

        normal = np.zeros(3)
        for keyframe in observations:
            center = np.asarray(keyframe.camera_center(), dtype=np.float64).reshape(3)
            direction = position - center
            normal += direction / np.linalg.norm(direction)

        ref_center = np.asarray(reference.camera_center(), dtype=np.float64).reshape(3)
        dist = float(np.linalg.norm(position - ref_center))
        level = reference.keys_un[observations.get(reference, 0)].octave
        scale = reference.scale_factors[level]
        last_scale = reference.scale_factors[reference.n_scale_levels - 1]

        with self._lock:
            self._max_distance = dist * scale
            self._min_distance = self._max_distance / last_scale
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point should appear at ``current_dist``."""
        with self._lock:
            ratio = self._max_distance / current_dist
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        return max(0, min(scale, frame.n_scale_levels - 1))