"""Loop closing: detects loops over incoming keyframes and propagates corrections."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

import numpy as np

from .loop_detection import LoopDetector

_log = logging.getLogger(__name__)

# Pause between iterations of the worker loop.
_IDLE_SECONDS = 0.005

# Signature of the loop correction step:
# (loop closing instance, current keyframe, accepted candidates) -> True when
# the loop was closed. It stands for the similarity computation, fusion and
# pose-graph optimisation that follow a detection.
LoopCorrector = Callable[["LoopClosing", Any, list], bool]


def propagate_global_correction(world_map: Any, loop_keyframe_id: int) -> None:
    """Apply a global bundle adjustment result to the whole map.

    Keyframes optimised by the adjustment carry ``ba_global_for_kf`` equal to
    ``loop_keyframe_id`` and their optimised pose in ``tcw_gba``. The
    correction is passed down the spanning tree from the map's origin
    keyframes to keyframes added meanwhile, then every map point is moved:
    optimised points take ``pos_gba``, the others follow the correction of
    their reference keyframe.
    """
    with world_map.map_update_lock:
        pending = deque(world_map.keyframe_origins)
        while pending:
            keyframe = pending.popleft()
            if keyframe.tcw_gba is None:
                raise ValueError(f"keyframe {keyframe.id} has no optimised pose")
            twc = keyframe.pose_inverse()
            for child in sorted(keyframe.children(), key=lambda kf: kf.id):
                if child.ba_global_for_kf != loop_keyframe_id:
                    child_to_parent = child.pose() @ twc
                    child.tcw_gba = child_to_parent @ keyframe.tcw_gba
                    child.ba_global_for_kf = loop_keyframe_id
                pending.append(child)
            keyframe.tcw_bef_gba = keyframe.pose()
            keyframe.set_pose(keyframe.tcw_gba)

        for point in world_map.all_map_points():
            if point.is_bad():
                continue
            if point.ba_global_for_kf == loop_keyframe_id:
                point.set_world_pos(point.pos_gba)
                continue
            reference = point.reference_keyframe()
            if reference is None or reference.ba_global_for_kf != loop_keyframe_id:
                continue
            before = np.asarray(reference.tcw_bef_gba, dtype=np.float64)
            camera_point = before[:3, :3] @ point.world_pos() + before[:3, 3]
            twc = reference.pose_inverse()
            point.set_world_pos(twc[:3, :3] @ camera_point + twc[:3, 3])

        world_map.inform_new_big_change()


class LoopClosing:
    """Worker that looks for loops among the keyframes local mapping hands over.

    ``run`` is meant to be the body of its own thread. The correction of a
    detected loop is delegated to ``corrector``; without one, detected loops
    are only reported and their keyframes released.
    """

    def __init__(
        self,
        world_map: Any,
        keyframe_db: Any,
        vocabulary: Any,
        fix_scale: bool,
        corrector: LoopCorrector | None = None,
    ) -> None:
        self.world_map = world_map
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.fix_scale = bool(fix_scale)
        self._corrector = corrector
        self.detector = LoopDetector(keyframe_db, vocabulary, consistency_threshold=3)
        self._tracker: Any = None
        self._local_mapper: Any = None

        self._queue: deque[Any] = deque()
        self._queue_lock = threading.Lock()
        self.current_keyframe: Any = None
        self.enough_consistent_candidates: list[Any] = []

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

    def set_tracker(self, tracker: Any) -> None:
        self._tracker = tracker

    def set_local_mapper(self, local_mapper: Any) -> None:
        self._local_mapper = local_mapper

    @property
    def local_mapper(self) -> Any:
        return self._local_mapper

    @property
    def last_loop_keyframe_id(self) -> int:
        return self.detector.last_loop_keyframe_id

    def run(self) -> None:
        """Check queued keyframes for loops until a finish is requested."""
        self._finished = False
        while True:
            if self.check_new_keyframes() and self.detect_loop():
                self._handle_loop()
            self.reset_if_requested()
            if self.check_finish():
                break
            time.sleep(_IDLE_SECONDS)
        self.set_finish()

    def _handle_loop(self) -> None:
        current = self.current_keyframe
        candidates = list(self.enough_consistent_candidates)
        closed = False
        if self._corrector is not None:
            closed = bool(self._corrector(self, current, candidates))
        if closed:
            _log.info("Loop detected!")
            self.detector.last_loop_keyframe_id = current.id
        else:
            for candidate in candidates:
                candidate.set_erase()
            current.set_erase()

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        """Queue a keyframe; the first keyframe of the map is never queued."""
        with self._queue_lock:
            if keyframe.id != 0:
                self._queue.append(keyframe)

    def check_new_keyframes(self) -> bool:
        with self._queue_lock:
            return bool(self._queue)

    def detect_loop(self) -> bool:
        """Take the oldest queued keyframe and look for consistent loop candidates.

        The accepted candidates are kept in ``enough_consistent_candidates``.
        """
        with self._queue_lock:
            if not self._queue:
                raise LookupError("no keyframe is waiting for loop detection")
            keyframe = self._queue.popleft()
        self.current_keyframe = keyframe
        self.enough_consistent_candidates = self.detector.detect(keyframe)
        return bool(self.enough_consistent_candidates)

    # Reset

    def request_reset(self) -> None:
        """Ask the running loop to reset and wait until it has done so."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_IDLE_SECONDS)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._queue_lock:
                    self._queue.clear()
                self.detector.reset()
                self._reset_requested = False

    # Finish

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished