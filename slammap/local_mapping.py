"""Local mapping: takes new keyframes from tracking and maintains the local map."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

from .culling import cull_keyframes, cull_recent_map_points

_log = logging.getLogger(__name__)

# Pause between loop iterations, leaving tracking time to insert keyframes.
_IDLE_SECONDS = 0.003

# Signature of the optional local bundle adjustment step:
# (current keyframe, local mapping instance, map) -> None. It should stop early
# once ``local_mapping.abort_ba`` turns true.
LocalOptimizer = Callable[[Any, "LocalMapping", Any], None]


class LocalMapping:
    """Worker that inserts keyframes into the map and culls redundant data.

    ``run`` is meant to be the body of its own thread. Tracking hands keyframes
    over with ``insert_keyframe``; loop closing pauses the worker with
    ``request_stop`` and resumes it with ``release``.
    """

    def __init__(
        self,
        world_map: Any,
        monocular: bool,
        optimizer: LocalOptimizer | None = None,
    ) -> None:
        self._map = world_map
        self._monocular = bool(monocular)
        self._optimizer = optimizer
        self._loop_closer: Any = None
        self._tracker: Any = None

        self._new_keyframes: deque[Any] = deque()
        self._new_keyframes_lock = threading.Lock()
        self._recent_points: list[Any] = []
        self.current_keyframe: Any = None

        # Read by the optimizer to abandon a local bundle adjustment.
        self.abort_ba = False

        self._reset_lock = threading.Lock()
        self._reset_requested = False

        self._finish_lock = threading.Lock()
        self._finish_requested = False
        self._finished = True

        self._stop_lock = threading.Lock()
        self._stopped = False
        self._stop_requested = False
        # Tracking sets this while it inserts a keyframe; no stop meanwhile.
        self._not_stop = False

        self._accept_lock = threading.Lock()
        self._accept_keyframes = True

    def set_loop_closer(self, loop_closer: Any) -> None:
        self._loop_closer = loop_closer

    def set_tracker(self, tracker: Any) -> None:
        self._tracker = tracker

    # Main loop

    def run(self) -> None:
        """Process queued keyframes until a finish is requested."""
        self._finished = False
        while True:
            # Tracking sees that local mapping is busy.
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                self.process_new_keyframe()
                self.map_point_culling()
                self.abort_ba = False

                if not self.check_new_keyframes() and not self.stop_requested():
                    if self._optimizer is not None and self._map.keyframes_in_map() > 2:
                        self._optimizer(self.current_keyframe, self, self._map)
                    self.keyframe_culling()

                if self._loop_closer is not None:
                    self._loop_closer.insert_keyframe(self.current_keyframe)
            elif self.stop():
                # Safe place to pause.
                while self.is_stopped() and not self.check_finish():
                    time.sleep(_IDLE_SECONDS)
                if self.check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self.check_finish():
                break
            time.sleep(_IDLE_SECONDS)

        self.set_finish()

    # Keyframe queue

    def insert_keyframe(self, keyframe: Any) -> None:
        with self._new_keyframes_lock:
            self._new_keyframes.append(keyframe)
            self.abort_ba = True

    def keyframes_in_queue(self) -> int:
        with self._new_keyframes_lock:
            return len(self._new_keyframes)

    def check_new_keyframes(self) -> bool:
        with self._new_keyframes_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> Any:
        """Take the oldest queued keyframe, bind its points and add it to the map.

        The keyframe is expected to carry its bag-of-words vectors already.
        Returns the keyframe processed.
        """
        with self._new_keyframes_lock:
            if not self._new_keyframes:
                raise LookupError("no keyframe is waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self.current_keyframe = keyframe

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad():
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking get here.
                self._recent_points.append(point)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)
        return keyframe

    # Culling

    def _require_current(self) -> Any:
        if self.current_keyframe is None:
            raise RuntimeError("no keyframe has been processed yet")
        return self.current_keyframe

    def map_point_culling(self) -> None:
        """Discard recently created points that are not tracked well enough."""
        current = self._require_current()
        self._recent_points = cull_recent_map_points(
            self._recent_points, current.id, self._monocular
        )

    def keyframe_culling(self) -> list[Any]:
        """Flag redundant keyframes among the current one's covisibles; return them."""
        current = self._require_current()
        return cull_keyframes(current.vector_covisible_keyframes(), self._monocular)

    # Stop and release

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
        with self._new_keyframes_lock:
            self.abort_ba = True

    def stop(self) -> bool:
        """Enter the stopped state if a stop is requested and not forbidden."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                _log.info("Local Mapping STOP")
                return True
            return False

    def release(self) -> None:
        """Resume after a stop, dropping keyframes queued meanwhile."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_keyframes_lock:
                self._new_keyframes.clear()
        _log.info("Local Mapping RELEASE")

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails once already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self.abort_ba = True

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
                with self._new_keyframes_lock:
                    self._new_keyframes.clear()
                self._recent_points = []
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
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished