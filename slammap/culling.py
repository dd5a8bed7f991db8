"""Map-maintenance rules: epipolar geometry between keyframes and culling tests."""

from __future__ import annotations

from typing import Any, Iterable

import numpy as np

# Found/visible ratio under which a recent point is discarded.
_MIN_FOUND_RATIO = 0.25
# Observations needed by other keyframes for a point to count as redundant.
_REDUNDANT_OBSERVATIONS = 3
# Share of redundant points that makes a keyframe redundant.
_REDUNDANT_RATIO = 0.9


def skew_symmetric_matrix(v: Any) -> np.ndarray:
    """The matrix [v]x such that [v]x @ w equals the cross product v x w."""
    x, y, z = np.asarray(v, dtype=np.float64).reshape(3)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def compute_f12(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix with x1^T F12 x2 = 0 for pixels x1, x2 of one point."""
    r1w = keyframe1.rotation()
    t1w = keyframe1.translation()
    r2w = keyframe2.rotation()
    t2w = keyframe2.translation()

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w
    return (
        np.linalg.inv(keyframe1.K.T)
        @ skew_symmetric_matrix(t12)
        @ r12
        @ np.linalg.inv(keyframe2.K)
    )


def cull_recent_map_points(
    points: Iterable[Any], current_keyframe_id: int, monocular: bool
) -> list[Any]:
    """Check recently created points and return those still under probation.

    Points found too rarely, or observed too little two keyframes after their
    creation, are flagged bad. Points three keyframes old leave probation.
    """
    min_observations = 2 if monocular else 3
    kept = []
    for point in points:
        if point.is_bad():
            continue
        age = current_keyframe_id - point.first_keyframe_id
        if point.found_ratio() < _MIN_FOUND_RATIO:
            point.set_bad_flag()
        elif age >= 2 and point.n_observations() <= min_observations:
            point.set_bad_flag()
        elif age >= 3:
            continue
        else:
            kept.append(point)
    return kept


def is_redundant_keyframe(keyframe: Any, monocular: bool) -> bool:
    """True when over 90% of the keyframe's points are seen by three other
    keyframes at the same or a finer scale. Only close points count in stereo;
    the first keyframe is never redundant."""
    if keyframe.id == 0:
        return False

    n_points = 0
    n_redundant = 0
    for index, point in enumerate(keyframe.map_point_matches()):
        if point is None or point.is_bad():
            continue
        if not monocular:
            depth = keyframe.depth[index]
            if depth > keyframe.th_depth or depth < 0:
                continue
        n_points += 1
        if point.n_observations() <= _REDUNDANT_OBSERVATIONS:
            continue
        level = keyframe.keys_un[index].octave
        seen_elsewhere = sum(
            1
            for other, other_index in point.observations().items()
            if other is not keyframe and other.keys_un[other_index].octave <= level + 1
        )
        if seen_elsewhere >= _REDUNDANT_OBSERVATIONS:
            n_redundant += 1

    return n_redundant > _REDUNDANT_RATIO * n_points


def cull_keyframes(keyframes: Iterable[Any], monocular: bool) -> list[Any]:
    """Flag redundant keyframes as bad and return the ones flagged."""
    culled = []
    for keyframe in keyframes:
        if is_redundant_keyframe(keyframe, monocular):
            keyframe.set_bad_flag()
            culled.append(keyframe)
    return culled