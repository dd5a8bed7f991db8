# slammap

The map side of a feature-based visual SLAM system, written in Python with NumPy.

This package holds the data structures and bookkeeping behind a SLAM map:

- the keyframes and landmarks;
- the covisibility graph and spanning tree;
- a bag-of-words keyframe index;
- culling rules;
- the local-mapping and loop-closing workers;
- the geometry a viewer would draw.

## Modules

- **`slammap.worldmap.Map`**: the thread-safe set of keyframes and map points.
  - It also holds the reference map points and the highest keyframe id added.
  - It counts big changes (`inform_new_big_change`, `last_big_change_index`).
  - It keeps the `keyframe_origins` list and two locks, `map_update_lock` and
    `point_creation_lock`.
  - `clear()` empties the map but keeps the big-change counter.

- **`slammap.mappoint`**: landmarks.
  - `descriptor_distance(a, b)` returns the Hamming distance between two binary
    descriptors. It raises `ValueError` if their lengths differ.
  - A `MapPoint` is built from a reference keyframe, or from a frame together
    with `frame_index`.
  - It tracks its observations and a count of them; a stereo observation counts
    twice. It also keeps found/visible statistics and the "bad" flag.
  - `replace(other)` merges the point into `other`.
  - `compute_distinctive_descriptors()` picks the observed descriptor with the
    least median distance to the others.
  - `update_normal_and_depth()` recomputes the mean viewing direction and the
    scale-invariance distances.
  - `predict_scale(current_dist, frame)` predicts the pyramid level at a given
    distance.
  - Removing an observation that leaves two or fewer observations marks the
    point bad.

- **`slammap.keyframe`**: `KeyPoint`, a frozen dataclass, and `KeyFrame`.
  - A keyframe holds a pose (`set_pose`, `pose`, `pose_inverse`,
    `camera_center`, `stereo_center`, `rotation`, `translation`) and its map
    point matches.
  - The covisibility graph is built from shared map points. A link needs 15
    shared points, or else the strongest single link is kept
    (`update_connections`).
  - It keeps a spanning tree (`parent`, `children`, `change_parent`) and loop
    edges.
  - `set_bad_flag()` removes the keyframe and reassigns its children to new
    parents. It is deferred while the keyframe is pinned (`set_not_erase`).
  - Geometry: `features_in_area` looks features up in a 64×48 grid.
    `unproject_stereo` back-projects a keypoint using its depth, and
    `compute_scene_median_depth` gives the median depth of the matched points.

- **`slammap.keyframe_database.KeyFrameDatabase`**: an inverted index from
  visual words to keyframes.
  - `detect_loop_candidates(keyframe, min_score)` and
    `detect_relocalization_candidates(frame)` filter keyframes by shared words.
    They then accumulate scores over covisible neighbours.
  - The vocabulary object must support `len()` and `score(bow_a, bow_b)`.
  - Keyframes and frames carry their bag-of-words vector as a `bow_vec` dict.

- **`slammap.culling`**:
  - `skew_symmetric_matrix` and `compute_f12`, the fundamental matrix between
    two keyframes.
  - `cull_recent_map_points`, which discards recently created points that are
    poorly tracked.
  - `is_redundant_keyframe` and `cull_keyframes`. A keyframe is redundant when
    more than 90% of its points are seen by three other keyframes at the same
    or a finer scale.

- **`slammap.local_mapping.LocalMapping`**: a worker whose `run()` is meant to
  be a thread body.
  - It takes queued keyframes (`insert_keyframe`, `process_new_keyframe`) and
    binds their points.
  - It culls recent points and redundant keyframes, and hands keyframes to a
    loop closer.
  - It supports stop/release, reset and finish handshakes.
  - Local bundle adjustment is an optional `optimizer` callable. It receives the
    current keyframe, the worker and the map, and should watch `abort_ba`.

- **`slammap.loop_detection`**: `ConsistentGroup` and `LoopDetector`.
  - The detector queries the database with the lowest similarity to any
    covisible keyframe.
  - It accepts a candidate only once its covisibility group has been consistent
    over three consecutive keyframes.
  - It waits 10 keyframes after the last loop before searching again.

- **`slammap.loop_closing`**: `LoopClosing` and `propagate_global_correction`.
  - `LoopClosing` is a worker whose `run()` queues keyframes and detects loops.
    The keyframe with id 0 is never queued.
  - It passes detected loops to an optional `corrector` callable.
  - `propagate_global_correction(world_map, loop_keyframe_id)` applies a global
    optimisation result down the spanning tree and then to every map point.

- **`slammap.map_drawer`**: `camera_frustum_lines(size)` and `MapDrawer`.
  - `MapDrawer` returns display geometry as NumPy arrays: point layers, keyframe
    frustums, graph edges, the current camera's frustum, and the column-major
    camera-to-world matrix.
  - It takes its sizes from a settings mapping with `Viewer.*` keys.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
import numpy as np
from slammap.worldmap import Map
from slammap.keyframe import KeyFrame, KeyPoint
from slammap.mappoint import MapPoint
from slammap.map_drawer import camera_frustum_lines

world = Map()
kf = KeyFrame(
    [KeyPoint(100, 120), KeyPoint(300, 200)],
    fx=500, fy=500, cx=320, cy=240,
    bounds=(0, 640, 0, 480),
    world_map=world,
    depth=[2.0, -1.0],
)
world.add_keyframe(kf)

print(kf.features_in_area(100, 120, 5))  # [0]
print(kf.unproject_stereo(0))            # [-0.88 -0.48  2.  ]
print(kf.unproject_stereo(1))            # None (no depth)

point = MapPoint(kf.unproject_stereo(0), world, reference_keyframe=kf)
point.add_observation(kf, 0)
kf.add_map_point(point, 0)
world.add_map_point(point)
print(world.map_points_in_map(), point.n_observations())  # 1 1

print(camera_frustum_lines(0.1).shape)  # (8, 2, 3)
```

Poses are 4×4 NumPy arrays of `float64` that map world coordinates into the
camera frame (`Tcw`). Positions and normals are 3-vectors.

## What this package does not do

- It has no tracking and no feature extraction or image handling.
- It has no bag-of-words vocabulary. You supply one, and keyframes must already
  carry their `bow_vec`.
- `LocalMapping` culls data and binds points, but it does not triangulate new
  map points and does not fuse duplicates with neighbouring keyframes.
- Bundle adjustment is not included.
- Loop closing stops at detection. Similarity estimation, loop fusion and
  pose-graph optimisation are left to the `corrector` you pass in.
  `propagate_global_correction` only applies optimisation results that have
  already been computed.
- There is no viewer, window or renderer. `MapDrawer` only produces geometry.
- There is no command-line program and no persistent storage.