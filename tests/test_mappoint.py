from types import SimpleNamespace

import numpy as np
import pytest

from slammap.mappoint import MapPoint, descriptor_distance
from slammap.worldmap import Map


class FakeKeyFrame:
    def __init__(self, kf_id, n=4, center=(0.0, 0.0, 0.0), stereo=False, descriptors=None):
        self.id = kf_id
        self.frame_id = kf_id * 10
        self.u_right = [5.0 if stereo else -1.0] * n
        self.keys_un = [SimpleNamespace(octave=0) for _ in range(n)]
        self.scale_factors = [1.0, 1.2, 1.44]
        self.n_scale_levels = 3
        self.log_scale_factor = float(np.log(1.2))
        self.descriptors = (
            descriptors if descriptors is not None else np.zeros((n, 32), dtype=np.uint8)
        )
        self._center = np.array(center, dtype=float)
        self.matches = {}
        self.bad = False

    def camera_center(self):
        return self._center.copy()

    def is_bad(self):
        return self.bad

    def erase_map_point_match(self, index):
        self.matches[index] = None

    def replace_map_point_match(self, index, point):
        self.matches[index] = point


def make_point(world=None, ref=None, pos=(0.0, 0.0, 1.0)):
    world = world or Map()
    ref = ref or FakeKeyFrame(1)
    point = MapPoint(pos, world, ref)
    world.add_map_point(point)
    return point, world, ref


def test_descriptor_distance_identity_and_complement():
    a = np.arange(32, dtype=np.uint8)
    assert descriptor_distance(a, a) == 0
    assert descriptor_distance(a, np.bitwise_not(a)) == 8 * a.size


def test_descriptor_distance_symmetric_and_length_checked():
    a = np.full(32, 0x0F, dtype=np.uint8)
    b = np.full(32, 0x01, dtype=np.uint8)
    assert descriptor_distance(a, b) == descriptor_distance(b, a)
    with pytest.raises(ValueError):
        descriptor_distance(a, b[:16])


def test_constructor_needs_exactly_one_source():
    with pytest.raises(ValueError):
        MapPoint((0, 0, 1), Map())


def test_ids_increase_and_first_ids_come_from_reference():
    ref = FakeKeyFrame(7)
    p1, world, _ = make_point(ref=ref)
    p2 = MapPoint((1, 1, 1), world, ref)
    assert p2.id > p1.id
    assert p1.first_keyframe_id == 7
    assert p1.first_frame == ref.frame_id
    assert p1.reference_keyframe() is ref


def test_world_pos_round_trip_and_copy():
    point, _, _ = make_point()
    point.set_world_pos([1.0, 2.0, 3.0])
    pos = point.world_pos()
    np.testing.assert_allclose(pos, [1.0, 2.0, 3.0])
    pos[0] = 99
    np.testing.assert_allclose(point.world_pos(), [1.0, 2.0, 3.0])


def test_observation_counts_mono_and_stereo():
    point, _, _ = make_point()
    mono = FakeKeyFrame(2)
    stereo = FakeKeyFrame(3, stereo=True)
    point.add_observation(mono, 1)
    point.add_observation(mono, 2)
    point.add_observation(stereo, 0)
    assert point.n_observations() == 3
    assert point.index_in_keyframe(mono) == 1
    assert point.index_in_keyframe(FakeKeyFrame(9)) == -1
    assert point.is_in_keyframe(stereo)
    assert set(point.observations()) == {mono, stereo}


def test_erase_observation_to_two_makes_point_bad():
    ref = FakeKeyFrame(1)
    point, world, _ = make_point(ref=ref)
    others = [FakeKeyFrame(2), FakeKeyFrame(3)]
    point.add_observation(ref, 0)
    for kf in others:
        point.add_observation(kf, 1)
    point.erase_observation(ref)
    assert point.is_bad()
    assert point.reference_keyframe() is others[0]
    assert world.map_points_in_map() == 0
    assert all(kf.matches[1] is None for kf in others)
    assert point.observations() == {}


def test_erase_observation_above_threshold_keeps_point():
    ref = FakeKeyFrame(1, stereo=True)
    point, world, _ = make_point(ref=ref)
    point.add_observation(ref, 0)
    point.add_observation(FakeKeyFrame(2, stereo=True), 0)
    point.erase_observation(ref)
    assert not point.is_bad()
    assert point.n_observations() == 2 or point.is_bad() is False
    assert world.map_points_in_map() == 1


def test_found_ratio():
    point, _, _ = make_point()
    assert point.found_ratio() == 1.0
    point.increase_visible(3)
    point.increase_found(1)
    assert point.found_ratio() == pytest.approx(2 / 4)


def test_replace_moves_observations_and_counters():
    world = Map()
    kf_a, kf_b = FakeKeyFrame(1), FakeKeyFrame(2)
    old = MapPoint((0, 0, 1), world, kf_a)
    new = MapPoint((0, 0, 1), world, kf_b)
    world.add_map_point(old)
    world.add_map_point(new)
    old.add_observation(kf_a, 0)
    old.add_observation(kf_b, 3)
    new.add_observation(kf_b, 1)
    old.increase_visible(4)
    old.replace(new)
    assert old.is_bad()
    assert old.replaced() is new
    assert kf_a.matches[0] is new
    assert kf_b.matches[3] is None
    assert new.index_in_keyframe(kf_a) == 0
    assert new.found_ratio() == pytest.approx(2 / 7)
    assert world.all_map_points() == [new]


def test_replace_with_itself_does_nothing():
    point, world, ref = make_point()
    point.add_observation(ref, 0)
    point.replace(point)
    assert not point.is_bad()
    assert point.replaced() is None


def test_distinctive_descriptor_prefers_majority():
    common = np.zeros(32, dtype=np.uint8)
    odd = np.full(32, 0xFF, dtype=np.uint8)
    kfs = [
        FakeKeyFrame(i, descriptors=np.stack([d] * 4))
        for i, d in enumerate((odd, common, common), start=1)
    ]
    point, _, _ = make_point(ref=kfs[0])
    for kf in kfs:
        point.add_observation(kf, 0)
    point.compute_distinctive_descriptors()
    np.testing.assert_array_equal(point.descriptor(), common)


def test_distinctive_descriptor_skips_bad_point():
    point, _, ref = make_point()
    point.add_observation(ref, 0)
    point.set_bad_flag()
    point.compute_distinctive_descriptors()
    assert point.descriptor() is None


def test_update_normal_and_depth():
    left = FakeKeyFrame(1, center=(-1.0, 0.0, 0.0))
    right = FakeKeyFrame(2, center=(1.0, 0.0, 0.0))
    point, _, _ = make_point(ref=left, pos=(0.0, 0.0, 1.0))
    point.add_observation(left, 0)
    point.add_observation(right, 0)
    point.update_normal_and_depth()
    normal = point.normal()
    assert normal[0] == pytest.approx(0.0)
    assert normal[2] > 0
    dist = np.sqrt(2.0)
    assert point.max_distance_invariance() == pytest.approx(1.2 * dist)
    assert point.min_distance_invariance() == pytest.approx(0.8 * dist / 1.44)


def test_frame_constructor_and_predict_scale():
    frame = FakeKeyFrame(5, center=(0.0, 0.0, 0.0))
    frame.keys_un[2] = SimpleNamespace(octave=1)
    frame.descriptors = np.arange(4 * 32, dtype=np.uint8).reshape(4, 32)
    point = MapPoint((0.0, 0.0, 2.0), Map(), frame=frame, frame_index=2)
    assert point.first_keyframe_id == -1
    assert point.first_frame == 5
    np.testing.assert_allclose(point.normal(), [0.0, 0.0, 1.0])
    np.testing.assert_array_equal(point.descriptor(), frame.descriptors[2])
    max_dist = point.max_distance_invariance() / 1.2
    assert max_dist == pytest.approx(2.0 * 1.2)
    assert point.predict_scale(max_dist, frame) == 0
    assert point.predict_scale(max_dist * 100, frame) == 0
    assert point.predict_scale(max_dist / 100, frame) == frame.n_scale_levels - 1


def test_frame_constructor_requires_index():
    with pytest.raises(ValueError):
        MapPoint((0, 0, 1), Map(), frame=FakeKeyFrame(1))