from dataclasses import dataclass

from slammap.worldmap import Map


@dataclass(eq=False)
class Item:
    id: int


def test_add_keyframes_tracks_max_id_and_count():
    world = Map()
    a, b, c = Item(3), Item(9), Item(5)
    for kf in (a, b, c):
        world.add_keyframe(kf)
    assert world.keyframes_in_map() == 3
    assert world.max_keyframe_id() == 9
    assert set(world.all_keyframes()) == {a, b, c}


def test_adding_same_keyframe_twice_counts_once():
    world = Map()
    kf = Item(1)
    world.add_keyframe(kf)
    world.add_keyframe(kf)
    assert world.keyframes_in_map() == 1


def test_erase_keyframe_keeps_max_id():
    world = Map()
    a, b = Item(2), Item(7)
    world.add_keyframe(a)
    world.add_keyframe(b)
    world.erase_keyframe(b)
    assert world.all_keyframes() == [a]
    assert world.max_keyframe_id() == 7


def test_map_points_add_and_erase():
    world = Map()
    p, q = Item(0), Item(1)
    world.add_map_point(p)
    world.add_map_point(q)
    world.erase_map_point(p)
    world.erase_map_point(p)
    assert world.map_points_in_map() == 1
    assert world.all_map_points() == [q]


def test_reference_points_are_copied():
    world = Map()
    points = [Item(0), Item(1)]
    world.set_reference_map_points(points)
    points.append(Item(2))
    assert len(world.reference_map_points()) == 2
    returned = world.reference_map_points()
    returned.clear()
    assert len(world.reference_map_points()) == 2


def test_big_change_index_increments():
    world = Map()
    assert world.last_big_change_index() == 0
    world.inform_new_big_change()
    world.inform_new_big_change()
    assert world.last_big_change_index() == 2


def test_clear_empties_everything_but_big_change_index():
    world = Map()
    world.add_keyframe(Item(4))
    world.add_map_point(Item(0))
    world.set_reference_map_points([Item(1)])
    world.keyframe_origins.append(Item(4))
    world.inform_new_big_change()
    world.clear()
    assert world.keyframes_in_map() == 0
    assert world.map_points_in_map() == 0
    assert world.max_keyframe_id() == 0
    assert world.reference_map_points() == []
    assert world.keyframe_origins == []
    assert world.last_big_change_index() == 1