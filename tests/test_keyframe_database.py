from dataclasses import dataclass, field

import pytest

from slammap.keyframe import KeyFrame
from slammap.keyframe_database import KeyFrameDatabase
from slammap.worldmap import Map


class FakeVocabulary:
    """L1 similarity of normalised BoW vectors: sum of shared minimum weights."""

    def __init__(self, size=10):
        self.size = size

    def __len__(self):
        return self.size

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a if w in b)


@dataclass
class Frame:
    bow_vec: dict = field(default_factory=dict)
    id: int = 1


def make_kf(kf_id, bow):
    return KeyFrame(
        [],
        fx=500.0,
        fy=500.0,
        cx=320.0,
        cy=240.0,
        bounds=(0.0, 640.0, 0.0, 480.0),
        world_map=Map(),
        bow_vec=bow,
        keyframe_id=kf_id,
    )


@pytest.fixture
def db():
    return KeyFrameDatabase(FakeVocabulary())


def test_relocalization_finds_added_keyframe(db):
    kf = make_kf(1, {0: 0.5, 1: 0.5})
    db.add(kf)
    assert db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=7)) == [kf]
    assert kf.reloc_words == 2


def test_no_shared_words_gives_nothing(db):
    db.add(make_kf(1, {0: 1.0}))
    assert db.detect_relocalization_candidates(Frame({3: 1.0}, id=2)) == []


def test_erase_removes_keyframe(db):
    kf = make_kf(1, {0: 0.5, 1: 0.5})
    db.add(kf)
    db.erase(kf)
    assert db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=3)) == []


def test_clear_empties_index(db):
    db.add(make_kf(1, {0: 0.5, 1: 0.5}))
    db.clear()
    assert db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=4)) == []


def test_word_outside_vocabulary_raises(db):
    with pytest.raises(IndexError):
        db.add(make_kf(1, {42: 1.0}))


def test_relocalization_keeps_insertion_order_for_equal_scores(db):
    a = make_kf(1, {0: 0.5, 1: 0.5})
    b = make_kf(2, {0: 0.5, 1: 0.5})
    db.add(a)
    db.add(b)
    assert db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=5)) == [a, b]


def test_relocalization_accumulates_covisible_scores(db):
    a = make_kf(1, {0: 0.5, 1: 0.3, 3: 0.2})
    b = make_kf(2, {0: 0.5, 1: 0.5})
    a.add_connection(b, 20)
    db.add(a)
    db.add(b)
    result = db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=6))
    assert result == [b]
    assert a.reloc_score == pytest.approx(0.8)
    assert b.reloc_score == pytest.approx(1.0)


def test_relocalization_returns_each_keyframe_once(db):
    a = make_kf(1, {0: 0.5, 1: 0.3, 3: 0.2})
    b = make_kf(2, {0: 0.5, 1: 0.5})
    a.add_connection(b, 20)
    b.add_connection(a, 20)
    db.add(a)
    db.add(b)
    result = db.detect_relocalization_candidates(Frame({0: 0.5, 1: 0.5}, id=8))
    assert result == [b]
    assert len(result) == len(set(result))


def test_loop_candidates_skip_connected_keyframes(db):
    query = make_kf(100, {0: 0.5, 1: 0.5})
    neighbour = make_kf(1, {0: 0.5, 1: 0.5})
    far = make_kf(2, {0: 0.5, 1: 0.5})
    query.add_connection(neighbour, 30)
    db.add(neighbour)
    db.add(far)
    assert db.detect_loop_candidates(query, 0.1) == [far]


def test_loop_candidates_respect_min_score(db):
    query = make_kf(100, {0: 0.5, 1: 0.5})
    db.add(make_kf(1, {0: 0.1, 1: 0.1, 2: 0.8}))
    assert db.detect_loop_candidates(query, 0.9) == []


def test_loop_candidates_need_enough_common_words(db):
    query = make_kf(100, {0: 0.25, 1: 0.25, 2: 0.25, 3: 0.25})
    many = make_kf(1, {0: 0.25, 1: 0.25, 2: 0.25, 3: 0.25})
    few = make_kf(2, {0: 0.5, 5: 0.5})
    db.add(many)
    db.add(few)
    assert db.detect_loop_candidates(query, 0.0) == [many]
    assert few.loop_words == 1


def test_loop_candidates_take_best_covisible(db):
    query = make_kf(100, {0: 0.5, 1: 0.5})
    a = make_kf(1, {0: 0.5, 1: 0.3, 3: 0.2})
    b = make_kf(2, {0: 0.5, 1: 0.5})
    a.add_connection(b, 20)
    db.add(a)
    db.add(b)
    assert db.detect_loop_candidates(query, 0.1) == [b]