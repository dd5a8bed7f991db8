"""Loop detection: candidate search and covisibility consistency over time."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

# Keyframes that must pass after a loop before looking for another one.
_KEYFRAMES_BETWEEN_LOOPS = 10


@dataclass(frozen=True)
class ConsistentGroup:
    """A candidate's covisibility group and how many keyframes in a row saw it."""

    keyframes: frozenset
    consistency: int


class LoopDetector:
    """Finds loop candidates that stay consistent over consecutive keyframes.

    ``keyframe_db`` must offer ``add(keyframe)`` and
    ``detect_loop_candidates(keyframe, min_score)``; ``vocabulary`` must offer
    ``score(bow_a, bow_b)``.
    """

    def __init__(
        self, keyframe_db: Any, vocabulary: Any, consistency_threshold: int = 3
    ) -> None:
        self.keyframe_db = keyframe_db
        self.vocabulary = vocabulary
        self.consistency_threshold = int(consistency_threshold)
        self.consistent_groups: list[ConsistentGroup] = []
        self.last_loop_keyframe_id = 0

    def minimum_covisible_score(self, keyframe: Any) -> float:
        """Lowest BoW similarity to a good covisible keyframe, at most 1."""
        lowest = 1.0
        for other in keyframe.vector_covisible_keyframes():
            if other.is_bad():
                continue
            score = self.vocabulary.score(keyframe.bow_vec, other.bow_vec)
            lowest = min(lowest, score)
        return lowest

    def update_consistency(self, candidates: Iterable[Any]) -> list[Any]:
        """Match candidates' groups against the previous ones.

        Replaces the stored groups and returns the candidates whose group has
        been consistent for at least the threshold number of keyframes.
        """
        previous = self.consistent_groups
        already_extended = [False] * len(previous)
        current: list[ConsistentGroup] = []
        enough: list[Any] = []

        for candidate in candidates:
            group = frozenset(candidate.connected_keyframes() | {candidate})
            consistent_for_some = False
            added = False
            for position, old in enumerate(previous):
                if group.isdisjoint(old.keyframes):
                    continue
                consistent_for_some = True
                consistency = old.consistency + 1
                if not already_extended[position]:
                    current.append(ConsistentGroup(group, consistency))
                    already_extended[position] = True
                if consistency >= self.consistency_threshold and not added:
                    enough.append(candidate)
                    added = True
            if not consistent_for_some:
                current.append(ConsistentGroup(group, 0))

        self.consistent_groups = current
        return enough

    def detect(self, keyframe: Any) -> list[Any]:
        """Process a new keyframe and return the loop candidates accepted for it.

        The keyframe is always added to the database. It is pinned against
        erasure while a loop is being considered and released again when the
        returned list is empty.
        """
        keyframe.set_not_erase()

        if keyframe.id < self.last_loop_keyframe_id + _KEYFRAMES_BETWEEN_LOOPS:
            self.keyframe_db.add(keyframe)
            keyframe.set_erase()
            return []

        min_score = self.minimum_covisible_score(keyframe)
        candidates = self.keyframe_db.detect_loop_candidates(keyframe, min_score)
        if not candidates:
            self.keyframe_db.add(keyframe)
            self.consistent_groups = []
            keyframe.set_erase()
            return []

        enough = self.update_consistency(candidates)
        self.keyframe_db.add(keyframe)
        if not enough:
            keyframe.set_erase()
        return enough

    def reset(self) -> None:
        """Forget when the last loop was closed."""
        self.last_loop_keyframe_id = 0