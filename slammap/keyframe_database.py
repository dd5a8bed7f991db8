"""Inverted index from visual words to keyframes, for loop and relocalization queries."""

from __future__ import annotations

import threading
from typing import Any

# Fraction of the best shared-word count a keyframe must exceed to be scored.
_COMMON_WORDS_RATIO = 0.8
# Fraction of the best accumulated score a candidate must exceed to be kept.
_RETAIN_RATIO = 0.75
# Number of covisible neighbours whose scores are accumulated.
_NEIGHBOURS = 10


class KeyFrameDatabase:
    """Keyframes indexed by the visual words of their bag-of-words vectors.

    The vocabulary must support ``len()`` (its number of words) and
    ``score(bow_a, bow_b)`` returning the similarity of two BoW vectors.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted_file: list[list[Any]] = [[] for _ in range(len(vocabulary))]

    def add(self, keyframe: Any) -> None:
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                self._inverted_file[word].append(keyframe)

    def erase(self, keyframe: Any) -> None:
        """Remove ``keyframe`` from the list of every word it contains."""
        with self._lock:
            for word in sorted(keyframe.bow_vec):
                entries = self._inverted_file[word]
                for position, candidate in enumerate(entries):
                    if candidate is keyframe:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted_file = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, keyframe: Any, min_score: float) -> list[Any]:
        """Keyframes, not connected to ``keyframe``, likely to close a loop with it."""
        connected = keyframe.connected_keyframes()
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(keyframe.bow_vec):
                for candidate in self._inverted_file[word]:
                    if candidate.loop_query != keyframe.id:
                        candidate.loop_words = 0
                        if candidate not in connected:
                            candidate.loop_query = keyframe.id
                            sharing.append(candidate)
                    candidate.loop_words += 1

        if not sharing:
            return []

        max_common = max(candidate.loop_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.loop_words > min_common:
                score = self._vocabulary.score(keyframe.bow_vec, candidate.bow_vec)
                candidate.loop_score = score
                if score >= min_score:
                    scored.append((score, candidate))
        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, candidate in scored:
            best_score = acc_score = score
            best = candidate
            for neighbour in candidate.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.loop_query == keyframe.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best, best_score = neighbour, neighbour.loop_score
            accumulated.append((acc_score, best))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, _RETAIN_RATIO * best_acc)

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes most similar to ``frame``, for recovering a lost track."""
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(frame.bow_vec):
                for candidate in self._inverted_file[word]:
                    if candidate.reloc_query != frame.id:
                        candidate.reloc_words = 0
                        candidate.reloc_query = frame.id
                        sharing.append(candidate)
                    candidate.reloc_words += 1

        if not sharing:
            return []

        max_common = max(candidate.reloc_words for candidate in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for candidate in sharing:
            if candidate.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, candidate.bow_vec)
                candidate.reloc_score = score
                scored.append((score, candidate))
        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, candidate in scored:
            best_score = acc_score = score
            best = candidate
            for neighbour in candidate.best_covisibility_keyframes(_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best, best_score = neighbour, neighbour.reloc_score
            accumulated.append((acc_score, best))
            best_acc = max(best_acc, acc_score)

        return _retain(accumulated, _RETAIN_RATIO * best_acc)


def _retain(accumulated: list[tuple[float, Any]], threshold: float) -> list[Any]:
    """Keyframes whose accumulated score exceeds ``threshold``, each once, in order."""
    kept: dict[Any, None] = {}
    for score, keyframe in accumulated:
        if score > threshold and keyframe not in kept:
            kept[keyframe] = None
    return list(kept)