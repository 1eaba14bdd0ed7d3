from __future__ import annotations

from typing import Iterable, List, Mapping, Optional, Protocol

import numpy as np

from fusionrec.errors import GenerationCancelled
from fusionrec.models.recommender import SimilarityPair
from fusionrec.services.matrix import UserItemMatrix

MIN_OVERLAP = 2
DEFAULT_MIN_SIMILARITY = 0.1


class CancelFlag(Protocol):
    def is_set(self) -> bool:
        ...


def check_cancelled(cancel: Optional[CancelFlag]) -> None:
    if cancel is not None and cancel.is_set():
        raise GenerationCancelled()


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))


def _overlap_cosine(left: Mapping[str, float], right: Mapping[str, float]) -> float:
    """Cosine over the shared keys only; fewer than two shared keys gives 0."""
    common = sorted(left.keys() & right.keys())
    if len(common) < MIN_OVERLAP:
        return 0.0
    a = np.fromiter((left[k] for k in common), dtype=np.float64, count=len(common))
    b = np.fromiter((right[k] for k in common), dtype=np.float64, count=len(common))
    return _cosine(a, b)


def user_similarity(matrix: UserItemMatrix, user_a: str, user_b: str) -> float:
    return _overlap_cosine(matrix.user_ratings(user_a), matrix.user_ratings(user_b))


def _item_column(matrix: UserItemMatrix, item_id: str) -> dict:
    return {u: matrix.rating(u, item_id) for u in matrix.item_users(item_id)}


def item_similarity(matrix: UserItemMatrix, item_a: str, item_b: str) -> float:
    return _overlap_cosine(_item_column(matrix, item_a), _item_column(matrix, item_b))


def _top(pairs: Iterable[SimilarityPair], limit: int) -> List[SimilarityPair]:
    return sorted(pairs, key=lambda p: (-p.similarity, p.subject_id))[:limit]


def most_similar_users(matrix: UserItemMatrix, user_id: str, limit: int = 50,
                       min_similarity: float = DEFAULT_MIN_SIMILARITY,
                       cancel: Optional[CancelFlag] = None) -> List[SimilarityPair]:
    """Peers of `user_id` whose similarity exceeds `min_similarity`, best first."""
    if not matrix.user_ratings(user_id):
        return []
    pairs = []
    for other in matrix.users:
        check_cancelled(cancel)
        if other == user_id:
            continue
        sim = user_similarity(matrix, user_id, other)
        if sim > min_similarity:
            pairs.append(SimilarityPair(subject_id=other, similarity=sim))
    return _top(pairs, limit)


def most_similar_items(matrix: UserItemMatrix, item_id: str, limit: int = 20,
                       min_similarity: float = DEFAULT_MIN_SIMILARITY,
                       exclude: Optional[set] = None,
                       cancel: Optional[CancelFlag] = None) -> List[SimilarityPair]:
    column = _item_column(matrix, item_id)
    if len(column) < MIN_OVERLAP:
        return []
    # only items sharing at least one rater can reach the overlap requirement
    neighbours = set()
    for user in column:
        neighbours.update(matrix.user_items(user))
    neighbours.discard(item_id)
    if exclude:
        neighbours -= exclude

    pairs = []
    for other in neighbours:
        check_cancelled(cancel)
        sim = _overlap_cosine(column, _item_column(matrix, other))
        if sim > min_similarity:
            pairs.append(SimilarityPair(subject_id=other, similarity=sim))
    return _top(pairs, limit)
