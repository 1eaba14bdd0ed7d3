"""
Candidate generators.

Every generator takes ``(user_id, matrix, limit)`` and returns at most
``limit`` CandidateItems sorted by descending score, each score in [0, 1].
Generators never raise: internal failures are logged and produce an empty
list, so the orchestrator can always fan in whatever finished.

Collaborative scores are raw sums of ``similarity * rating`` and are squashed
into [0, 1] with ``min(1, max(0, raw / divisor))``. The divisor (10 by
default) is an empirical constant that bounds the observed range; it is a
setting, not a law.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

from fusionrec.errors import GenerationCancelled
from fusionrec.models.recommender import Algorithm, CandidateItem
from fusionrec.services.matrix import UserItemMatrix
from fusionrec.services.preferences import PreferenceProvider
from fusionrec.services.scoring import RandomScorer, Scorer
from fusionrec.services.similarity import check_cancelled, most_similar_items, most_similar_users

LOGGER = logging.getLogger(__name__)

DEFAULT_NORMALIZATION_DIVISOR = 10.0


class CancelScope:
    """Cancellation flag for one pipeline run, optionally tied to a caller's event.

    `set()` only raises the scope's own flag; the caller's event is read, never written.
    """

    def __init__(self, parent: Optional[threading.Event] = None) -> None:
        self._own = threading.Event()
        self._parent = parent

    def set(self) -> None:
        self._own.set()

    def is_set(self) -> bool:
        return self._own.is_set() or (self._parent is not None and self._parent.is_set())


Cancellation = Union[threading.Event, CancelScope]


def clamp01(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


def normalize_score(raw: float, divisor: float = DEFAULT_NORMALIZATION_DIVISOR) -> float:
    return clamp01(raw / divisor)


def _rank(scores: Dict[str, float], limit: int) -> List[Tuple[str, float]]:
    return sorted(scores.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]


class CandidateGenerator:
    algorithm: Algorithm

    def generate(self, user_id: str, matrix: UserItemMatrix, limit: int,
                 cancel: Optional[Cancellation] = None) -> List[CandidateItem]:
        if limit <= 0:
            return []
        try:
            items = self._generate(user_id, matrix, limit, cancel)
        except GenerationCancelled:
            LOGGER.info("%s generation cancelled for user %s", self.algorithm.value, user_id)
            return []
        except Exception:
            LOGGER.exception("%s generation failed for user %s", self.algorithm.value, user_id)
            return []
        items = [item.with_score(clamp01(item.score)) for item in items]
        items.sort(key=lambda c: -c.score)
        return items[:limit]

    def _generate(self, user_id: str, matrix: UserItemMatrix, limit: int,
                  cancel: Optional[Cancellation]) -> List[CandidateItem]:
        raise NotImplementedError


class UserBasedCF(CandidateGenerator):
    """Items rated by the most similar peers, weighted by peer similarity."""
    algorithm = Algorithm.USER_CF

    def __init__(self, *, max_peers: int = 50, min_similarity: float = 0.1,
                 divisor: float = DEFAULT_NORMALIZATION_DIVISOR) -> None:
        self.max_peers = max_peers
        self.min_similarity = min_similarity
        self.divisor = divisor

    def _generate(self, user_id, matrix, limit, cancel):
        peers = most_similar_users(matrix, user_id, self.max_peers, self.min_similarity, cancel=cancel)
        if not peers:
            LOGGER.debug("No similar users for %s", user_id)
            return []

        seen = matrix.user_items(user_id)
        scores: Dict[str, float] = {}
        for peer in peers:
            check_cancelled(cancel)
            for item_id, rating in matrix.user_ratings(peer.subject_id).items():
                if item_id not in seen:
                    scores[item_id] = scores.get(item_id, 0.0) + peer.similarity * rating

        confidence = min(0.9, 0.02 * len(peers))
        return [
            CandidateItem(
                item_id=item_id,
                score=normalize_score(raw, self.divisor),
                confidence=confidence,
                algorithm=self.algorithm,
                features={**matrix.item_metadata(item_id), "raw_score": raw, "similar_users": len(peers)},
            )
            for item_id, raw in _rank(scores, limit)
        ]


class ItemBasedCF(CandidateGenerator):
    """Unseen items most similar to what the user already rated well."""
    algorithm = Algorithm.ITEM_CF
    confidence = 0.8

    def __init__(self, *, max_neighbours: int = 20, min_similarity: float = 0.1,
                 seed_threshold: float = 0.5, divisor: float = DEFAULT_NORMALIZATION_DIVISOR) -> None:
        self.max_neighbours = max_neighbours
        self.min_similarity = min_similarity
        self.seed_threshold = seed_threshold
        self.divisor = divisor

    def _generate(self, user_id, matrix, limit, cancel):
        ratings = matrix.user_ratings(user_id)
        if not ratings:
            return []
        seen = set(ratings)
        scores: Dict[str, float] = {}
        for seed_item, seed_rating in ratings.items():
            if seed_rating < self.seed_threshold:
                continue
            check_cancelled(cancel)
            for pair in most_similar_items(matrix, seed_item, self.max_neighbours,
                                           self.min_similarity, exclude=seen, cancel=cancel):
                scores[pair.subject_id] = scores.get(pair.subject_id, 0.0) + seed_rating * pair.similarity

        return [
            CandidateItem(
                item_id=item_id,
                score=normalize_score(raw, self.divisor),
                confidence=self.confidence,
                algorithm=self.algorithm,
                features={**matrix.item_metadata(item_id), "raw_score": raw},
            )
            for item_id, raw in _rank(scores, limit)
        ]


class ContentBased(CandidateGenerator):
    """Items tagged with genres the user prefers above `threshold`.

    Catalog items seen in the matrix come first, those by the user's preferred
    artists ahead of the rest; remaining slots per genre are filled with
    synthesized ``content_<genre>_<n>`` placeholders.
    """
    algorithm = Algorithm.CONTENT_BASED
    confidence = 0.75

    def __init__(self, preferences: PreferenceProvider, scorer: Optional[Scorer] = None, *,
                 threshold: float = 0.5, per_genre_max: int = 3) -> None:
        self.preferences = preferences
        self.scorer = scorer or RandomScorer()
        self.threshold = threshold
        self.per_genre_max = per_genre_max

    @staticmethod
    def _catalog_by_genre(matrix: UserItemMatrix, seen: set) -> Dict[str, List[Tuple[str, str]]]:
        """genre -> [(item_id, artist)] in popularity order, unseen items only."""
        by_genre: Dict[str, List[Tuple[str, str]]] = {}
        for item_id, _, _ in matrix.popular_items():
            if item_id in seen:
                continue
            meta = matrix.item_metadata(item_id)
            genre = str(meta.get("genre", "")).strip().lower()
            if genre:
                artist = str(meta.get("artist", "")).strip().lower()
                by_genre.setdefault(genre, []).append((item_id, artist))
        return by_genre

    def _generate(self, user_id, matrix, limit, cancel):
        prefs = {str(g).strip().lower(): float(v) for g, v in self.preferences.genre_preferences(user_id).items()}
        if not prefs:
            return []
        artists = {
            str(a).strip().lower(): float(v)
            for a, v in self.preferences.artist_preferences(user_id).items()
            if float(v) > self.threshold
        }
        per_genre = max(1, min(self.per_genre_max, limit // len(prefs)))
        catalog = self._catalog_by_genre(matrix, matrix.user_items(user_id))

        out: List[CandidateItem] = []
        for genre, pref in sorted(prefs.items(), key=lambda kv: (-kv[1], kv[0])):
            if pref <= self.threshold:
                continue
            check_cancelled(cancel)
            # stable sort keeps popularity order among equally liked artists
            ranked = sorted(catalog.get(genre, []), key=lambda entry: -artists.get(entry[1], 0.0))
            picks = [item_id for item_id, _ in ranked[:per_genre]]
            slug = genre.replace(" ", "_")
            picks += [f"content_{slug}_{i}" for i in range(per_genre - len(picks))]
            for item_id in picks:
                score = pref * (0.8 + 0.2 * self.scorer(user_id, item_id))
                features = {"genre": genre, **matrix.item_metadata(item_id), "content_score": pref}
                out.append(CandidateItem(item_id=item_id, score=score, confidence=self.confidence,
                                         algorithm=self.algorithm, features=features))
        return out


def time_score(hour: int) -> float:
    """How much listening the hour of day typically supports; evenings score highest."""
    if 6 <= hour < 9:
        return 0.7
    if 9 <= hour < 12:
        return 0.6
    if 12 <= hour < 14:
        return 0.5
    if 14 <= hour < 18:
        return 0.6
    if 18 <= hour < 22:
        return 0.8
    return 0.4


def context_bucket(hour: int) -> str:
    if 6 <= hour < 9:
        return "morning"
    if 9 <= hour < 12:
        return "work"
    if 12 <= hour < 14:
        return "lunch"
    if 14 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


class Contextual(CandidateGenerator):
    algorithm = Algorithm.CONTEXTUAL
    confidence = 0.7
    max_items = 5

    def __init__(self, scorer: Optional[Scorer] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self.scorer = scorer or RandomScorer()
        self.clock = clock

    def _generate(self, user_id, matrix, limit, cancel):
        hour = self.clock().hour
        relevance = time_score(hour)
        bucket = context_bucket(hour)
        out = []
        for i in range(min(limit, self.max_items)):
            check_cancelled(cancel)
            item_id = f"contextual_{bucket}_{i}"
            out.append(CandidateItem(
                item_id=item_id,
                score=relevance * (0.6 + 0.4 * self.scorer(user_id, item_id)),
                confidence=self.confidence,
                algorithm=self.algorithm,
                features={"context_type": bucket, "time_relevance": relevance, "hour": hour},
            ))
        return out


class DeepGenerator(CandidateGenerator):
    """Scores unseen catalog items with a pluggable model, scaled by user engagement."""
    algorithm = Algorithm.DEEP
    confidence = 0.85
    max_items = 10

    def __init__(self, scorer: Optional[Scorer] = None,
                 engagement: Optional[Callable[[str], float]] = None, *,
                 pool_size: int = 500) -> None:
        self.scorer = scorer or RandomScorer()
        self.engagement = engagement
        self.pool_size = pool_size

    def _generate(self, user_id, matrix, limit, cancel):
        base = self.engagement(user_id) if self.engagement is not None else 0.5
        seen = matrix.user_items(user_id)
        pool = [item_id for item_id, _, _ in matrix.popular_items() if item_id not in seen][:self.pool_size]

        scores: Dict[str, float] = {}
        for n, item_id in enumerate(pool):
            if n % 50 == 0:
                check_cancelled(cancel)
            scores[item_id] = base * (0.7 + 0.3 * self.scorer(user_id, item_id))

        return [
            CandidateItem(
                item_id=item_id,
                score=score,
                confidence=self.confidence,
                algorithm=self.algorithm,
                features={**matrix.item_metadata(item_id), "neural_score": score},
            )
            for item_id, score in _rank(scores, min(limit, self.max_items))
        ]


class CollaborativeBlend(CandidateGenerator):
    """User-CF and item-CF blended 0.7 / 0.3; overlapping items sum and become HYBRID_CF.

    This is the single collaborative list the ensemble sees.
    """
    algorithm = Algorithm.HYBRID_CF

    def __init__(self, user_cf: UserBasedCF, item_cf: ItemBasedCF, *,
                 user_weight: float = 0.7, item_weight: float = 0.3) -> None:
        self.user_cf = user_cf
        self.item_cf = item_cf
        self.user_weight = user_weight
        self.item_weight = item_weight

    def _generate(self, user_id, matrix, limit, cancel):
        combined: Dict[str, CandidateItem] = {}
        for item in self.user_cf.generate(user_id, matrix, limit, cancel):
            combined[item.item_id] = item.weighted(self.user_weight)
        for item in self.item_cf.generate(user_id, matrix, limit // 2, cancel):
            existing = combined.get(item.item_id)
            if existing is not None:
                combined[item.item_id] = existing.with_score(
                    existing.score + item.score * self.item_weight
                ).with_algorithm(Algorithm.HYBRID_CF)
            else:
                combined[item.item_id] = item.weighted(self.item_weight)
        return list(combined.values())
