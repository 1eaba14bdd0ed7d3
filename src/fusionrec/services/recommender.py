"""
Recommendation engine that fuses several candidate strategies into one ranked,
diversified list per user.

Pipeline
--------
1. **Matrix.** Behavior events from the trailing window (30 days by default)
   are folded into a sparse user -> item -> rating matrix. The matrix is built
   once, frozen, and shared through a short-TTL single-flight cache so a burst
   of requests triggers one rebuild.

2. **Fan-out.** Four generators run concurrently on the engine's worker
   pool against the frozen matrix: collaborative (user-based CF blended
   0.7 / 0.3 with item-based CF), content (genre and artist preferences),
   contextual (time of day) and a pluggable "deep" scorer. A generator that
   fails returns nothing; one that is still running when the pipeline
   timeout expires is told to stop, its slot is filled with an empty list,
   and the request returns without waiting for its thread.

3. **Ensemble.** Every list is discounted by its strategy weight and merged
   by item id. Items proposed by more than one strategy sum their weighted
   scores and are tagged ENSEMBLE. The merged list keeps `limit * slack`
   entries so the diversity stage has room to skip.

4. **Diversity.** Maximal Marginal Relevance picks the output order while a
   per-artist cap, a per-genre cap and a near-duplicate title filter drop
   items outright.

Failure model
-------------
Only caller mistakes surface: `limit <= 0` or an empty user id raise
InvalidInputError. Everything else is absorbed: an unavailable event source
gives an empty matrix, a failing stage is logged, and the caller receives the
popularity fallback (items with the most raters in the current matrix) or an
empty list when the fallback is disabled.

Final lists are cached per (user, limit) through the same single-flight cache
used for the matrix. Fallback and empty results are not cached.
"""
from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, Hashable, List, Optional, Sequence, Tuple

from fusionrec.config import RecommendationSettings
from fusionrec.errors import InvalidInputError
from fusionrec.models.recommender import Algorithm, CandidateItem, RecommendationItem
from fusionrec.services.cache import SingleFlightCache
from fusionrec.services.candidates import (
    CancelScope,
    CandidateGenerator,
    CollaborativeBlend,
    ContentBased,
    Contextual,
    DeepGenerator,
    ItemBasedCF,
    UserBasedCF,
)
from fusionrec.services.diversity import DiversityReranker
from fusionrec.services.ensemble import EnsembleCombiner
from fusionrec.services.events import EventSource
from fusionrec.services.matrix import MatrixBuilder, UserItemMatrix, analyze_behavior
from fusionrec.services.preferences import BehaviorPreferenceProvider, PreferenceProvider
from fusionrec.services.scoring import RandomScorer, Scorer
from fusionrec.utils.logger import Logger

_logger = Logger(component="recommendation_engine")

RECS_CACHE_PREFIX = "recs"
MATRIX_CACHE_PREFIX = "matrix"
POPULAR_POOL_SIZE = 200


def explain(item: CandidateItem) -> str:
    """Human-readable reason for a recommendation."""
    algorithm = item.algorithm
    if algorithm == Algorithm.CONTENT_BASED:
        genre = item.genre
        return f"Matches your preferred genre {genre}" if genre else "Matches your preferred genres"
    if algorithm == Algorithm.USER_CF:
        return "Listeners with similar taste enjoyed this"
    if algorithm == Algorithm.ITEM_CF:
        return "Similar to songs you rated highly"
    if algorithm == Algorithm.HYBRID_CF:
        return "Liked by similar listeners and close to your favourites"
    if algorithm == Algorithm.CONTEXTUAL:
        context = item.features.get("context_type")
        return f"Fits your {context} listening" if context else "Fits the time of day"
    if algorithm == Algorithm.DEEP:
        return "Predicted from your listening profile"
    if algorithm == Algorithm.ENSEMBLE:
        return "Recommended by several signals"
    return "Popular with listeners right now"


def to_output(items: Sequence[CandidateItem]) -> List[RecommendationItem]:
    return [
        RecommendationItem(
            item_id=item.item_id,
            score=item.score,
            confidence=item.confidence,
            algorithm=item.algorithm,
            reason=explain(item),
        )
        for item in items
    ]


class RecommendationEngine:
    """Orchestrates matrix -> candidates -> ensemble -> diversity for one user at a time."""

    def __init__(
        self,
        source: EventSource,
        preferences: Optional[PreferenceProvider] = None,
        *,
        settings: Optional[RecommendationSettings] = None,
        scorer: Optional[Scorer] = None,
        cache: Optional[SingleFlightCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or RecommendationSettings.from_env()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        s = self.settings

        self.builder = MatrixBuilder(source, window_days=s.window_days, item_type=s.item_type, clock=self.clock)
        self.preferences = preferences or BehaviorPreferenceProvider(self.builder)
        scorer = scorer or RandomScorer()

        self.user_cf = UserBasedCF(max_peers=s.max_similar_users, min_similarity=s.min_similarity,
                                   divisor=s.normalization_divisor)
        self.item_cf = ItemBasedCF(max_neighbours=s.max_similar_items, min_similarity=s.min_similarity,
                                   seed_threshold=s.seed_rating_threshold, divisor=s.normalization_divisor)
        self.content = ContentBased(self.preferences, scorer)
        self.contextual = Contextual(scorer, clock=self.clock)
        self.deep = DeepGenerator(scorer, engagement=self.engagement)
        self.blend = CollaborativeBlend(self.user_cf, self.item_cf)

        self.combiner = EnsembleCombiner(s.weights, slack=s.ensemble_slack)
        self.reranker = DiversityReranker(s.diversity)
        self.cache = cache or SingleFlightCache(maxsize=s.cache_max_entries)

        self._popular: List[CandidateItem] = []
        self._popular_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=s.worker_threads, thread_name_prefix="fusionrec")

    @property
    def generators(self) -> List[Tuple[Algorithm, CandidateGenerator]]:
        return [
            (Algorithm.HYBRID_CF, self.blend),
            (Algorithm.CONTENT_BASED, self.content),
            (Algorithm.CONTEXTUAL, self.contextual),
            (Algorithm.DEEP, self.deep),
        ]

    # --- matrix & fallback ------------------------------------------------

    def _matrix_key(self) -> Hashable:
        return (MATRIX_CACHE_PREFIX, self.settings.window_days, self.settings.item_type.value)

    def _build_matrix(self) -> UserItemMatrix:
        matrix = self.builder.build()
        self._refresh_popular(matrix)
        return matrix

    def matrix(self) -> UserItemMatrix:
        """Current frozen matrix, rebuilt at most once per TTL. Empty matrices are not cached."""
        return self.cache.get_or_compute(
            self._matrix_key(),
            self.settings.matrix_ttl_seconds,
            self._build_matrix,
            cache_if=lambda m: not m.is_empty(),
        )

    def refresh_matrix(self) -> UserItemMatrix:
        """Drop the cached matrix and rebuild it from the full population window."""
        self.cache.delete(self._matrix_key())
        return self.matrix()

    def _refresh_popular(self, matrix: UserItemMatrix) -> None:
        popular = [
            CandidateItem(
                item_id=item_id,
                score=mean,
                confidence=min(0.9, 0.02 * raters),
                algorithm=Algorithm.POPULARITY,
                features={**matrix.item_metadata(item_id), "raters": raters},
            )
            for item_id, raters, mean in matrix.popular_items(POPULAR_POOL_SIZE)
        ]
        with self._popular_lock:
            self._popular = popular

    def fallback(self, limit: int) -> List[CandidateItem]:
        """Precomputed popularity list, or [] when the fallback is disabled or no data exists."""
        if not self.settings.fallback_enabled:
            return []
        with self._popular_lock:
            popular = list(self._popular)
        if not popular:
            return []
        return self.reranker.rerank(popular, limit)

    def engagement(self, user_id: str) -> float:
        analysis = analyze_behavior(self.builder.user_events(user_id))
        return analysis.engagement_score if analysis.total_events else 0.5

    # --- pipeline ---------------------------------------------------------

    @staticmethod
    def _validate(user_id: str, limit: int) -> None:
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise InvalidInputError(f"limit must be a positive integer, got {limit!r}")
        if not user_id or not str(user_id).strip():
            raise InvalidInputError("user_id must be a non-empty string")

    def _timeout(self, timeout: Optional[float]) -> Optional[float]:
        return self.settings.pipeline_timeout_seconds if timeout is None else timeout

    async def _in_pool(self, fn, *args):
        # the pool outlives the event loop, so abandoned calls never block the caller
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def _fan_out(self, user_id: str, matrix: UserItemMatrix, limit: int,
                       scope: CancelScope, deadline: Optional[float]
                       ) -> List[Tuple[Algorithm, List[CandidateItem]]]:
        tasks = {
            algorithm: asyncio.create_task(self._in_pool(gen.generate, user_id, matrix, limit, scope))
            for algorithm, gen in self.generators
        }
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            done, pending = await asyncio.wait(tasks.values(), timeout=remaining)
        except asyncio.CancelledError:
            scope.set()
            for task in tasks.values():
                task.cancel()
            raise

        if pending:
            scope.set()
            for task in pending:
                task.cancel()

        results = []
        for algorithm, task in tasks.items():
            if task not in done:
                _logger.warn("Generator timed out", user_id=user_id, algorithm=algorithm.value)
                results.append((algorithm, []))
            elif task.exception() is not None:
                _logger.error("Generator crashed", user_id=user_id, algorithm=algorithm.value,
                              error=repr(task.exception()))
                results.append((algorithm, []))
            else:
                results.append((algorithm, task.result()))
        return results

    async def _run_pipeline(self, user_id: str, limit: int, scope: CancelScope,
                            timeout: Optional[float]) -> List[CandidateItem]:
        deadline = None if timeout is None else time.monotonic() + timeout
        matrix = await asyncio.wait_for(self._in_pool(self.matrix), timeout=timeout)
        if matrix.is_empty():
            _logger.info("No behavior data in window", user_id=user_id)

        lists = await self._fan_out(user_id, matrix, limit, scope, deadline)
        merged = self.combiner.combine(lists, limit)
        return self.reranker.rerank(merged, limit)

    async def recommend_async(self, user_id: str, limit: int, *, timeout: Optional[float] = None,
                              cancel_event: Optional[threading.Event] = None) -> List[RecommendationItem]:
        """Ranked, diversified recommendations; never raises except for invalid input or cancellation."""
        self._validate(user_id, limit)
        scope = CancelScope(cancel_event)
        started = time.perf_counter()
        try:
            items = await self._run_pipeline(user_id, limit, scope, self._timeout(timeout))
        except asyncio.CancelledError:
            scope.set()
            _logger.info("Recommendation request cancelled", user_id=user_id)
            raise
        except Exception as exc:
            scope.set()
            _logger.error("Recommendation pipeline failed", user_id=user_id, limit=limit, error=repr(exc))
            items = []

        if not items:
            items = self.fallback(limit)
            _logger.info("Serving fallback recommendations", user_id=user_id, count=len(items))

        _logger.info(
            "Recommendations ready",
            user_id=user_id,
            limit=limit,
            count=len(items),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return to_output(items)

    def recommend(self, user_id: str, limit: int, *, timeout: Optional[float] = None,
                  cancel_event: Optional[threading.Event] = None,
                  use_cache: bool = True) -> List[RecommendationItem]:
        """Synchronous entry point for threaded callers (must not run inside an event loop).

        Results are cached per (user_id, limit) with single-flight semantics.
        """
        self._validate(user_id, limit)

        def compute() -> List[RecommendationItem]:
            return asyncio.run(self.recommend_async(user_id, limit, timeout=timeout, cancel_event=cancel_event))

        if not use_cache:
            return compute()
        return self.cache.get_or_compute(
            (RECS_CACHE_PREFIX, user_id, limit),
            self.settings.cache_ttl_seconds,
            compute,
            cache_if=lambda rows: bool(rows) and rows[0].algorithm != Algorithm.POPULARITY,
        )

    get_recommendations = recommend

    def collaborative_recommendations(self, user_id: str, limit: int) -> List[RecommendationItem]:
        """User-CF and item-CF blended on their own, without the other strategies."""
        self._validate(user_id, limit)
        try:
            items = self.blend.generate(user_id, self.matrix(), limit)
        except Exception as exc:
            _logger.error("Collaborative recommendation failed", user_id=user_id, error=repr(exc))
            return []
        return to_output(items)

    def invalidate(self, user_id: str) -> int:
        """Evict every cached recommendation list of `user_id`."""
        return self.cache.invalidate(
            lambda key: isinstance(key, tuple) and len(key) == 3
            and key[0] == RECS_CACHE_PREFIX and key[1] == user_id
        )

    def close(self) -> None:
        """Stop accepting pipeline work; threads still running are not waited for."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "RecommendationEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
