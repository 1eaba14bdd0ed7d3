import asyncio
import threading
import time

import pytest

from fusionrec.config import EnsembleWeights, RecommendationSettings
from fusionrec.errors import ComputationError, DataUnavailableError, InvalidInputError
from fusionrec.models.recommender import Algorithm, RecommendationItem
from fusionrec.services.events import InMemoryEventSource
from fusionrec.services.recommender import RecommendationEngine
from fusionrec.services.similarity import item_similarity


class SlowScorer:
    def __init__(self, delay):
        self.delay = delay

    def __call__(self, user_id, item_id):
        time.sleep(self.delay)
        return 0.5


class SlowSource:
    def __init__(self, inner, delay):
        self.inner = inner
        self.delay = delay

    def recent_events(self, user_id, since):
        time.sleep(self.delay)
        return self.inner.recent_events(user_id, since)


@pytest.fixture
def engine(source, settings, scorer, clock):
    return RecommendationEngine(source, settings=settings, scorer=scorer, clock=clock)


def failing_combine(lists, limit):
    raise ComputationError("combiner exploded")


def test_recommend_end_to_end(engine):
    items = engine.recommend("alice", 5)
    assert 0 < len(items) <= 5
    assert all(isinstance(item, RecommendationItem) for item in items)
    assert all(item.reason for item in items)
    assert items[0].score == max(item.score for item in items)
    # nothing alice already rated
    assert not {item.item_id for item in items} & {"s1", "s2", "s3"}


def test_item_found_by_several_strategies_is_ensemble(engine):
    items = engine.recommend("alice", 10)
    s4 = next(item for item in items if item.item_id == "s4")
    assert s4.algorithm == Algorithm.ENSEMBLE
    assert s4.reason == "Recommended by several signals"


def test_rows_are_plain_dicts(engine):
    row = engine.recommend("alice", 3)[0].model_dump()
    assert set(row) == {"item_id", "score", "confidence", "algorithm", "reason"}


@pytest.mark.parametrize("limit", [0, -1])
def test_non_positive_limit_is_rejected(engine, limit):
    with pytest.raises(InvalidInputError):
        engine.recommend("alice", limit)
    with pytest.raises(ValueError):
        asyncio.run(engine.recommend_async("alice", limit))


def test_empty_user_is_rejected(engine):
    with pytest.raises(InvalidInputError):
        engine.recommend("  ", 5)


def test_empty_source_does_not_raise(settings, scorer, clock):
    engine = RecommendationEngine(InMemoryEventSource(), settings=settings, scorer=scorer, clock=clock)
    items = engine.recommend("alice", 5)
    assert len(items) <= 5
    # only the time-of-day strategy works without any history
    assert {item.algorithm for item in items} <= {Algorithm.CONTEXTUAL}


def test_unavailable_source_does_not_raise(settings, scorer, clock):
    class Broken:
        def recent_events(self, user_id, since):
            raise DataUnavailableError("warehouse offline")

    engine = RecommendationEngine(Broken(), settings=settings, scorer=scorer, clock=clock)
    assert isinstance(engine.recommend("alice", 5), list)


def test_pipeline_failure_serves_popularity_fallback(engine, monkeypatch):
    monkeypatch.setattr(engine.combiner, "combine", failing_combine)
    items = engine.recommend("alice", 3)
    assert items
    assert items[0].item_id == "s1"
    assert all(item.algorithm == Algorithm.POPULARITY for item in items)
    # fallback lists are not cached
    assert engine.cache.get(("recs", "alice", 3)) is None


def test_fallback_can_be_disabled(source, scorer, clock, monkeypatch):
    settings = RecommendationSettings(fallback_enabled=False)
    engine = RecommendationEngine(source, settings=settings, scorer=scorer, clock=clock)
    monkeypatch.setattr(engine.combiner, "combine", failing_combine)
    assert engine.recommend("alice", 3) == []


def test_results_are_cached_per_user_and_limit(engine):
    first = engine.recommend("alice", 5)
    assert engine.recommend("alice", 5) is first
    assert engine.recommend("alice", 4) is not first
    assert engine.recommend("alice", 5, use_cache=False) is not first


def test_invalidate_evicts_user_entries(engine):
    engine.recommend("alice", 5)
    engine.recommend("alice", 3)
    engine.recommend("bob", 5)
    assert engine.invalidate("alice") == 2
    assert engine.cache.get(("recs", "alice", 5)) is None
    assert engine.cache.get(("recs", "bob", 5)) is not None


def test_concurrent_requests_share_one_run(engine):
    results = []
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        results.append(engine.recommend("alice", 5))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert all(r is results[0] for r in results)


def test_matrix_is_shared_until_refreshed(engine, source, make_event):
    matrix = engine.matrix()
    assert engine.matrix() is matrix
    source.record(make_event("erin", "s5"))
    refreshed = engine.refresh_matrix()
    assert refreshed is not matrix
    assert "erin" in refreshed.users


def test_timeout_drops_slow_generators(source, clock):
    settings = RecommendationSettings(pipeline_timeout_seconds=0.3)
    engine = RecommendationEngine(source, settings=settings, scorer=SlowScorer(0.5), clock=clock)
    started = time.perf_counter()
    items = engine.recommend("alice", 5)
    assert time.perf_counter() - started < 1.0
    assert items
    slow = {Algorithm.CONTENT_BASED, Algorithm.CONTEXTUAL, Algorithm.DEEP}
    assert not {item.algorithm for item in items} & slow


def test_cancel_event_yields_fallback(engine):
    cancel = threading.Event()
    cancel.set()
    items = asyncio.run(engine.recommend_async("alice", 3, cancel_event=cancel))
    assert all(item.algorithm == Algorithm.POPULARITY for item in items)
    assert cancel.is_set()


def test_recommend_async_matches_sync(engine):
    items = asyncio.run(engine.recommend_async("alice", 5))
    assert [i.item_id for i in items] == [i.item_id for i in engine.recommend("alice", 5, use_cache=False)]


def test_collaborative_recommendations(engine):
    items = engine.collaborative_recommendations("alice", 4)
    assert [item.item_id for item in items] == ["s4"]
    assert items[0].algorithm == Algorithm.HYBRID_CF
    assert engine.collaborative_recommendations("carol", 4) == []


def test_slow_source_does_not_hold_the_caller(source, scorer, clock):
    settings = RecommendationSettings(pipeline_timeout_seconds=0.3)
    with RecommendationEngine(SlowSource(source, 2.0), settings=settings, scorer=scorer, clock=clock) as engine:
        started = time.perf_counter()
        items = engine.recommend("alice", 5, use_cache=False)
        elapsed = time.perf_counter() - started
    assert elapsed < 1.0
    # no matrix was ever built, so there is nothing popular to fall back on
    assert items == []


def test_collaborative_evidence_enters_the_ensemble_once(engine):
    assert [algorithm for algorithm, _ in engine.generators] == [
        Algorithm.HYBRID_CF,
        Algorithm.CONTENT_BASED,
        Algorithm.CONTEXTUAL,
        Algorithm.DEEP,
    ]


def test_collaborative_share_of_ensemble_score(source, scorer, clock):
    settings = RecommendationSettings(weights=EnsembleWeights(content=0.0, deep=0.0, contextual=0.0))
    engine = RecommendationEngine(source, settings=settings, scorer=scorer, clock=clock)
    items = engine.recommend("alice", 5)

    matrix = engine.matrix()
    user_cf = (1.8 / 1.81) / 10
    item_cf = item_similarity(matrix, "s1", "s4") / 10
    assert items[0].item_id == "s4"
    assert items[0].score == pytest.approx(0.3 * (0.7 * user_cf + 0.3 * item_cf))
