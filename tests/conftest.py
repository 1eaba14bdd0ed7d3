from datetime import datetime, timedelta, timezone

import pytest

from fusionrec.config import RecommendationSettings
from fusionrec.models.recommender import BehaviorEvent, EventKind, ItemType
from fusionrec.services.events import InMemoryEventSource
from fusionrec.services.matrix import build_matrix
from fusionrec.services.scoring import ConstantScorer

NOW = datetime(2024, 5, 1, 19, 0, tzinfo=timezone.utc)

SONGS = {
    "s1": {"title": "Midnight Dreams", "artist": "Nova", "genre": "rock"},
    "s2": {"title": "Paper Planes", "artist": "Lumen", "genre": "rock"},
    "s3": {"title": "Blue Hour", "artist": "Quartet Nine", "genre": "jazz"},
    "s4": {"title": "Static Bloom", "artist": "Nova", "genre": "rock"},
    "s5": {"title": "Slow River", "artist": "Delta", "genre": "folk"},
}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def make_event():
    def _make(user_id, item_id, kind=EventKind.LIKE, hours_ago=1, item_type=ItemType.SONG, **metadata):
        meta = {**SONGS.get(item_id, {}), **metadata}
        return BehaviorEvent(
            user_id=user_id,
            item_id=item_id,
            item_type=item_type,
            event_kind=kind,
            timestamp=NOW - timedelta(hours=hours_ago),
            metadata=meta,
        )
    return _make


@pytest.fixture
def events(make_event):
    """alice and bob overlap on s1/s2; dave links s1 to s4; carol shares nothing with alice."""
    return [
        make_event("alice", "s1", EventKind.LIKE, hours_ago=30),
        make_event("alice", "s2", EventKind.PLAYLIST_ADD, hours_ago=29),
        make_event("alice", "s3", EventKind.LIKE, hours_ago=28),
        make_event("bob", "s1", EventKind.PLAYLIST_ADD, hours_ago=20),
        make_event("bob", "s2", EventKind.LIKE, hours_ago=19),
        make_event("bob", "s4", EventKind.LIKE, hours_ago=18),
        make_event("carol", "s5", EventKind.LIKE, hours_ago=10),
        make_event("dave", "s1", EventKind.LIKE, hours_ago=5),
        make_event("dave", "s4", EventKind.LIKE, hours_ago=4),
    ]


@pytest.fixture
def source(events):
    return InMemoryEventSource(events)


@pytest.fixture
def matrix(events):
    return build_matrix(events)


@pytest.fixture
def scorer():
    return ConstantScorer(0.5)


@pytest.fixture
def settings():
    return RecommendationSettings(pipeline_timeout_seconds=5.0)
