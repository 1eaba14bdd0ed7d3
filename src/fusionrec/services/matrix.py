from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from fusionrec.errors import MatrixFrozenError
from fusionrec.models.recommender import BehaviorAnalysis, BehaviorEvent, EventKind, ItemType
from fusionrec.services.events import EventSource

LOGGER = logging.getLogger(__name__)

# Weight of the stored rating when a (user, item) pair is seen again.
SMOOTHING_KEEP = 0.7
SMOOTHING_NEW = 0.3

_FIXED_SCORES: Dict[EventKind, float] = {
    EventKind.LIKE: 1.0,
    EventKind.PLAYLIST_ADD: 0.9,
    EventKind.RECOMMENDATION_CLICK: 0.7,
    EventKind.SEARCH: 0.5,
    EventKind.PROFILE_UPDATE: 0.6,
    EventKind.REFRESH_RECOMMENDATIONS: 0.4,
    EventKind.SESSION_START: 0.3,
    EventKind.SESSION_END: 0.3,
    EventKind.DISLIKE: 0.0,
}
DEFAULT_REVIEW_SCORE = 0.7

_METADATA_KEYS = ("genre", "artist", "title")


def implicit_score(event: BehaviorEvent) -> float:
    """Preference strength in [0, 1] inferred from the kind of action."""
    if event.event_kind == EventKind.REVIEW_WRITE:
        rating = event.rating
        score = rating / 5.0 if rating is not None and rating > 0 else DEFAULT_REVIEW_SCORE
    else:
        score = _FIXED_SCORES[event.event_kind]
    return min(1.0, max(0.0, score))


class UserItemMatrix:
    """Sparse user -> item -> rating map with its item -> users inverse.

    Built once per computation and frozen before the candidate stage so that
    concurrent generators only ever read it.
    """

    def __init__(self) -> None:
        self._ratings: Dict[str, Dict[str, float]] = {}
        self._item_users: Dict[str, Set[str]] = {}
        self._item_meta: Dict[str, Dict[str, Any]] = {}
        self._frozen = False

    def add_rating(self, user_id: str, item_id: str, rating: float,
                   metadata: Optional[Mapping[str, Any]] = None) -> None:
        if self._frozen:
            raise MatrixFrozenError("matrix is read-only once frozen")
        rating = min(1.0, max(0.0, float(rating)))
        row = self._ratings.setdefault(user_id, {})
        if item_id in row:
            row[item_id] = SMOOTHING_KEEP * row[item_id] + SMOOTHING_NEW * rating
        else:
            row[item_id] = rating
        self._item_users.setdefault(item_id, set()).add(user_id)

        if metadata:
            meta = self._item_meta.setdefault(item_id, {})
            for key in _METADATA_KEYS:
                val = metadata.get(key)
                if val:
                    meta[key] = val

    def freeze(self) -> "UserItemMatrix":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def rating(self, user_id: str, item_id: str) -> float:
        return self._ratings.get(user_id, {}).get(item_id, 0.0)

    def user_ratings(self, user_id: str) -> Mapping[str, float]:
        return self._ratings.get(user_id, {})

    def user_items(self, user_id: str) -> Set[str]:
        return set(self._ratings.get(user_id, {}))

    def item_users(self, item_id: str) -> Set[str]:
        return set(self._item_users.get(item_id, ()))

    def item_metadata(self, item_id: str) -> Dict[str, Any]:
        return dict(self._item_meta.get(item_id, {}))

    @property
    def users(self) -> List[str]:
        return list(self._ratings)

    @property
    def items(self) -> List[str]:
        return list(self._item_users)

    @property
    def user_count(self) -> int:
        return len(self._ratings)

    @property
    def item_count(self) -> int:
        return len(self._item_users)

    def is_empty(self) -> bool:
        return not self._ratings

    def popular_items(self, limit: Optional[int] = None) -> List[Tuple[str, int, float]]:
        """(item_id, rater_count, mean_rating) ordered by rater count, then mean rating."""
        rows = []
        for item_id, users in self._item_users.items():
            mean = sum(self._ratings[u][item_id] for u in users) / len(users)
            rows.append((item_id, len(users), mean))
        rows.sort(key=lambda r: (-r[1], -r[2], r[0]))
        return rows[:limit] if limit is not None else rows


def build_matrix(events: Iterable[BehaviorEvent], item_type: Optional[ItemType] = ItemType.SONG) -> UserItemMatrix:
    """Fold events (oldest first) into a frozen matrix. `item_type=None` keeps every type."""
    matrix = UserItemMatrix()
    for event in sorted(events, key=lambda e: e.timestamp):
        if item_type is not None and event.item_type != item_type:
            continue
        matrix.add_rating(event.user_id, event.item_id, implicit_score(event), event.metadata)
    return matrix.freeze()


def analyze_behavior(events: Iterable[BehaviorEvent]) -> BehaviorAnalysis:
    events = list(events)
    if not events:
        return BehaviorAnalysis()
    hours: Dict[int, int] = {}
    for ev in events:
        hours[ev.timestamp.hour] = hours.get(ev.timestamp.hour, 0) + 1
    # most frequent hour, earliest hour on ties
    most_active = min(hours, key=lambda h: (-hours[h], h))
    return BehaviorAnalysis(
        total_events=len(events),
        positive_events=sum(1 for ev in events if ev.is_positive),
        negative_events=sum(1 for ev in events if ev.is_negative),
        most_active_hour=most_active,
        engagement_score=sum(implicit_score(ev) for ev in events) / len(events),
    )


class MatrixBuilder:
    """Fetches the trailing event window from an EventSource and builds the matrix."""

    def __init__(self, source: EventSource, *, window_days: int = 30,
                 item_type: Optional[ItemType] = ItemType.SONG,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)) -> None:
        self.source = source
        self.window_days = window_days
        self.item_type = item_type
        self.clock = clock

    def since(self) -> datetime:
        return self.clock() - timedelta(days=self.window_days)

    def build(self) -> UserItemMatrix:
        try:
            events = self.source.recent_events(None, self.since())
        except Exception as exc:
            LOGGER.warning("Event source unavailable (%s); using empty matrix", exc)
            return UserItemMatrix().freeze()
        matrix = build_matrix(events, self.item_type)
        LOGGER.info(
            "Built user-item matrix from %d events (users=%d, items=%d)",
            len(events), matrix.user_count, matrix.item_count,
        )
        return matrix

    def user_events(self, user_id: str) -> List[BehaviorEvent]:
        try:
            return self.source.recent_events(user_id, self.since())
        except Exception as exc:
            LOGGER.warning("Event source unavailable for user %s (%s)", user_id, exc)
            return []
