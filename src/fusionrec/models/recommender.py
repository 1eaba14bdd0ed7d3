from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class EventKind(str, Enum):
    LIKE = "LIKE"
    DISLIKE = "DISLIKE"
    PLAYLIST_ADD = "PLAYLIST_ADD"
    REVIEW_WRITE = "REVIEW_WRITE"
    RECOMMENDATION_CLICK = "RECOMMENDATION_CLICK"
    SEARCH = "SEARCH"
    PROFILE_UPDATE = "PROFILE_UPDATE"
    REFRESH_RECOMMENDATIONS = "REFRESH_RECOMMENDATIONS"
    SESSION_START = "SESSION_START"
    SESSION_END = "SESSION_END"


class ItemType(str, Enum):
    SONG = "SONG"
    ARTIST = "ARTIST"
    ALBUM = "ALBUM"
    GENRE = "GENRE"
    PLAYLIST = "PLAYLIST"


class Algorithm(str, Enum):
    USER_CF = "USER_CF"
    ITEM_CF = "ITEM_CF"
    HYBRID_CF = "HYBRID_CF"
    CONTENT_BASED = "CONTENT_BASED"
    CONTEXTUAL = "CONTEXTUAL"
    DEEP = "DEEP"
    ENSEMBLE = "ENSEMBLE"
    POPULARITY = "POPULARITY"


class BehaviorEvent(BaseModel):
    """One recorded user action. `metadata` may carry genre/artist/title/rating/duration_seconds."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    item_id: str
    item_type: ItemType = ItemType.SONG
    event_kind: EventKind
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def rating(self) -> Optional[float]:
        raw = self.metadata.get("rating")
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None

    @property
    def is_positive(self) -> bool:
        if self.event_kind == EventKind.REVIEW_WRITE:
            rating = self.rating
            return rating is None or rating >= 4
        return self.event_kind in (EventKind.LIKE, EventKind.PLAYLIST_ADD, EventKind.RECOMMENDATION_CLICK)

    @property
    def is_negative(self) -> bool:
        if self.event_kind == EventKind.REVIEW_WRITE:
            rating = self.rating
            return rating is not None and rating <= 2
        return self.event_kind == EventKind.DISLIKE


class CandidateItem(BaseModel):
    """Scored candidate produced by a generator. Never mutated; use the with_* helpers."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    score: float
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    algorithm: Algorithm
    features: Dict[str, Any] = Field(default_factory=dict)

    def with_score(self, score: float) -> "CandidateItem":
        return self.model_copy(update={"score": score})

    def with_algorithm(self, algorithm: Algorithm) -> "CandidateItem":
        return self.model_copy(update={"algorithm": algorithm})

    def weighted(self, weight: float) -> "CandidateItem":
        return self.with_score(self.score * weight)

    @property
    def title(self) -> Optional[str]:
        return self.features.get("title")

    @property
    def artist(self) -> Optional[str]:
        return self.features.get("artist")

    @property
    def genre(self) -> Optional[str]:
        return self.features.get("genre")


class SimilarityPair(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: str
    similarity: float = Field(ge=-1.0, le=1.0)


class RecommendationItem(BaseModel):
    item_id: str
    score: float
    confidence: float
    algorithm: Algorithm
    reason: Optional[str] = None


class BehaviorAnalysis(BaseModel):
    """Engagement summary of a user's recent events."""
    total_events: int = 0
    positive_events: int = 0
    negative_events: int = 0
    most_active_hour: int = 18
    engagement_score: float = 0.0

    @property
    def positivity_ratio(self) -> float:
        return self.positive_events / self.total_events if self.total_events else 0.0
