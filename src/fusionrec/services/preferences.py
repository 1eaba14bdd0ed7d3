from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Protocol

from fusionrec.models.recommender import BehaviorEvent
from fusionrec.services.matrix import MatrixBuilder, implicit_score

LOGGER = logging.getLogger(__name__)


class PreferenceProvider(Protocol):
    def genre_preferences(self, user_id: str) -> Dict[str, float]:
        ...

    def artist_preferences(self, user_id: str) -> Dict[str, float]:
        ...


class StaticPreferenceProvider:
    """Preferences supplied up front, e.g. from a profile store snapshot."""

    def __init__(self, genres: Optional[Mapping[str, Mapping[str, float]]] = None,
                 artists: Optional[Mapping[str, Mapping[str, float]]] = None) -> None:
        self._genres = {u: dict(p) for u, p in (genres or {}).items()}
        self._artists = {u: dict(p) for u, p in (artists or {}).items()}

    def genre_preferences(self, user_id: str) -> Dict[str, float]:
        return dict(self._genres.get(user_id, {}))

    def artist_preferences(self, user_id: str) -> Dict[str, float]:
        return dict(self._artists.get(user_id, {}))


def aggregate_preferences(events: Iterable[BehaviorEvent], key: str) -> Dict[str, float]:
    """Mean implicit score per lowercased metadata value, clamped to [0, 1]."""
    totals: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    for event in events:
        value = event.metadata.get(key)
        if not value:
            continue
        name = str(value).strip().lower()
        totals[name] = totals.get(name, 0.0) + implicit_score(event)
        counts[name] = counts.get(name, 0) + 1
    return {name: min(1.0, max(0.0, totals[name] / counts[name])) for name in totals}


class BehaviorPreferenceProvider:
    """Derives genre/artist preferences from the user's recent events."""

    def __init__(self, builder: MatrixBuilder) -> None:
        self.builder = builder

    def genre_preferences(self, user_id: str) -> Dict[str, float]:
        return aggregate_preferences(self.builder.user_events(user_id), "genre")

    def artist_preferences(self, user_id: str) -> Dict[str, float]:
        return aggregate_preferences(self.builder.user_events(user_id), "artist")
