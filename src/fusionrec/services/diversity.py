from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from fusionrec.config import DiversitySettings
from fusionrec.models.recommender import CandidateItem

LOGGER = logging.getLogger(__name__)

_WS = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    return _WS.sub(" ", title.strip().lower())


def title_similarity(a: str, b: str) -> float:
    """1 - levenshtein(a, b) / max(len(a), len(b)) on normalized titles."""
    a, b = normalize_title(a), normalize_title(b)
    if a == b:
        return 1.0
    return float(Levenshtein.normalized_similarity(a, b))


def _key(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip().lower()
    return value or None


class DiversityReranker:
    """Maximal Marginal Relevance with hard artist/genre caps and near-duplicate title suppression.

    The highest-relevance candidate always leads. Each further round picks
    the pool item maximising ``lambda * relevance - (1 - lambda) * max_sim``
    against what is already selected, then admits it only if its title is not
    a near-duplicate of an accepted title and neither its artist nor its
    genre is at cap. A rejected item leaves the pool for good. The output is
    never padded.
    """

    def __init__(self, settings: Optional[DiversitySettings] = None) -> None:
        self.settings = settings or DiversitySettings()

    def similarity(self, a: CandidateItem, b: CandidateItem) -> float:
        if a.algorithm == b.algorithm:
            return self.settings.same_algorithm_similarity
        return self.settings.baseline_similarity

    def rerank(self, candidates: Sequence[CandidateItem], target: int) -> List[CandidateItem]:
        if target <= 0 or not candidates:
            return []

        lam = self.settings.lambda_param
        artist_cap = self.settings.max_same_artist
        genre_cap = self.settings.genre_cap(target)

        pool = list(candidates)
        first = max(range(len(pool)), key=lambda i: (pool[i].score, -i))
        selected: List[CandidateItem] = []
        titles: List[str] = []
        artist_count: Dict[str, int] = {}
        genre_count: Dict[str, int] = {}

        def accept(item: CandidateItem) -> None:
            selected.append(item)
            if item.title:
                titles.append(item.title)
            artist, genre = _key(item.artist), _key(item.genre)
            if artist:
                artist_count[artist] = artist_count.get(artist, 0) + 1
            if genre:
                genre_count[genre] = genre_count.get(genre, 0) + 1

        accept(pool.pop(first))
        rejected = 0

        while len(selected) < target and pool:
            best_idx = 0
            best_mmr = float("-inf")
            for idx, cand in enumerate(pool):
                max_sim = max(self.similarity(cand, s) for s in selected)
                mmr = lam * cand.score - (1 - lam) * max_sim
                if mmr > best_mmr:
                    best_mmr = mmr
                    best_idx = idx
            cand = pool.pop(best_idx)

            if cand.title and any(
                title_similarity(cand.title, t) >= self.settings.duplicate_title_threshold for t in titles
            ):
                rejected += 1
                continue
            artist = _key(cand.artist)
            if artist and artist_count.get(artist, 0) >= artist_cap:
                rejected += 1
                continue
            genre = _key(cand.genre)
            if genre and genre_count.get(genre, 0) >= genre_cap:
                rejected += 1
                continue
            accept(cand)

        if rejected:
            LOGGER.debug("Diversity rerank skipped %d candidates (kept %d of %d)",
                         rejected, len(selected), len(candidates))
        return selected
