from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from fusionrec.config import EnsembleWeights
from fusionrec.errors import ComputationError
from fusionrec.models.recommender import Algorithm, CandidateItem

LOGGER = logging.getLogger(__name__)


def combine_weighted(weighted_lists: Iterable[Tuple[Sequence[CandidateItem], float]],
                     limit: Optional[int] = None) -> List[CandidateItem]:
    """Merge (candidates, weight) lists by item_id.

    Each score is multiplied by its list's weight. An item that shows up again
    gets the sum of its weighted scores and is relabeled ENSEMBLE. Output is
    sorted by score descending; ties keep first-seen order.
    """
    combined: Dict[str, CandidateItem] = {}
    for candidates, weight in weighted_lists:
        for item in candidates:
            existing = combined.get(item.item_id)
            if existing is None:
                combined[item.item_id] = item.weighted(weight)
                continue
            combined[item.item_id] = existing.with_score(
                existing.score + item.score * weight
            ).with_algorithm(Algorithm.ENSEMBLE)

    ranked = sorted(combined.values(), key=lambda c: -c.score)
    return ranked if limit is None else ranked[:limit]


class EnsembleCombiner:
    def __init__(self, weights: Optional[EnsembleWeights] = None, slack: int = 2) -> None:
        if slack < 1:
            raise ValueError("slack must be >= 1")
        self.weights = weights or EnsembleWeights()
        self.slack = slack

    def combine(self, lists: Iterable[Tuple[Algorithm, Sequence[CandidateItem]]],
                limit: int) -> List[CandidateItem]:
        """Weight each strategy's list by its configured weight and keep `limit * slack` items."""
        try:
            weighted = [(items, self.weights.for_algorithm(algorithm)) for algorithm, items in lists]
            return combine_weighted(weighted, limit * self.slack)
        except Exception as exc:
            raise ComputationError(f"ensemble combination failed: {exc}") from exc
