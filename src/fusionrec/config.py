from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field

from fusionrec.models.recommender import Algorithm, ItemType

ENV_PREFIX = "FUSIONREC_"


def _env(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_float(name: str, default: float) -> float:
    return float(_env(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(_env(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "1" if default else "0").lower() in {"1", "true", "yes"}


class EnsembleWeights(BaseModel):
    """Multiplicative discount per strategy. They need not sum to 1."""
    content: float = 0.4
    collaborative: float = 0.3
    deep: float = 0.2
    contextual: float = 0.1

    def for_algorithm(self, algorithm: Algorithm) -> float:
        if algorithm == Algorithm.CONTENT_BASED:
            return self.content
        if algorithm in (Algorithm.USER_CF, Algorithm.ITEM_CF, Algorithm.HYBRID_CF):
            return self.collaborative
        if algorithm == Algorithm.DEEP:
            return self.deep
        if algorithm == Algorithm.CONTEXTUAL:
            return self.contextual
        return 1.0


class DiversitySettings(BaseModel):
    lambda_param: float = Field(default=0.7, ge=0.0, le=1.0)
    duplicate_title_threshold: float = 0.8
    max_same_artist: int = Field(default=2, ge=1)
    # None means max(1, N // 3) for an output of size N
    max_same_genre: Optional[int] = Field(default=None, ge=1)
    same_algorithm_similarity: float = 0.8
    baseline_similarity: float = 0.1

    def genre_cap(self, target: int) -> int:
        if self.max_same_genre is not None:
            return self.max_same_genre
        return max(1, target // 3)


class RecommendationSettings(BaseModel):
    window_days: int = 30
    item_type: ItemType = ItemType.SONG
    min_similarity: float = 0.1
    max_similar_users: int = 50
    max_similar_items: int = 20
    seed_rating_threshold: float = 0.5
    normalization_divisor: float = 10.0
    ensemble_slack: int = Field(default=2, ge=1)
    weights: EnsembleWeights = Field(default_factory=EnsembleWeights)
    diversity: DiversitySettings = Field(default_factory=DiversitySettings)
    cache_ttl_seconds: float = 3600.0
    cache_max_entries: int = 2000
    matrix_ttl_seconds: float = 300.0
    pipeline_timeout_seconds: Optional[float] = 5.0
    worker_threads: int = Field(default=8, ge=1)
    fallback_enabled: bool = True

    @classmethod
    def from_env(cls) -> "RecommendationSettings":
        """Build settings from FUSIONREC_* environment variables, falling back to defaults."""
        defaults = cls()
        timeout_raw = _env("PIPELINE_TIMEOUT_SECONDS", "")
        max_genre_raw = _env("MAX_SAME_GENRE", "")
        return cls(
            window_days=_env_int("WINDOW_DAYS", defaults.window_days),
            item_type=ItemType(_env("ITEM_TYPE", defaults.item_type.value).upper()),
            min_similarity=_env_float("MIN_SIMILARITY", defaults.min_similarity),
            normalization_divisor=_env_float("NORMALIZATION_DIVISOR", defaults.normalization_divisor),
            ensemble_slack=_env_int("ENSEMBLE_SLACK", defaults.ensemble_slack),
            weights=EnsembleWeights(
                content=_env_float("WEIGHT_CONTENT", defaults.weights.content),
                collaborative=_env_float("WEIGHT_COLLABORATIVE", defaults.weights.collaborative),
                deep=_env_float("WEIGHT_DEEP", defaults.weights.deep),
                contextual=_env_float("WEIGHT_CONTEXTUAL", defaults.weights.contextual),
            ),
            diversity=DiversitySettings(
                lambda_param=_env_float("MMR_LAMBDA", defaults.diversity.lambda_param),
                duplicate_title_threshold=_env_float(
                    "DUPLICATE_TITLE_THRESHOLD", defaults.diversity.duplicate_title_threshold
                ),
                max_same_artist=_env_int("MAX_SAME_ARTIST", defaults.diversity.max_same_artist),
                max_same_genre=int(max_genre_raw) if max_genre_raw else None,
            ),
            cache_ttl_seconds=_env_float("CACHE_TTL_SECONDS", defaults.cache_ttl_seconds),
            cache_max_entries=_env_int("CACHE_MAX_ENTRIES", defaults.cache_max_entries),
            matrix_ttl_seconds=_env_float("MATRIX_TTL_SECONDS", defaults.matrix_ttl_seconds),
            pipeline_timeout_seconds=float(timeout_raw) if timeout_raw else defaults.pipeline_timeout_seconds,
            fallback_enabled=_env_bool("FALLBACK_ENABLED", defaults.fallback_enabled),
            worker_threads=_env_int("WORKER_THREADS", defaults.worker_threads),
        )
