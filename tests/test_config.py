import pytest
from pydantic import ValidationError

from fusionrec.config import DiversitySettings, EnsembleWeights, RecommendationSettings
from fusionrec.models.recommender import Algorithm, ItemType


def test_defaults_without_environment(monkeypatch):
    for name in ("FUSIONREC_WINDOW_DAYS", "FUSIONREC_PIPELINE_TIMEOUT_SECONDS", "FUSIONREC_MAX_SAME_GENRE"):
        monkeypatch.delenv(name, raising=False)
    settings = RecommendationSettings.from_env()
    assert settings.window_days == 30
    assert settings.normalization_divisor == 10.0
    assert settings.pipeline_timeout_seconds == 5.0
    assert settings.diversity.max_same_genre is None
    assert settings.cache_ttl_seconds == 3600.0


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("FUSIONREC_WINDOW_DAYS", "7")
    monkeypatch.setenv("FUSIONREC_ITEM_TYPE", "album")
    monkeypatch.setenv("FUSIONREC_WEIGHT_CONTENT", "0.5")
    monkeypatch.setenv("FUSIONREC_MAX_SAME_GENRE", "3")
    monkeypatch.setenv("FUSIONREC_PIPELINE_TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("FUSIONREC_FALLBACK_ENABLED", "false")
    monkeypatch.setenv("FUSIONREC_WORKER_THREADS", "3")
    settings = RecommendationSettings.from_env()
    assert settings.window_days == 7
    assert settings.item_type == ItemType.ALBUM
    assert settings.weights.content == 0.5
    assert settings.weights.collaborative == 0.3
    assert settings.diversity.genre_cap(30) == 3
    assert settings.pipeline_timeout_seconds == 1.5
    assert settings.fallback_enabled is False
    assert settings.worker_threads == 3


def test_collaborative_weight_applies_to_blended_list():
    weights = EnsembleWeights()
    assert weights.for_algorithm(Algorithm.HYBRID_CF) == 0.3
    assert weights.for_algorithm(Algorithm.USER_CF) == 0.3
    assert weights.for_algorithm(Algorithm.ITEM_CF) == 0.3
    assert weights.for_algorithm(Algorithm.CONTENT_BASED) == 0.4
    assert weights.for_algorithm(Algorithm.DEEP) == 0.2
    assert weights.for_algorithm(Algorithm.CONTEXTUAL) == 0.1
    assert weights.for_algorithm(Algorithm.POPULARITY) == 1.0


@pytest.mark.parametrize("target, cap", [(1, 1), (2, 1), (3, 1), (6, 2), (10, 3)])
def test_default_genre_cap(target, cap):
    assert DiversitySettings().genre_cap(target) == cap


def test_invalid_caps_are_rejected():
    with pytest.raises(ValidationError):
        DiversitySettings(max_same_artist=0)
    with pytest.raises(ValidationError):
        DiversitySettings(lambda_param=1.5)
