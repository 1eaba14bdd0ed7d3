"""Music recommendation pipeline fusing collaborative, content, contextual and model-based signals."""

from fusionrec.config import DiversitySettings, EnsembleWeights, RecommendationSettings
from fusionrec.errors import (
    ComputationError,
    DataUnavailableError,
    FusionRecError,
    InvalidInputError,
    MatrixFrozenError,
)
from fusionrec.models.recommender import (
    Algorithm,
    BehaviorEvent,
    CandidateItem,
    EventKind,
    ItemType,
    RecommendationItem,
)
from fusionrec.services.events import CsvEventSource, InMemoryEventSource
from fusionrec.services.preferences import StaticPreferenceProvider
from fusionrec.services.recommender import RecommendationEngine

__version__ = "0.1.0"

__all__ = [
    "Algorithm",
    "BehaviorEvent",
    "CandidateItem",
    "ComputationError",
    "CsvEventSource",
    "DataUnavailableError",
    "DiversitySettings",
    "EnsembleWeights",
    "EventKind",
    "FusionRecError",
    "InMemoryEventSource",
    "InvalidInputError",
    "ItemType",
    "MatrixFrozenError",
    "RecommendationEngine",
    "RecommendationItem",
    "RecommendationSettings",
    "StaticPreferenceProvider",
]
