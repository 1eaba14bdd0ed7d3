from __future__ import annotations

import threading
from typing import Optional, Protocol

import numpy as np


class Scorer(Protocol):
    """Model capability: affinity of a user for an item, in [0, 1]."""

    def __call__(self, user_id: str, item_id: str) -> float:
        ...


class RandomScorer:
    """Placeholder model returning uniform noise. Swap for a trained model in production."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def __call__(self, user_id: str, item_id: str) -> float:
        # Generator objects are not thread-safe
        with self._lock:
            return float(self._rng.random())


class ConstantScorer:
    def __init__(self, value: float = 0.5) -> None:
        self.value = min(1.0, max(0.0, value))

    def __call__(self, user_id: str, item_id: str) -> float:
        return self.value
