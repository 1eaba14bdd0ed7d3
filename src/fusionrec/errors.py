class FusionRecError(Exception):
    """Base class for every error raised by the recommendation pipeline."""


class DataUnavailableError(FusionRecError):
    """Event source or preference vector could not be read."""


class ComputationError(FusionRecError):
    """Unexpected failure inside similarity, combination or reranking."""


class InvalidInputError(FusionRecError, ValueError):
    """Caller supplied arguments the pipeline cannot serve (e.g. limit <= 0)."""


class MatrixFrozenError(FusionRecError):
    """A frozen UserItemMatrix was written to."""


class GenerationCancelled(FusionRecError):
    """Raised inside a generator when its request was cancelled or timed out."""
