"""Error taxonomy for the matching pipeline.

Only ``CorpusFatal`` is allowed to escape the service; everything else is
absorbed by the orchestrator and reflected in ``strategy_used``.
"""
from __future__ import annotations


class MatchingError(Exception):
    """Base class for matching pipeline errors."""
    pass


class InputDegraded(MatchingError):
    """A questionnaire field was missing or malformed and got its default."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class StageUnavailable(MatchingError):
    """An optional stage failed, timed out, or returned unverifiable output."""

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"{stage} unavailable: {reason}")
        self.stage = stage
        self.reason = reason


class EmbeddingError(StageUnavailable):
    """Raised when embedding computation fails."""

    def __init__(self, reason: str) -> None:
        super().__init__("embedding", reason)


class ProviderError(StageUnavailable):
    """A completion provider returned an unusable response."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(f"provider {provider}", reason)
        self.provider = provider


class SelectionRejected(StageUnavailable):
    """Generated selection failed structural or shortlist validation."""

    def __init__(self, reason: str) -> None:
        super().__init__("generative selection", reason)


class CorpusFatal(MatchingError):
    """Corpus or embedding index cannot be loaded; aborts startup."""
    pass
