"""Experiment router: deterministic per-request strategy assignment.

The router owns one immutable ``ExperimentConfig`` and replaces it wholesale
on update, so a request always sees a consistent configuration.
"""
from __future__ import annotations

import hashlib
import logging
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .config import ExperimentSettings, MatchingSettings
from .pipelines.normalization import IntakeAnswers

logger = logging.getLogger(__name__)


class Strategy(str, Enum):
    """Matching strategy."""
    DETERMINISTIC = "deterministic"
    SEMANTIC_DETERMINISTIC = "semantic+deterministic"
    SEMANTIC_GENERATIVE = "semantic+generative"


class ExperimentConfig(BaseModel):
    """Immutable experiment configuration."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    generative_percentage: int = Field(default=100, ge=0, le=100)
    semantic_percentage: int = Field(default=0, ge=0, le=100)
    default_strategy: Strategy = Strategy.SEMANTIC_GENERATIVE
    semantic_threshold: float = Field(default=0.2, ge=-1.0, le=1.0)
    students_count: int = Field(default=5, ge=1, le=50)
    faculty_count: int = Field(default=4, ge=1, le=50)
    alumni_count: int = Field(default=4, ge=0, le=50)

    @model_validator(mode="after")
    def check_percentages(self) -> ExperimentConfig:
        if self.generative_percentage + self.semantic_percentage > 100:
            raise ValueError("generative_percentage + semantic_percentage must not exceed 100")
        return self

    @classmethod
    def from_settings(cls, experiment: ExperimentSettings, matching: MatchingSettings) -> ExperimentConfig:
        return cls(
            enabled=experiment.enabled,
            generative_percentage=experiment.generative_percentage,
            semantic_percentage=experiment.semantic_percentage,
            default_strategy=Strategy(experiment.default_strategy),
            semantic_threshold=matching.min_similarity,
            students_count=matching.students_count,
            faculty_count=matching.faculty_count,
            alumni_count=matching.alumni_count,
        )


def hash_input(answers: IntakeAnswers) -> str:
    return "|".join([
        answers.description,
        ",".join(answers.interests),
        answers.grade_level,
        answers.timeline,
    ])


def bucket_for(answers: IntakeAnswers) -> int:
    """Stable bucket in [0, 100) for a questionnaire."""
    digest = hashlib.sha256(hash_input(answers).encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


class ExperimentRouter:
    """Assigns a ``Strategy`` per request from the current config."""

    def __init__(self, config: ExperimentConfig | None = None):
        self._config = config or ExperimentConfig()

    @property
    def config(self) -> ExperimentConfig:
        return self._config

    def update(self, **changes: Any) -> ExperimentConfig:
        """Validate and swap in a new configuration.

        Raises:
            pydantic.ValidationError: If the merged configuration is invalid
        """
        merged = {**self._config.model_dump(), **changes}
        config = ExperimentConfig.model_validate(merged)
        self._config = config
        logger.info(f"Experiment config updated: {changes}")
        return config

    def assign(self, answers: IntakeAnswers, override: Strategy | None = None) -> Strategy:
        if override is not None:
            return Strategy(override)

        config = self._config
        if not config.enabled:
            return config.default_strategy

        bucket = bucket_for(answers)
        if bucket < config.generative_percentage:
            return Strategy.SEMANTIC_GENERATIVE
        if bucket < config.generative_percentage + config.semantic_percentage:
            return Strategy.SEMANTIC_DETERMINISTIC
        return Strategy.DETERMINISTIC

    def assignment_info(self, answers: IntakeAnswers) -> dict[str, Any]:
        """Debug view of how a questionnaire is routed."""
        raw = hash_input(answers)
        return {
            "enabled": self._config.enabled,
            "hash_input": raw[:50] + ("..." if len(raw) > 50 else ""),
            "bucket": bucket_for(answers),
            "strategy": self.assign(answers).value,
        }
