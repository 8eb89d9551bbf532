"""Vocabulary: the single keyword/synonym configuration object.

Normalization, scoring, retrieval and narrative helpers all receive the same
``Vocabulary`` instance so the tables cannot drift between call sites.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from config import vocabulary as tables

logger = logging.getLogger(__name__)


class GradeBand(str, Enum):
    """Coarse developmental stage."""
    LOWER = "lower"
    INTERMEDIATE = "intermediate"
    MIDDLE = "middle"
    UPPER = "upper"


ALL_GRADES = "all"


@dataclass(frozen=True)
class LabelRule:
    """A narrative label triggered by interests and/or traits."""
    label: str
    interests: frozenset[str] = frozenset()
    traits: frozenset[str] = frozenset()

    def applies(self, interests: set[str], traits: set[str] | None = None) -> bool:
        if self.interests & interests:
            return True
        return bool(traits and self.traits & traits)


@dataclass(frozen=True)
class LabelSet:
    """Base labels plus ordered conditional rules, capped at ``limit``."""
    base: tuple[str, ...]
    rules: tuple[LabelRule, ...]
    limit: int


@dataclass(frozen=True)
class Vocabulary:
    """Immutable keyword tables shared by every matching component."""
    stop_words: frozenset[str]
    grade_synonyms: Mapping[str, GradeBand]
    grade_neighbors: Mapping[GradeBand, tuple[GradeBand, ...]]
    title_grade_hints: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...]
    interest_expansion: Mapping[str, tuple[str, ...]]
    primary_interest_synonyms: Mapping[str, tuple[str, ...]]
    alumni_gate_patterns: Mapping[str, re.Pattern]
    video_hosts: tuple[str, ...]
    key_insights: LabelSet
    recommended_programs: LabelSet
    default_grade: GradeBand = field(default=GradeBand.MIDDLE)

    @classmethod
    def default(cls) -> Vocabulary:
        """Build the vocabulary from ``config.vocabulary``."""
        grade_synonyms: dict[str, GradeBand] = {}
        for entry in tables.GRADE_SYNONYMS:
            band = GradeBand(entry["band"])
            for synonym in entry["synonyms"]:
                grade_synonyms[synonym.lower()] = band

        vocabulary = cls(
            stop_words=frozenset(w.lower() for w in tables.STOP_WORDS),
            grade_synonyms=MappingProxyType(grade_synonyms),
            grade_neighbors=MappingProxyType({
                GradeBand(band): tuple(GradeBand(n) for n in neighbors)
                for band, neighbors in tables.GRADE_NEIGHBORS.items()
            }),
            title_grade_hints=tuple(
                (tuple(h["contains"]), tuple(h["bands"])) for h in tables.TITLE_GRADE_HINTS
            ),
            interest_expansion=MappingProxyType({
                category: tuple(keywords) for category, keywords in tables.INTEREST_EXPANSION.items()
            }),
            primary_interest_synonyms=MappingProxyType({
                interest: tuple(synonyms) for interest, synonyms in tables.PRIMARY_INTEREST_SYNONYMS.items()
            }),
            alumni_gate_patterns=MappingProxyType({
                name: re.compile(pattern, re.IGNORECASE)
                for name, pattern in tables.ALUMNI_GATE_PATTERNS.items()
            }),
            video_hosts=tuple(tables.VIDEO_HOSTS),
            key_insights=_label_set(tables.KEY_INSIGHTS),
            recommended_programs=_label_set(tables.RECOMMENDED_PROGRAMS),
        )
        logger.debug(
            f"Loaded vocabulary: {len(grade_synonyms)} grade synonyms, "
            f"{len(vocabulary.interest_expansion)} interest categories"
        )
        return vocabulary

    def is_video_url(self, url: str | None) -> bool:
        """Whether ``url`` points at a recognized short-form video host."""
        return bool(url) and any(host in url for host in self.video_hosts)

    def neighbors_of(self, band: GradeBand) -> tuple[GradeBand, ...]:
        return self.grade_neighbors.get(band, ())

    def grade_bands_from_title(self, title: str | None) -> tuple[str, ...]:
        """Derive grade bands from a staff title; ``("all",)`` when nothing matches."""
        lower_title = (title or "").lower()
        if not lower_title:
            return (ALL_GRADES,)
        for needles, bands in self.title_grade_hints:
            if any(needle in lower_title for needle in needles):
                return bands
        return (ALL_GRADES,)


def _label_set(raw: dict) -> LabelSet:
    return LabelSet(
        base=tuple(raw["base"]),
        rules=tuple(
            LabelRule(
                label=rule["label"],
                interests=frozenset(rule.get("interests", [])),
                traits=frozenset(rule.get("traits", [])),
            )
            for rule in raw["rules"]
        ),
        limit=int(raw["limit"]),
    )
