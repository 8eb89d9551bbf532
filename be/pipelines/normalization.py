"""Intake questionnaire normalization.

Turns a raw questionnaire mapping into ``IntakeAnswers`` and a
``MatchingProfile``. Nothing here raises: malformed fields degrade to their
defaults.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from rapidfuzz import fuzz, process

from ..errors import InputDegraded
from ..vocabulary import GradeBand, Vocabulary

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"[a-zA-Z][a-zA-Z\-]+")

PRIMARY_TOKEN_LIMIT = 5
DESCRIPTION_TOKEN_LIMIT = 7

# (snake_case field, accepted keys)
_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    "child_description": ("child_description", "childDescription"),
    "three_words": ("three_words", "threeWords"),
    "interests": ("interests",),
    "family_values": ("family_values", "familyValues"),
    "grade_level": ("grade_level", "gradeLevel"),
    "timeline": ("timeline",),
    "selected_characteristics": ("selected_characteristics", "selectedCharacteristics"),
    "additional_notes": ("additional_notes", "additionalNotes"),
}


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize smart quotes and dashes typed into free-text answers."""
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")
    text = text.replace('–', '-').replace('—', '-')
    return text


@dataclass(frozen=True)
class IntakeAnswers:
    """Coerced questionnaire answers."""
    child_description: str = ""
    three_words: str = ""
    interests: tuple[str, ...] = ()
    family_values: tuple[str, ...] = ()
    grade_level: str = ""
    timeline: str = ""
    selected_characteristics: tuple[str, ...] = ()
    additional_notes: str = ""

    @property
    def description(self) -> str:
        return self.three_words or self.child_description


@dataclass(frozen=True)
class MatchingProfile:
    """Normalized view of the family used by every scoring stage."""
    grade_band: GradeBand
    traits: tuple[str, ...]
    interests: tuple[str, ...]
    primary_interests: tuple[str, ...]
    family_values: tuple[str, ...]
    description_text: str


def _raw_field(raw: Mapping[str, Any], name: str) -> Any:
    for key in _FIELD_KEYS[name]:
        if key in raw:
            return raw[key]
    return None


def _coerce_text(value: Any, name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise InputDegraded(name, f"expected text, got {type(value).__name__}")
    return normalize_whitespace(normalize_punctuation(value))


def _coerce_list(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # A single answer submitted without the list wrapper
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise InputDegraded(name, f"expected a list, got {type(value).__name__}")

    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            continue
        cleaned = normalize_whitespace(item).lower()
        if cleaned and cleaned not in items:
            items.append(cleaned)
    return tuple(items)


def coerce_intake(raw: Mapping[str, Any] | None) -> IntakeAnswers:
    """Coerce a raw questionnaire mapping into ``IntakeAnswers``.

    Accepts camelCase or snake_case keys. Missing or malformed fields fall
    back to empty values.
    """
    if not isinstance(raw, Mapping):
        if raw is not None:
            logger.debug(f"Intake is not a mapping ({type(raw).__name__}); using empty answers")
        return IntakeAnswers()

    values: dict[str, Any] = {}
    for name in _FIELD_KEYS:
        coerce = _coerce_list if name in ("interests", "family_values", "selected_characteristics") else _coerce_text
        try:
            values[name] = coerce(_raw_field(raw, name), name)
        except InputDegraded as e:
            logger.debug(f"Degraded intake field {e.field}: {e.reason}")
            values[name] = coerce(None, name)

    return IntakeAnswers(**values)


def resolve_grade_band(
    grade: str | None,
    vocabulary: Vocabulary,
    *,
    fuzzy_threshold: int = 88,
) -> GradeBand:
    """Map a free-form grade answer to a grade band.

    Exact synonyms win; otherwise the closest synonym by ``fuzz.ratio`` is
    accepted at or above ``fuzzy_threshold``. Anything else is the default band.
    """
    key = normalize_whitespace(grade or "").lower()
    if not key:
        return vocabulary.default_grade

    band = vocabulary.grade_synonyms.get(key)
    if band is not None:
        return band

    match = process.extractOne(
        key,
        list(vocabulary.grade_synonyms.keys()),
        scorer=fuzz.ratio,
        score_cutoff=fuzzy_threshold,
    )
    if match:
        synonym, score, _ = match
        logger.debug(f"Fuzzy grade match '{key}' -> '{synonym}' ({score:.1f})")
        return vocabulary.grade_synonyms[synonym]

    logger.debug(f"Unknown grade '{key}', defaulting to {vocabulary.default_grade.value}")
    return vocabulary.default_grade


def _description_tokens(text: str, vocabulary: Vocabulary) -> list[str]:
    tokens: list[str] = []
    for token in TOKEN_PATTERN.findall(text.lower()):
        if token in vocabulary.stop_words or token in tokens:
            continue
        tokens.append(token)
    return tokens


def extract_traits(answers: IntakeAnswers, vocabulary: Vocabulary) -> list[str]:
    """Extract personality traits from the questionnaire.

    Selected characteristics come first, followed by up to five tokens from
    the primary description field. When both description fields are filled
    and the primary one yields fewer than five tokens, overflow tokens from
    the child description are appended up to seven description tokens.
    """
    traits: list[str] = [c for c in answers.selected_characteristics if c]

    primary = answers.three_words or answers.child_description
    picked = _description_tokens(primary, vocabulary)[:PRIMARY_TOKEN_LIMIT]

    if answers.three_words and answers.child_description and len(picked) < PRIMARY_TOKEN_LIMIT:
        for token in _description_tokens(answers.child_description, vocabulary):
            if len(picked) >= DESCRIPTION_TOKEN_LIMIT:
                break
            if token not in picked:
                picked.append(token)

    for token in picked:
        if token not in traits:
            traits.append(token)
    return traits


def expand_interests(interests: Iterable[str], vocabulary: Vocabulary) -> list[str]:
    """Expand raw interests with their category name and keywords.

    An interest touches a category when it contains, or is contained by, the
    category name or one of its keywords. Order-preserving and deduplicated.
    A single pass over the raw interests; expanded keywords are not
    re-expanded.
    """
    expanded: list[str] = []

    def add(term: str) -> None:
        if term and term not in expanded:
            expanded.append(term)

    for interest in interests:
        term = interest.strip().lower()
        if not term:
            continue
        add(term)
        for category, keywords in vocabulary.interest_expansion.items():
            if category in term or term in category or any(k in term or term in k for k in keywords):
                add(category)
                for keyword in keywords:
                    add(keyword)
    return expanded


def build_matching_profile(
    answers: IntakeAnswers,
    vocabulary: Vocabulary,
    *,
    fuzzy_threshold: int = 88,
) -> MatchingProfile:
    """Build the ``MatchingProfile`` for already-coerced answers."""
    description_text = f"{answers.child_description} {answers.three_words}".strip().lower()
    return MatchingProfile(
        grade_band=resolve_grade_band(answers.grade_level, vocabulary, fuzzy_threshold=fuzzy_threshold),
        traits=tuple(extract_traits(answers, vocabulary)),
        interests=tuple(expand_interests(answers.interests, vocabulary)),
        primary_interests=answers.interests,
        family_values=answers.family_values,
        description_text=description_text,
    )


def normalize_profile(
    raw: Mapping[str, Any] | None,
    vocabulary: Vocabulary,
    *,
    fuzzy_threshold: int = 88,
) -> tuple[IntakeAnswers, MatchingProfile]:
    """Coerce a raw questionnaire and derive its matching profile.

    Args:
        raw: Questionnaire mapping (camelCase or snake_case keys)
        vocabulary: Shared keyword tables
        fuzzy_threshold: Minimum rapidfuzz ratio for a fuzzy grade match

    Returns:
        Tuple of (answers, profile)
    """
    answers = coerce_intake(raw)
    profile = build_matching_profile(answers, vocabulary, fuzzy_threshold=fuzzy_threshold)
    logger.debug(
        f"Normalized profile: grade={profile.grade_band.value}, "
        f"{len(profile.traits)} traits, {len(profile.interests)} interests"
    )
    return answers, profile
