"""Deterministic candidate scorer.

Rule-based ranking of corpus records against a matching profile, with a full
audit trace per signal. Never performs I/O and never suspends, so it is the
stage every other path falls back to.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Sequence

from .config import ScoringSettings
from .corpus import Alumni, CandidateRecord, Corpus, CurrentMember, StaffMember
from .pipelines.normalization import MatchingProfile
from .vocabulary import ALL_GRADES, Vocabulary

logger = logging.getLogger(__name__)


class SignalType(str, Enum):
    """Scoring signals."""
    BASE = "base"
    GRADE = "grade"
    INTEREST = "interest"
    VALUES = "values"
    PERSONA = "persona"
    PRIMARY_INTEREST = "primary_interest"
    FREE_TEXT = "free_text"
    MEDIA = "media"
    NARRATIVE = "narrative"


@dataclass
class ScoreTrace:
    """Audit trace for a single signal."""
    signal: SignalType
    points: float
    reason: str
    matched: list[str] = field(default_factory=list)


@dataclass
class ScoredCandidate:
    """A candidate with its score and the traces that produced it."""
    candidate: CandidateRecord
    score: float
    traces: list[ScoreTrace] = field(default_factory=list)

    @property
    def sub_scores(self) -> dict[str, float]:
        totals: dict[str, float] = {}
        for trace in self.traces:
            totals[trace.signal.value] = totals.get(trace.signal.value, 0.0) + trace.points
        return totals


@dataclass
class DeterministicSelection:
    """Best current member, staff and (gated) alumni picks."""
    current_member: ScoredCandidate | None
    staff: ScoredCandidate | None
    alumni: ScoredCandidate | None = None
    alumni_gate_open: bool = False

    @property
    def current_member_score(self) -> float:
        return self.current_member.score if self.current_member else 0.0

    @property
    def staff_score(self) -> float:
        return self.staff.score if self.staff else 0.0

    @property
    def alumni_score(self) -> float:
        return self.alumni.score if self.alumni else 0.0


def _keywords(values: Iterable[str]) -> list[str]:
    """Lower-case, strip and dedupe while preserving order."""
    seen: list[str] = []
    for value in values:
        item = str(value or "").lower().strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def _fold(term: str) -> str:
    return term.replace("_", " ").replace("-", " ")


def keyword_matches(source: Sequence[str], targets: Sequence[str], max_matches: int) -> list[str]:
    """Source terms that match any target, up to ``max_matches``.

    Underscores and hyphens fold to spaces; containment in either direction
    counts as a match.
    """
    if not source or not targets or max_matches <= 0:
        return []
    folded_targets = [_fold(t) for t in targets]
    matched: list[str] = []
    for term in source:
        folded = _fold(term)
        if any(folded in target or target in folded for target in folded_targets):
            matched.append(term)
            if len(matched) >= max_matches:
                break
    return matched


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class DeterministicScorer:
    """Heuristic scorer for current members, alumni and staff.

    All keyword tables come from the injected ``Vocabulary`` and all weights
    from ``ScoringSettings``.
    """

    def __init__(self, vocabulary: Vocabulary, weights: ScoringSettings | None = None):
        """Initialize the scorer.

        Args:
            vocabulary: Shared keyword tables
            weights: Signal weights; defaults to ``ScoringSettings()``
        """
        self.vocabulary = vocabulary
        self.weights = weights or ScoringSettings()

    def _grade_trace(self, bands: Sequence[str], profile: MatchingProfile) -> ScoreTrace:
        w = self.weights
        if not profile.grade_band:
            return ScoreTrace(SignalType.GRADE, w.grade_unknown, "Profile has no grade band")

        band_values = _keywords(bands) or [ALL_GRADES]
        target = profile.grade_band.value
        if ALL_GRADES in band_values:
            return ScoreTrace(SignalType.GRADE, w.grade_all, "Serves all grades", [ALL_GRADES])
        if target in band_values:
            return ScoreTrace(SignalType.GRADE, w.grade_exact, f"Exact grade band {target}", [target])

        neighbors = [n.value for n in self.vocabulary.neighbors_of(profile.grade_band)]
        adjacent = [b for b in band_values if b in neighbors]
        if adjacent:
            return ScoreTrace(SignalType.GRADE, w.grade_adjacent, f"Adjacent to {target}", adjacent)
        return ScoreTrace(SignalType.GRADE, w.grade_mismatch, f"No grade overlap with {target}")

    @staticmethod
    def _match_trace(
        signal: SignalType,
        source: Sequence[str],
        targets: Sequence[str],
        weight: float,
        cap: int,
        label: str,
    ) -> ScoreTrace | None:
        matched = keyword_matches(source, targets, cap)
        if not matched:
            return None
        return ScoreTrace(signal, weight * len(matched), f"{len(matched)} {label} match(es)", matched)

    def _primary_interest_trace(self, pool: Sequence[str], primary_interests: Sequence[str]) -> ScoreTrace | None:
        if not pool or not primary_interests:
            return None
        covered: list[str] = []
        for interest in primary_interests:
            synonyms = self.vocabulary.primary_interest_synonyms.get(interest, (interest,))
            if any(syn in term or term in syn for term in pool for syn in synonyms):
                covered.append(interest)
        if not covered:
            return None
        return ScoreTrace(
            SignalType.PRIMARY_INTEREST,
            self.weights.primary_interest_weight * len(covered),
            f"Covers {len(covered)} primary interest(s)",
            covered,
        )

    @staticmethod
    def _finish(candidate: CandidateRecord, traces: list[ScoreTrace | None]) -> ScoredCandidate:
        kept = [t for t in traces if t is not None]
        return ScoredCandidate(candidate=candidate, score=sum(t.points for t in kept), traces=kept)

    def score_story(self, story: CurrentMember | Alumni, profile: MatchingProfile) -> ScoredCandidate:
        """Score a current member or alumni story."""
        w = self.weights
        keywords = _keywords(story.keyword_pool())
        persona = _keywords(story.persona_descriptors)

        traces: list[ScoreTrace | None] = [
            ScoreTrace(SignalType.BASE, w.story_base, "Base story score"),
            self._grade_trace(story.grade_bands, profile),
            self._match_trace(SignalType.INTEREST, keywords, profile.interests,
                              w.story_interest_weight, w.story_interest_cap, "interest"),
            self._match_trace(SignalType.VALUES, keywords, profile.family_values,
                              w.story_values_weight, w.story_values_cap, "family value"),
            self._match_trace(SignalType.PERSONA, persona, profile.traits,
                              w.story_persona_weight, w.story_persona_cap, "trait"),
        ]

        if profile.description_text:
            in_text = [kw for kw in keywords if kw in profile.description_text]
            if in_text:
                traces.append(ScoreTrace(SignalType.FREE_TEXT, w.free_text_bonus, "Keyword in description", in_text[:1]))
        if self.vocabulary.is_video_url(story.video_url):
            traces.append(ScoreTrace(SignalType.MEDIA, w.story_media_bonus, "Has video story"))
        if story.outcome_highlights:
            traces.append(ScoreTrace(SignalType.NARRATIVE, w.story_narrative_bonus, "Has outcome highlights"))

        return self._finish(story, traces)

    def score_staff(self, member: StaffMember, profile: MatchingProfile) -> ScoredCandidate:
        """Score a staff member."""
        w = self.weights
        bands = member.grade_bands or self.vocabulary.grade_bands_from_title(member.title)
        pool = _keywords(member.keyword_pool())
        persona = _keywords(member.persona_descriptors)

        traces: list[ScoreTrace | None] = [
            ScoreTrace(SignalType.BASE, w.staff_base, "Base staff score"),
            self._grade_trace(bands, profile),
            self._match_trace(SignalType.INTEREST, pool, profile.interests,
                              w.staff_interest_weight, w.staff_interest_cap, "interest"),
            self._match_trace(SignalType.VALUES, pool, profile.family_values,
                              w.staff_values_weight, w.staff_values_cap, "family value"),
            self._primary_interest_trace(pool, profile.primary_interests),
            self._match_trace(SignalType.PERSONA, persona, profile.traits,
                              w.staff_persona_weight, w.staff_persona_cap, "trait"),
        ]

        if self.vocabulary.is_video_url(member.video_url):
            traces.append(ScoreTrace(SignalType.MEDIA, w.staff_media_bonus, "Has video introduction"))
        if member.has_narrative_depth:
            traces.append(ScoreTrace(SignalType.NARRATIVE, w.staff_narrative_bonus, "Has highlights or awards"))

        return self._finish(member, traces)

    def score(self, candidate: CandidateRecord, profile: MatchingProfile) -> ScoredCandidate:
        """Score any candidate record, dispatching on its type."""
        if isinstance(candidate, StaffMember):
            return self.score_staff(candidate, profile)
        if isinstance(candidate, (CurrentMember, Alumni)):
            return self.score_story(candidate, profile)
        raise TypeError(f"Unsupported candidate type: {type(candidate).__name__}")

    def rank(self, candidates: Iterable[CandidateRecord], profile: MatchingProfile) -> list[ScoredCandidate]:
        """Score and sort candidates by descending score (stable for ties)."""
        scored = [self.score(c, profile) for c in candidates]
        return sorted(scored, key=lambda s: s.score, reverse=True)

    def should_include_alumni(self, profile: MatchingProfile) -> bool:
        """Alumni gate: an athletics or medical signal anywhere in the profile."""
        combined = " ".join([
            " ".join(profile.interests),
            " ".join(profile.traits),
            " ".join(profile.family_values),
            profile.description_text,
        ])
        return any(pattern.search(combined) for pattern in self.vocabulary.alumni_gate_patterns.values())

    def _best_or_first(self, candidates: Sequence[CandidateRecord], profile: MatchingProfile) -> ScoredCandidate | None:
        if not candidates:
            return None
        ranked = self.rank(candidates, profile)
        if ranked[0].score > 0:
            return ranked[0]
        return ScoredCandidate(
            candidate=candidates[0],
            score=self.weights.fallback_score,
            traces=[ScoreTrace(SignalType.BASE, self.weights.fallback_score, "First-entry fallback")],
        )

    def best_alumni(self, alumni: Sequence[Alumni], profile: MatchingProfile) -> ScoredCandidate | None:
        """Best video-bearing alumni with a positive score, or None."""
        eligible = [a for a in alumni if self.vocabulary.is_video_url(a.video_url)]
        ranked = [s for s in self.rank(eligible, profile) if s.score > 0]
        return ranked[0] if ranked else None

    def select(
        self,
        profile: MatchingProfile,
        *,
        students: Sequence[CurrentMember],
        staff: Sequence[StaffMember],
        alumni: Sequence[Alumni] = (),
    ) -> DeterministicSelection:
        """Pick the best current member, staff and gated alumni.

        Args:
            profile: Normalized family profile
            students: Current member candidates (corpus or shortlist)
            staff: Staff candidates
            alumni: Alumni candidates; only considered when the gate opens

        Returns:
            DeterministicSelection with the chosen candidates
        """
        gate_open = self.should_include_alumni(profile)
        selection = DeterministicSelection(
            current_member=self._best_or_first(students, profile),
            staff=self._best_or_first(staff, profile),
            alumni=self.best_alumni(alumni, profile) if gate_open else None,
            alumni_gate_open=gate_open,
        )
        logger.debug(
            f"Deterministic selection: student={selection.current_member_score}, "
            f"staff={selection.staff_score}, alumni={selection.alumni_score} (gate={'open' if gate_open else 'closed'})"
        )
        return selection

    def select_from_corpus(self, corpus: Corpus, profile: MatchingProfile) -> DeterministicSelection:
        return self.select(profile, students=corpus.students, staff=corpus.faculty, alumni=corpus.alumni)

    def composite_score(self, selection: DeterministicSelection) -> int:
        """Combine the three picks into a bounded match score."""
        w = self.weights
        total = w.composite_base
        if selection.current_member:
            total += min(selection.current_member_score / w.composite_story_divisor, w.composite_story_cap)
        if selection.staff:
            total += min(selection.staff_score / w.composite_staff_divisor, w.composite_staff_cap)
        if selection.alumni:
            total += min(selection.alumni_score / w.composite_alumni_divisor, w.composite_alumni_cap)
        return max(round_half_up(min(total, w.composite_ceiling)), w.composite_floor)

    def debug_score(self, candidate: CandidateRecord, profile: MatchingProfile) -> dict:
        """Score breakdown for audit and debugging."""
        scored = self.score(candidate, profile)
        return {
            "candidate_id": candidate.id,
            "score": scored.score,
            "sub_scores": scored.sub_scores,
            "traces": [
                {"signal": t.signal.value, "points": t.points, "reason": t.reason, "matched": t.matched}
                for t in scored.traces
            ],
        }


def summarize_matches(selection: DeterministicSelection) -> str | None:
    """Human-readable list of the selected names, e.g. "Maya, Dr. Garcia, and Sarah Kim"."""
    highlights: list[str] = []
    if selection.current_member:
        student = selection.current_member.candidate
        highlights.append(student.first_name or "one of our students")
    if selection.staff:
        staff = selection.staff.candidate
        title = getattr(staff, "formal_title", "")
        name = f"{title + ' ' if title else ''}{staff.last_name or staff.first_name or 'a faculty leader'}"
        highlights.append(name.strip())
    if selection.alumni:
        highlights.append(selection.alumni.candidate.display_name or "an alumni")

    if not highlights:
        return None
    if len(highlights) == 1:
        return highlights[0]
    if len(highlights) == 2:
        return f"{highlights[0]} and {highlights[1]}"
    return f"{', '.join(highlights[:-1])}, and {highlights[-1]}"
