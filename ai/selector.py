"""Generative selection over a semantic shortlist.

Builds the admissions-director prompt, walks the provider chain under one
shared timeout budget, and validates that every selected id was offered.

Bump PROMPT_VERSION when changing the prompt.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ai.providers import CompletionProvider
from be.config import SelectorSettings
from be.corpus import Alumni, CurrentMember, StaffMember
from be.errors import SelectionRejected, StageUnavailable
from be.pipelines.normalization import IntakeAnswers
from be.pipelines.retrieval import Shortlist, ShortlistEntry

logger = logging.getLogger(__name__)

PROMPT_VERSION = "1.0.0"

VIDEO_AVAILABLE = "Available ✓"
VIDEO_NONE = "None"

_NO_ALUMNI = {"", "null", "none", "n/a"}


def build_system_prompt(institution: str) -> str:
    return f"""You are the experienced admissions director at {institution} with 20+ years of helping families find perfect educational fits.

Your expertise includes:
- Understanding child development and learning styles
- Matching student personalities with faculty mentorship styles
- Creating compelling admissions narratives that drive enrollment
- Balancing authentic fit with strategic enrollment goals

SELECTION CRITERIA (in order of importance):
1. PERSONALITY FIT: How well does the child's description match the student story and faculty approach?
2. DEVELOPMENTAL STAGE: Are the stories/faculty appropriate for the child's grade and maturity?
3. NARRATIVE ARC: Do the selections tell a story of growth from current student to faculty mentorship to alumni outcomes?
4. ENROLLMENT APPEAL: Will these selections convince this specific family to choose {institution}?

CONSTRAINTS:
- Must select exactly 1 current student (required)
- Must select exactly 1 faculty member (required)
- May select 1 alumni if there's a compelling match (optional)
- STRONGLY PRIORITIZE VIDEO CONTENT: When fit quality is equal, always choose candidates with "Video: {VIDEO_AVAILABLE}"
- Only select IDs that appear in the options below
- Consider family timeline and urgency

OUTPUT FORMAT:
Return valid JSON only, no additional text:
{{
  "selectedStudent": "story_id",
  "selectedFaculty": "faculty_id",
  "selectedAlumni": "alumni_id_or_null",
  "reasoning": "2-3 sentences explaining why these selections fit this specific child and family",
  "matchScore": 85-100,
  "personalizedMessage": "Warm, specific 2-4 sentence message for the visiting family that connects their child to these selections"
}}"""


def _or(values: tuple[str, ...], default: str = "N/A", sep: str = ", ") -> str:
    return sep.join(values) if values else default


def _video(entry: ShortlistEntry, vocabulary_hosts: tuple[str, ...]) -> str:
    url = entry.candidate.video_url or ""
    return VIDEO_AVAILABLE if url and any(h in url for h in vocabulary_hosts) else VIDEO_NONE


def format_candidate(entry: ShortlistEntry, position: int, video_hosts: tuple[str, ...]) -> str:
    """Prompt block describing one shortlisted candidate."""
    c = entry.candidate
    if isinstance(c, CurrentMember):
        lines = [
            f"{position}. ID: {c.id}",
            f"   Name: {c.first_name}",
            f"   Story: {c.achievement or c.story_tldr}",
            f"   Interests: {_or(c.interests)}",
            f"   Personality: {_or(c.persona_descriptors)}",
            f"   Grade Focus: {_or(c.grade_bands, c.grade_level or 'All', '/')}",
            f"   Video: {_video(entry, video_hosts)}",
            f"   Similarity: {entry.semantic_score}",
            f'   Parent Quote: "{c.parent_quote or "N/A"}"',
            f'   Student Quote: "{c.student_quote or "N/A"}"',
        ]
    elif isinstance(c, StaffMember):
        lines = [
            f"{position}. ID: {c.id}",
            f"   Name: {c.salutation}",
            f"   Title: {c.title}",
            f"   Department: {c.department or 'N/A'}",
            f"   Specializes: {_or(c.specializes_in)}",
            f"   Why Students Love: {c.why_students_love}",
            f"   Grade Focus: {_or(c.grade_bands, 'All Levels', '/')}",
            f"   Experience: {f'{c.years_at_school} years' if c.years_at_school else 'N/A'}",
            f"   Video: {_video(entry, video_hosts)}",
            f"   Similarity: {entry.semantic_score}",
            f"   Keywords: {_or(c.interest_keywords)}",
        ]
    elif isinstance(c, Alumni):
        lines = [
            f"{position}. ID: {c.id}",
            f"   Name: {c.display_name}",
            f"   Class: {c.class_year or 'N/A'}",
            f"   Current Role: {c.current_role or 'N/A'}",
            f"   Achievement: {c.achievement}",
            f"   Interests: {_or(c.interests)}",
            f"   Video: {_video(entry, video_hosts)}",
            f"   Similarity: {entry.semantic_score}",
            f'   Quote: "{c.quote or "N/A"}"',
        ]
    else:
        raise TypeError(f"Unsupported candidate type: {type(c).__name__}")
    return "\n".join(lines)


def build_user_prompt(
    answers: IntakeAnswers,
    shortlist: Shortlist,
    institution: str,
    video_hosts: tuple[str, ...] = ("youtube.com", "youtu.be"),
) -> str:
    def section(entries: list[ShortlistEntry], empty: str) -> str:
        if not entries:
            return empty
        return "\n\n".join(format_candidate(e, i + 1, video_hosts) for i, e in enumerate(entries))

    return "\n".join([
        "FAMILY PROFILE:",
        f'Child Description: "{answers.description or "Not provided"}" (PRIMARY MATCHING FACTOR)',
        f"Selected Interests: {_or(answers.interests, 'None specified')}",
        f"Grade Level: {answers.grade_level or 'Not provided'}",
        f"Family Values: {_or(answers.family_values, 'None specified')}",
        f"Timeline: {answers.timeline or 'Not provided'}",
        f"Additional Context: {answers.additional_notes or 'None'}",
        "",
        "SEMANTIC SEARCH RESULTS:",
        f"Query Processing: Found {shortlist.total} relevant candidates in {shortlist.elapsed_ms:.0f}ms",
        "",
        "CURRENT STUDENT OPTIONS (choose exactly 1):",
        section(shortlist.students, "No current student candidates found"),
        "",
        "FACULTY OPTIONS (choose exactly 1):",
        section(shortlist.faculty, "No faculty candidates found"),
        "",
        "ALUMNI OPTIONS (choose 1 if compelling match, or none):",
        section(shortlist.alumni, "No alumni candidates found"),
        "",
        "TASK:",
        f"As {institution}'s admissions director, analyze this family profile and select the optimal matches that will:",
        "1. Best match the child's personality and interests",
        "2. Create the most compelling admissions narrative",
        "3. Maximize enrollment likelihood for this specific family",
        "4. PRIORITIZE VIDEO CONTENT: Choose video-enabled candidates when personality/interest fit is comparable",
        "",
        "DECISION FRAMEWORK:",
        "• If multiple candidates fit equally well → CHOOSE THE ONE WITH VIDEO",
        "• Focus heavily on the child description - this is the most important factor",
        "",
        "Return your selections in the specified JSON format.",
    ])


class SelectionResponse(BaseModel):
    """Structured output expected from the model.

    Ids must be strings and the score a JSON number; anything else rejects
    the whole response.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    selected_student: str = Field(alias="selectedStudent", min_length=1, strict=True)
    selected_faculty: str = Field(alias="selectedFaculty", min_length=1, strict=True)
    selected_alumni: str | None = Field(default=None, alias="selectedAlumni", strict=True)
    reasoning: str = ""
    match_score: float | None = Field(default=None, alias="matchScore", strict=True)
    personalized_message: str = Field(default="", alias="personalizedMessage")

    @field_validator("selected_student", "selected_faculty")
    @classmethod
    def strip_id(cls, v: str) -> str:
        return v.strip()

    @field_validator("selected_alumni", mode="before")
    @classmethod
    def blank_alumni(cls, v: Any) -> Any:
        # The prompt asks for "alumni_id_or_null"; the literal string means no alumni
        if isinstance(v, str) and v.strip().lower() in _NO_ALUMNI:
            return None
        return v.strip() if isinstance(v, str) else v


@dataclass
class GenerativeSelection:
    """Validated selection from one provider."""
    student_id: str
    faculty_id: str
    alumni_id: str | None
    reasoning: str
    match_score: int
    personalized_message: str
    provider: str
    elapsed_ms: float = 0.0


def parse_response(content: str) -> SelectionResponse:
    """Parse raw completion text into a ``SelectionResponse``.

    Raises:
        SelectionRejected: If the text is not a valid selection object
    """
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise SelectionRejected(f"invalid JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise SelectionRejected("response is not a JSON object")
    try:
        return SelectionResponse.model_validate(data)
    except ValidationError as e:
        raise SelectionRejected(f"missing or invalid fields: {e.error_count()} errors") from e


class GenerativeSelector:
    """Chain of completion providers with output validation."""

    def __init__(
        self,
        providers: list[CompletionProvider],
        config: SelectorSettings | None = None,
        *,
        institution: str = "Saint Stephen's",
        video_hosts: tuple[str, ...] = ("youtube.com", "youtu.be"),
    ):
        self.providers = list(providers)
        self.config = config or SelectorSettings()
        self.institution = institution
        self.video_hosts = video_hosts

    @property
    def available(self) -> bool:
        return bool(self.providers)

    def clamp_score(self, score: float | None) -> int:
        value = score or self.config.default_score
        return int(max(self.config.min_score, min(self.config.max_score, round(value))))

    def validate(self, response: SelectionResponse, shortlist: Shortlist) -> None:
        """Every selected id must come from the offered shortlist.

        Raises:
            SelectionRejected: On an id that was not offered
        """
        students = {e.candidate.id for e in shortlist.students}
        faculty = {e.candidate.id for e in shortlist.faculty}
        alumni = {e.candidate.id for e in shortlist.alumni}
        if response.selected_student not in students:
            raise SelectionRejected(f"invalid student ID: {response.selected_student}")
        if response.selected_faculty not in faculty:
            raise SelectionRejected(f"invalid faculty ID: {response.selected_faculty}")
        if response.selected_alumni is not None and response.selected_alumni not in alumni:
            raise SelectionRejected(f"invalid alumni ID: {response.selected_alumni}")

    async def select(self, answers: IntakeAnswers, shortlist: Shortlist) -> GenerativeSelection:
        """Ask each provider in turn until one returns a valid selection.

        Args:
            answers: Coerced questionnaire answers
            shortlist: Candidates the model may choose from

        Returns:
            GenerativeSelection from the first provider that succeeds

        Raises:
            StageUnavailable: If no provider is configured, the shortlist
                lacks students or faculty, or every provider failed
        """
        if not self.providers:
            raise StageUnavailable("generative selection", "no providers configured")
        if not shortlist.students or not shortlist.faculty:
            raise StageUnavailable("generative selection", "shortlist lacks students or faculty")

        system = build_system_prompt(self.institution)
        user = build_user_prompt(answers, shortlist, self.institution, self.video_hosts)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.timeout_seconds
        failures: list[str] = []

        for provider in self.providers:
            remaining = deadline - loop.time()
            if remaining <= 0:
                failures.append(f"{provider.name}: no time left")
                break

            start = time.perf_counter()
            logger.info(f"Calling {provider.name} for generative selection ({remaining:.1f}s budget)")
            try:
                content = await asyncio.wait_for(provider.complete(system, user, timeout=remaining), timeout=remaining)
                response = parse_response(content)
                self.validate(response, shortlist)
            except asyncio.TimeoutError:
                failures.append(f"{provider.name}: timed out")
                logger.warning(f"Provider {provider.name} timed out")
                continue
            except StageUnavailable as e:
                failures.append(f"{provider.name}: {e.reason}")
                logger.warning(f"Provider {provider.name} failed: {e}")
                continue
            except Exception as e:
                failures.append(f"{provider.name}: {e}")
                logger.warning(f"Provider {provider.name} raised {type(e).__name__}: {e}")
                continue

            elapsed_ms = (time.perf_counter() - start) * 1000
            selection = GenerativeSelection(
                student_id=response.selected_student,
                faculty_id=response.selected_faculty,
                alumni_id=response.selected_alumni,
                reasoning=response.reasoning,
                match_score=self.clamp_score(response.match_score),
                personalized_message=response.personalized_message,
                provider=provider.name,
                elapsed_ms=elapsed_ms,
            )
            logger.info(
                f"Generative selection by {provider.name} in {elapsed_ms:.0f}ms: "
                f"{selection.student_id}|{selection.faculty_id}|{selection.alumni_id or 'none'}"
            )
            return selection

        raise StageUnavailable("generative selection", "; ".join(failures) or "provider chain exhausted")
