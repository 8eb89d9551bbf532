"""Read-only content corpus: current students, alumni and faculty records.

Records are loaded once per process (or on explicit reload) from a corpus
provider; the matching core never writes them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Protocol

from .errors import CorpusFatal
from .vocabulary import ALL_GRADES, Vocabulary

logger = logging.getLogger(__name__)


class CandidateCategory(str, Enum):
    """Corpus category of a candidate record."""
    CURRENT_MEMBER = "student"
    STAFF = "faculty"
    ALUMNI = "alumni"


@dataclass(frozen=True)
class CandidateRecord:
    """Fields shared by every corpus entry."""
    id: str
    first_name: str
    last_name: str = ""
    bio: str = ""
    interest_keywords: tuple[str, ...] = ()
    persona_descriptors: tuple[str, ...] = ()
    grade_bands: tuple[str, ...] = ()
    video_url: str | None = None
    outcome_highlights: tuple[str, ...] = ()
    awards: tuple[str, ...] = ()

    category: CandidateCategory = field(init=False, default=CandidateCategory.CURRENT_MEMBER)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def grade_relevance(self) -> tuple[str, ...]:
        return self.grade_bands or (ALL_GRADES,)

    @property
    def has_narrative_depth(self) -> bool:
        return bool(self.outcome_highlights or self.awards)

    def keyword_pool(self) -> tuple[str, ...]:
        """Keywords matched against profile interests and values."""
        return self.interest_keywords


@dataclass(frozen=True)
class CurrentMember(CandidateRecord):
    """Story of a currently enrolled student."""
    achievement: str = ""
    interests: tuple[str, ...] = ()
    story_tldr: str = ""
    parent_quote: str = ""
    student_quote: str = ""
    grade_level: str = ""

    category: CandidateCategory = field(init=False, default=CandidateCategory.CURRENT_MEMBER)

    def keyword_pool(self) -> tuple[str, ...]:
        return self.interest_keywords or self.interests


@dataclass(frozen=True)
class Alumni(CandidateRecord):
    """Story of a graduate."""
    achievement: str = ""
    interests: tuple[str, ...] = ()
    story_tldr: str = ""
    class_year: str = ""
    current_role: str = ""
    quote: str = ""
    grade_level: str = ""

    category: CandidateCategory = field(init=False, default=CandidateCategory.ALUMNI)

    def keyword_pool(self) -> tuple[str, ...]:
        return self.interest_keywords or self.interests


@dataclass(frozen=True)
class StaffMember(CandidateRecord):
    """Faculty or staff profile."""
    formal_title: str = ""
    title: str = ""
    department: str = ""
    specializes_in: tuple[str, ...] = ()
    why_students_love: str = ""
    years_at_school: int | None = None

    category: CandidateCategory = field(init=False, default=CandidateCategory.STAFF)

    @property
    def salutation(self) -> str:
        return f"{self.formal_title or 'Mr./Ms.'} {self.last_name or self.first_name}"

    def keyword_pool(self) -> tuple[str, ...]:
        return self.interest_keywords + self.specializes_in


@dataclass(frozen=True)
class Corpus:
    """Immutable snapshot of all candidate records."""
    students: tuple[CurrentMember, ...]
    faculty: tuple[StaffMember, ...]
    alumni: tuple[Alumni, ...]

    def __post_init__(self) -> None:
        if not self.students:
            raise CorpusFatal("Corpus has no current student records")
        if not self.faculty:
            raise CorpusFatal("Corpus has no faculty records")
        ids = [r.id for r in self.all_records()]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise CorpusFatal(f"Duplicate candidate ids in corpus: {', '.join(sorted(duplicates))}")

    def all_records(self) -> list[CandidateRecord]:
        return [*self.students, *self.faculty, *self.alumni]

    def by_category(self, category: CandidateCategory) -> tuple[CandidateRecord, ...]:
        if category == CandidateCategory.CURRENT_MEMBER:
            return self.students
        if category == CandidateCategory.STAFF:
            return self.faculty
        return self.alumni

    def get(self, candidate_id: str) -> CandidateRecord | None:
        for record in self.all_records():
            if record.id == candidate_id:
                return record
        return None

    def stats(self, vocabulary: Vocabulary) -> dict[str, int]:
        records = self.all_records()
        return {
            "students": len(self.students),
            "faculty": len(self.faculty),
            "alumni": len(self.alumni),
            "with_videos": sum(1 for r in records if vocabulary.is_video_url(r.video_url)),
        }


class CorpusProvider(Protocol):
    """Returns the three flat candidate lists; storage is opaque to the core."""

    def load(self) -> Corpus:
        ...


def _strings(value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)):
        return ()
    return tuple(str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip())


def _text(value: Any) -> str:
    return str(value).strip() if isinstance(value, (str, int, float)) else ""


def _grade_bands(raw: dict[str, Any]) -> tuple[str, ...]:
    bands = _strings(raw.get("gradeBands"))
    if bands:
        return bands
    grade_level = _text(raw.get("gradeLevel"))
    return (grade_level,) if grade_level else ()


def _common_fields(raw: dict[str, Any]) -> dict[str, Any]:
    candidate_id = _text(raw.get("id"))
    if not candidate_id:
        raise CorpusFatal(f"Corpus record without id: {str(raw)[:80]}")
    return {
        "id": candidate_id,
        "first_name": _text(raw.get("firstName")) or _text(raw.get("name")),
        "last_name": _text(raw.get("lastName")),
        "interest_keywords": _strings(raw.get("interestKeywords")),
        "persona_descriptors": _strings(raw.get("personaDescriptors")),
        "video_url": _text(raw.get("videoUrl")) or None,
        "outcome_highlights": _strings(raw.get("outcomeHighlights")),
        "awards": _strings(raw.get("awards")),
    }


def current_member_from_dict(raw: dict[str, Any]) -> CurrentMember:
    """Build a ``CurrentMember`` from a camelCase corpus entry."""
    achievement = _text(raw.get("achievement"))
    return CurrentMember(
        **_common_fields(raw),
        bio=_text(raw.get("storyTldr")) or achievement,
        grade_bands=_grade_bands(raw),
        achievement=achievement,
        interests=_strings(raw.get("interests")),
        story_tldr=_text(raw.get("storyTldr")),
        parent_quote=_text(raw.get("parentQuote")),
        student_quote=_text(raw.get("studentQuote")),
        grade_level=_text(raw.get("gradeLevel")),
    )


def alumni_from_dict(raw: dict[str, Any]) -> Alumni:
    """Build an ``Alumni`` record from a camelCase corpus entry."""
    achievement = _text(raw.get("achievement"))
    return Alumni(
        **_common_fields(raw),
        bio=_text(raw.get("storyTldr")) or achievement,
        grade_bands=_grade_bands(raw),
        achievement=achievement,
        interests=_strings(raw.get("interests")),
        story_tldr=_text(raw.get("storyTldr")),
        class_year=_text(raw.get("classYear")),
        current_role=_text(raw.get("currentRole")),
        quote=_text(raw.get("quote")),
        grade_level=_text(raw.get("gradeLevel")),
    )


def staff_from_dict(raw: dict[str, Any]) -> StaffMember:
    """Build a ``StaffMember`` from a camelCase corpus entry."""
    years = raw.get("yearsAtSSES", raw.get("yearsAtSchool"))
    return StaffMember(
        **_common_fields(raw),
        bio=_text(raw.get("whyStudentsLoveThem")),
        grade_bands=_strings(raw.get("gradeBands")),
        formal_title=_text(raw.get("formalTitle")),
        title=_text(raw.get("title")),
        department=_text(raw.get("department")),
        specializes_in=_strings(raw.get("specializesIn")),
        why_students_love=_text(raw.get("whyStudentsLoveThem")),
        years_at_school=years if isinstance(years, int) else None,
    )


def build_corpus(
    students: Iterable[dict[str, Any]],
    faculty: Iterable[dict[str, Any]],
    alumni: Iterable[dict[str, Any]],
) -> Corpus:
    """Build a validated corpus from raw dictionaries.

    Raises:
        CorpusFatal: If a required category is empty or a record is invalid
    """
    # Alumni stories are sometimes filed with student stories; classYear marks them.
    student_rows = [s for s in students if isinstance(s, dict)]
    alumni_rows = [a for a in alumni if isinstance(a, dict)]
    alumni_rows += [s for s in student_rows if s.get("classYear")]
    student_rows = [s for s in student_rows if not s.get("classYear")]

    return Corpus(
        students=tuple(current_member_from_dict(s) for s in student_rows),
        faculty=tuple(staff_from_dict(f) for f in faculty if isinstance(f, dict)),
        alumni=tuple(alumni_from_dict(a) for a in alumni_rows),
    )


class JsonCorpusProvider:
    """Loads the corpus from the three JSON knowledge files."""

    def __init__(
        self,
        directory: str | Path,
        *,
        students_file: str = "current-student-stories.json",
        alumni_file: str = "alumni-story.json",
        faculty_file: str = "faculty-story.json",
    ) -> None:
        self.directory = Path(directory)
        self.students_file = students_file
        self.alumni_file = alumni_file
        self.faculty_file = faculty_file

    def _read(self, filename: str, key: str, *, required: bool) -> list[dict[str, Any]]:
        path = self.directory / filename
        if not path.exists():
            if required:
                raise CorpusFatal(f"Corpus file not found: {path}")
            logger.warning(f"Optional corpus file missing: {path}")
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise CorpusFatal(f"Failed to read corpus file {path}: {e}") from e

        rows = data.get(key) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise CorpusFatal(f"Corpus file {path} has no '{key}' list")
        return rows

    def load(self) -> Corpus:
        students = self._read(self.students_file, "stories", required=True)
        faculty = self._read(self.faculty_file, "faculty", required=True)
        alumni = self._read(self.alumni_file, "stories", required=False)

        corpus = build_corpus(students, faculty, alumni)
        logger.info(
            f"Loaded corpus from {self.directory}: {len(corpus.students)} students, "
            f"{len(corpus.faculty)} faculty, {len(corpus.alumni)} alumni"
        )
        return corpus
