"""
Pytest configuration and shared fixtures.
"""

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from ai.embeddings import HashingEmbedder
from be.cache import MemoryKeyValueStore
from be.config import (
    CacheSettings,
    CorpusSettings,
    EmbeddingSettings,
    ExperimentSettings,
    MatchingSettings,
    SelectorSettings,
    Settings,
)
from be.corpus import Alumni, Corpus, CurrentMember, StaffMember
from be.pipelines.matching import MatchingService
from be.vocabulary import Vocabulary
from tests.helpers import FakeClock, StaticCorpusProvider

VIDEO = "https://www.youtube.com/watch?v=abc123"


@pytest.fixture
def vocabulary() -> Vocabulary:
    """Default vocabulary tables."""
    return Vocabulary.default()


@pytest.fixture
def corpus() -> Corpus:
    """Small corpus with known scoring properties.

    Neither faculty member has a video or awards, so persona and interest
    signals decide between them.
    """
    return Corpus(
        students=(
            CurrentMember(
                id="s-robotics",
                first_name="Maya",
                last_name="Lopez",
                interest_keywords=("robotics", "engineering", "coding"),
                persona_descriptors=("curious", "analytical"),
                grade_bands=("upper",),
                video_url=VIDEO,
                outcome_highlights=("State robotics finalist",),
                achievement="Built the robotics team's first autonomous robot",
                interests=("robotics", "engineering"),
            ),
            CurrentMember(
                id="s-soccer",
                first_name="Jonah",
                last_name="Reed",
                interest_keywords=("soccer", "athletics", "team"),
                persona_descriptors=("competitive", "energetic"),
                grade_bands=("middle",),
                achievement="Captain of the middle school soccer team",
                interests=("soccer",),
            ),
        ),
        faculty=(
            StaffMember(
                id="f-arts",
                first_name="Dana",
                last_name="Chen",
                formal_title="Ms.",
                title="Studio Art Teacher",
                interest_keywords=("art", "academic rigor"),
                persona_descriptors=("artistic", "creative", "imaginative"),
                why_students_love="She treats every sketch like a gallery piece.",
            ),
            StaffMember(
                id="f-coach",
                first_name="Sam",
                last_name="Okafor",
                formal_title="Mr.",
                title="Head Coach",
                interest_keywords=("athletics",),
                why_students_love="He knows every player's name by the first practice.",
            ),
        ),
        alumni=(
            Alumni(
                id="a-athlete",
                first_name="Derek",
                last_name="Hall",
                interest_keywords=("soccer", "athletics"),
                grade_bands=("upper",),
                video_url=VIDEO,
                achievement="Played Division I soccer",
                class_year="2015",
            ),
            Alumni(
                id="a-writer",
                first_name="Tessa",
                last_name="Moore",
                interest_keywords=("writing", "literature"),
                video_url=VIDEO,
                achievement="Published novelist",
                class_year="2010",
            ),
        ),
    )


@pytest.fixture
def corpus_provider(corpus) -> StaticCorpusProvider:
    return StaticCorpusProvider(corpus)


@pytest.fixture
def hashing_embedder() -> HashingEmbedder:
    """Deterministic embedder; no model download."""
    return HashingEmbedder(dim=128)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> MemoryKeyValueStore:
    """Memory store driven by the fake clock."""
    return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings built explicitly for tests.

    Hashing embeddings, a temporary artifact path, no API key, and a
    similarity threshold that lets every candidate into the shortlist.
    """
    return Settings(
        corpus=CorpusSettings(directory=str(tmp_path / "knowledge")),
        embeddings=EmbeddingSettings(
            backend="hashing",
            dim=128,
            cache_path=str(tmp_path / "embeddings.json"),
        ),
        matching=MatchingSettings(min_similarity=-1.0, stage_timeout_seconds=5.0),
        selector=SelectorSettings(api_key="", timeout_seconds=2.0),
        cache=CacheSettings(backend="memory"),
        experiment=ExperimentSettings(enabled=False, default_strategy="semantic+generative"),
    )


@pytest.fixture
def make_service(test_settings, corpus_provider, hashing_embedder, memory_store, vocabulary):
    """Factory building a MatchingService with injected collaborators."""

    def _make(providers=None, settings: Settings | None = None) -> MatchingService:
        return MatchingService.from_settings(
            settings or test_settings,
            corpus_provider=corpus_provider,
            embedder=hashing_embedder,
            providers=list(providers or []),
            store=memory_store,
            vocabulary=vocabulary,
        )

    return _make


@pytest.fixture
def scenario_profile() -> Dict[str, Any]:
    """Creative upper-school child whose listed interest is athletics."""
    return {
        "gradeLevel": "upper",
        "childDescription": "creative artistic imaginative",
        "interests": ["athletics"],
        "familyValues": ["academic_rigor"],
    }


@pytest.fixture
def knowledge_dir(tmp_path) -> Path:
    """Corpus JSON files in the on-disk format."""
    directory = tmp_path / "knowledge"
    directory.mkdir()
    (directory / "current-student-stories.json").write_text(json.dumps({
        "stories": [
            {
                "id": "student-1",
                "firstName": "Ava",
                "lastName": "Kim",
                "achievement": "Led the art club mural",
                "interests": ["art"],
                "interestKeywords": ["art", "design"],
                "personaDescriptors": ["creative"],
                "gradeBands": ["middle"],
                "videoUrl": "https://youtu.be/xyz",
            },
            {
                "id": "alumni-filed-as-story",
                "firstName": "Lee",
                "achievement": "Graduated with honors",
                "classYear": "2012",
                "interests": ["medicine"],
            },
        ]
    }))
    (directory / "faculty-story.json").write_text(json.dumps({
        "faculty": [
            {
                "id": "faculty-1",
                "firstName": "Ruth",
                "lastName": "Garcia",
                "formalTitle": "Dr.",
                "title": "Upper School Science",
                "specializesIn": ["biology"],
                "whyStudentsLoveThem": "Makes labs feel like discovery.",
                "yearsAtSSES": 12,
            }
        ]
    }))
    return directory
