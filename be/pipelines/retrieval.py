"""Semantic retrieval: profile embedding and per-category shortlists.

Embeds a weighted profile text once per distinct questionnaire (cached in the
key/value store) and queries the embedding index for each candidate category.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field

from ai.embeddings import Embedder
from ai.index import EmbeddingIndex
from ..cache import KeyValueStore
from ..corpus import Alumni, CandidateCategory, CandidateRecord, Corpus, CurrentMember, StaffMember
from ..errors import EmbeddingError
from .normalization import IntakeAnswers

logger = logging.getLogger(__name__)

PROFILE_EMBEDDING_PREFIX = "profile_embedding:"


@dataclass(frozen=True)
class ShortlistEntry:
    """A retrieved candidate with its similarity."""
    candidate: CandidateRecord
    similarity: float

    @property
    def semantic_score(self) -> float:
        return round(self.similarity, 2)


@dataclass
class Shortlist:
    """Per-category retrieval results, best first."""
    students: list[ShortlistEntry] = field(default_factory=list)
    faculty: list[ShortlistEntry] = field(default_factory=list)
    alumni: list[ShortlistEntry] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.students) + len(self.faculty) + len(self.alumni)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    def candidate_ids(self) -> set[str]:
        return {e.candidate.id for e in (*self.students, *self.faculty, *self.alumni)}

    def similarity_of(self, candidate_id: str) -> float | None:
        for entry in (*self.students, *self.faculty, *self.alumni):
            if entry.candidate.id == candidate_id:
                return entry.semantic_score
        return None

    def student_records(self) -> list[CurrentMember]:
        return [e.candidate for e in self.students if isinstance(e.candidate, CurrentMember)]

    def faculty_records(self) -> list[StaffMember]:
        return [e.candidate for e in self.faculty if isinstance(e.candidate, StaffMember)]

    def alumni_records(self) -> list[Alumni]:
        return [e.candidate for e in self.alumni if isinstance(e.candidate, Alumni)]


def build_profile_text(answers: IntakeAnswers) -> str:
    """Weighted profile text; the description appears three times."""
    description = answers.description
    parts = [
        f"Child: {description}" if description else "",
        description,
        description,
        f"Interests: {' '.join(answers.interests)}" if answers.interests else "",
        f"Values: {' '.join(answers.family_values)}" if answers.family_values else "",
        f"Grade: {answers.grade_level}" if answers.grade_level else "",
    ]
    return ". ".join(p for p in parts if p)


def profile_embedding_key(text: str) -> str:
    return PROFILE_EMBEDDING_PREFIX + hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class SemanticRetriever:
    """Vector-similarity shortlist over a corpus snapshot."""

    def __init__(
        self,
        corpus: Corpus,
        index: EmbeddingIndex,
        embedder: Embedder,
        store: KeyValueStore | None = None,
        *,
        embedding_ttl_seconds: int = 3600,
        memory_cache_size: int = 256,
    ):
        self.corpus = corpus
        self.index = index
        self.embedder = embedder
        self.store = store
        self.embedding_ttl_seconds = embedding_ttl_seconds
        self._memory: OrderedDict[str, list[float]] = OrderedDict()
        self._memory_cache_size = memory_cache_size
        self._records = {r.id: r for r in corpus.all_records()}

    async def _cached_embedding(self, key: str) -> list[float] | None:
        if key in self._memory:
            self._memory.move_to_end(key)
            return self._memory[key]
        if self.store is None:
            return None
        try:
            raw = await self.store.get(key)
        except Exception as e:
            logger.warning(f"Profile embedding cache read failed: {e}")
            return None
        if raw is None:
            return None
        try:
            vector = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(vector, list) or len(vector) != self.embedder.dim:
            return None
        self._remember(key, vector)
        return vector

    def _remember(self, key: str, vector: list[float]) -> None:
        self._memory[key] = vector
        self._memory.move_to_end(key)
        while len(self._memory) > self._memory_cache_size:
            self._memory.popitem(last=False)

    async def _store_embedding(self, key: str, vector: list[float]) -> None:
        if self.store is None:
            return
        try:
            await self.store.set(key, json.dumps(vector).encode("utf-8"), self.embedding_ttl_seconds)
        except Exception as e:
            logger.warning(f"Failed to cache profile embedding: {e}")

    async def embed_profile(self, text: str) -> list[float]:
        """Profile embedding, served from cache when possible.

        Raises:
            EmbeddingError: If the embedder fails
        """
        key = profile_embedding_key(text)
        cached = await self._cached_embedding(key)
        if cached is not None:
            logger.debug(f"Using cached profile embedding {key}")
            return cached

        start = time.perf_counter()
        try:
            vectors = await asyncio.to_thread(self.embedder.embed_texts, [text])
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(str(e)) from e
        if not vectors:
            raise EmbeddingError("embedder returned no vector")
        vector = list(vectors[0])
        logger.info(f"Generated profile embedding in {(time.perf_counter() - start) * 1000:.0f}ms")

        self._remember(key, vector)
        await self._store_embedding(key, vector)
        return vector

    def _entries(self, query: list[float], category: CandidateCategory, k: int, threshold: float) -> list[ShortlistEntry]:
        entries = []
        for hit in self.index.top_k(query, category, k, threshold):
            record = self._records.get(hit.candidate_id)
            if record is not None:
                entries.append(ShortlistEntry(record, hit.similarity))
        return entries

    async def search(
        self,
        answers: IntakeAnswers,
        *,
        students_count: int = 5,
        faculty_count: int = 4,
        alumni_count: int = 4,
        threshold: float = 0.2,
    ) -> Shortlist:
        """Retrieve per-category shortlists for a questionnaire.

        Args:
            answers: Coerced questionnaire answers
            students_count: Maximum current members to keep
            faculty_count: Maximum staff to keep
            alumni_count: Maximum alumni to keep
            threshold: Similarity must be strictly greater than this

        Returns:
            Shortlist (possibly empty)
        """
        start = time.perf_counter()
        text = build_profile_text(answers)
        if not text:
            logger.info("Empty profile text; semantic retrieval returns no candidates")
            return Shortlist()

        query = await self.embed_profile(text)
        shortlist = Shortlist(
            students=self._entries(query, CandidateCategory.CURRENT_MEMBER, students_count, threshold),
            faculty=self._entries(query, CandidateCategory.STAFF, faculty_count, threshold),
            alumni=self._entries(query, CandidateCategory.ALUMNI, alumni_count, threshold),
        )
        shortlist.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Semantic search found {len(shortlist.students)}S/{len(shortlist.faculty)}F/"
            f"{len(shortlist.alumni)}A in {shortlist.elapsed_ms:.0f}ms"
        )
        return shortlist
