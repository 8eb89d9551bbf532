"""Embedding index over the candidate corpus.

Holds one unit vector per candidate and answers per-category cosine top-K
queries. The matrix is persisted as a JSON artifact keyed by a content hash
of the candidate texts and the embedding model id.
"""
from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ai.embeddings import Embedder
from be.corpus import Alumni, CandidateCategory, CandidateRecord, Corpus, CurrentMember, StaffMember
from be.errors import CorpusFatal
from be.vocabulary import Vocabulary

logger = logging.getLogger(__name__)

ARTIFACT_VERSION = 1


def _join(parts: list[str]) -> str:
    return ". ".join(p for p in parts if p)


def _listing(label: str, values: tuple[str, ...], sep: str = ", ") -> str:
    return f"{label}: {sep.join(values)}" if values else ""


def candidate_embedding_text(candidate: CandidateRecord) -> str:
    """Weighted text summary of a candidate used for its embedding."""
    if isinstance(candidate, CurrentMember):
        return _join([
            f"Student: {candidate.first_name}",
            f"Story: {candidate.achievement}",
            f"Interests: {', '.join(candidate.interests)}",
            f"Summary: {candidate.story_tldr}" if candidate.story_tldr else "",
            _listing("Personality", candidate.persona_descriptors),
            _listing("Keywords", candidate.interest_keywords),
            f"Grade: {candidate.grade_level}" if candidate.grade_level else "",
            _listing("Grades", candidate.grade_bands, "/"),
            f'Parent: "{candidate.parent_quote}"' if candidate.parent_quote else "",
            f'Student: "{candidate.student_quote}"' if candidate.student_quote else "",
        ])
    if isinstance(candidate, Alumni):
        return _join([
            f"Alumni: {candidate.first_name} {candidate.last_name}".rstrip(),
            f"Class of {candidate.class_year}" if candidate.class_year else "",
            f"Role: {candidate.current_role}" if candidate.current_role else "",
            f"Achievement: {candidate.achievement}",
            f"Interests: {', '.join(candidate.interests)}",
            f"Summary: {candidate.story_tldr}" if candidate.story_tldr else "",
            f'Quote: "{candidate.quote}"' if candidate.quote else "",
            f"Grade: {candidate.grade_level}" if candidate.grade_level else "",
        ])
    if isinstance(candidate, StaffMember):
        return _join([
            f"Faculty: {candidate.formal_title} {candidate.first_name} {candidate.last_name}".replace("  ", " ").rstrip(),
            f"Title: {candidate.title}",
            f"Department: {candidate.department}" if candidate.department else "",
            f"Specializes: {', '.join(candidate.specializes_in)}",
            f"Why Students Love: {candidate.why_students_love}",
            _listing("Grades", candidate.grade_bands, "/"),
            _listing("Keywords", candidate.interest_keywords),
            _listing("Personality", candidate.persona_descriptors),
            f"Experience: {candidate.years_at_school} years" if candidate.years_at_school else "",
            _listing("Awards", candidate.awards),
        ])
    raise TypeError(f"Unsupported candidate type: {type(candidate).__name__}")


def corpus_content_hash(texts: list[str]) -> str:
    """Short hash identifying the exact candidate texts."""
    return hashlib.sha256("|".join(texts).encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class IndexItem:
    """Metadata row paired with one matrix row."""
    candidate_id: str
    category: CandidateCategory
    text: str
    has_video: bool
    grade_relevance: tuple[str, ...]


@dataclass(frozen=True)
class SearchHit:
    """A candidate id with its cosine similarity."""
    candidate_id: str
    category: CandidateCategory
    similarity: float


class EmbeddingIndex:
    """In-memory, read-only index: unit-normalized matrix plus item metadata."""

    def __init__(self, items: list[IndexItem], vectors: np.ndarray, *, model: str, content_hash: str):
        if len(items) != len(vectors):
            raise CorpusFatal(f"Index has {len(items)} items but {len(vectors)} vectors")
        self.items = items
        self.model = model
        self.content_hash = content_hash
        self.matrix = _normalize_rows(np.asarray(vectors, dtype=np.float32))
        self._rows_by_category = {
            category: np.array([i for i, item in enumerate(items) if item.category == category], dtype=np.int64)
            for category in CandidateCategory
        }

    def __len__(self) -> int:
        return len(self.items)

    def top_k(
        self,
        query: list[float] | np.ndarray,
        category: CandidateCategory,
        k: int,
        threshold: float,
    ) -> list[SearchHit]:
        """Top ``k`` candidates of ``category`` with similarity strictly above ``threshold``."""
        rows = self._rows_by_category.get(category)
        if rows is None or not len(rows) or k <= 0:
            return []
        vector = np.asarray(query, dtype=np.float32)
        norm = np.linalg.norm(vector)
        if norm == 0:
            return []
        vector = vector / norm

        similarities = self.matrix[rows] @ vector
        order = np.argsort(-similarities, kind="stable")
        hits: list[SearchHit] = []
        for pos in order:
            similarity = float(similarities[pos])
            if similarity <= threshold:
                break
            item = self.items[int(rows[pos])]
            hits.append(SearchHit(item.candidate_id, item.category, similarity))
            if len(hits) >= k:
                break
        return hits

    def stats(self) -> dict:
        return {
            "model": self.model,
            "content_hash": self.content_hash,
            "total": len(self.items),
            "students": sum(1 for i in self.items if i.category == CandidateCategory.CURRENT_MEMBER),
            "faculty": sum(1 for i in self.items if i.category == CandidateCategory.STAFF),
            "alumni": sum(1 for i in self.items if i.category == CandidateCategory.ALUMNI),
            "with_videos": sum(1 for i in self.items if i.has_video),
            "dimension": int(self.matrix.shape[1]) if self.matrix.ndim == 2 and len(self.items) else 0,
        }


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    if matrix.ndim != 2 or not len(matrix):
        return matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def index_items(corpus: Corpus, vocabulary: Vocabulary) -> list[IndexItem]:
    """Index metadata for every corpus record, in corpus order."""
    items = []
    for record in corpus.all_records():
        items.append(IndexItem(
            candidate_id=record.id,
            category=record.category,
            text=candidate_embedding_text(record),
            has_video=vocabulary.is_video_url(record.video_url),
            grade_relevance=record.grade_relevance,
        ))
    return items


def build_index(items: list[IndexItem], embedder: Embedder) -> EmbeddingIndex:
    """Embed every item; a failure here is fatal for startup."""
    texts = [item.text for item in items]
    content_hash = corpus_content_hash(texts)
    logger.info(f"Building embedding index for {len(items)} candidates with {embedder.model_id}")
    start = time.perf_counter()
    try:
        vectors = embedder.embed_texts(texts)
    except Exception as e:
        raise CorpusFatal(f"Failed to embed corpus: {e}") from e
    logger.info(f"Embedded {len(vectors)} candidates in {(time.perf_counter() - start) * 1000:.0f}ms")
    return EmbeddingIndex(items, np.asarray(vectors, dtype=np.float32), model=embedder.model_id, content_hash=content_hash)


def save_index(index: EmbeddingIndex, path: str | Path) -> None:
    """Persist the index as a JSON artifact."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "version": ARTIFACT_VERSION,
        "model": index.model,
        "content_hash": index.content_hash,
        "created_at": time.time(),
        "items": [
            {
                "id": item.candidate_id,
                "category": item.category.value,
                "has_video": item.has_video,
                "grade_relevance": list(item.grade_relevance),
            }
            for item in index.items
        ],
        "vectors": [[round(float(v), 6) for v in row] for row in index.matrix],
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    logger.info(f"Saved embedding artifact to {path} ({len(index.items)} vectors)")


def load_index(path: str | Path, items: list[IndexItem], *, model: str) -> EmbeddingIndex | None:
    """Load a persisted index if it matches the current corpus and model.

    Returns:
        The index, or None when the artifact is missing, unreadable or stale
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"No embedding artifact at {path}")
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Unreadable embedding artifact {path}: {e}")
        return None

    content_hash = corpus_content_hash([item.text for item in items])
    if data.get("version") != ARTIFACT_VERSION or data.get("model") != model:
        logger.info(f"Embedding artifact model/version changed ({data.get('model')} -> {model})")
        return None
    if data.get("content_hash") != content_hash:
        logger.info(f"Corpus content changed ({data.get('content_hash')} -> {content_hash})")
        return None
    stored_ids = [row.get("id") for row in data.get("items", [])]
    if stored_ids != [item.candidate_id for item in items]:
        logger.info("Embedding artifact item order does not match corpus")
        return None

    vectors = np.asarray(data.get("vectors", []), dtype=np.float32)
    logger.info(f"Loaded embedding artifact {path} ({len(items)} vectors, hash {content_hash})")
    return EmbeddingIndex(items, vectors, model=model, content_hash=content_hash)


def load_or_build_index(
    corpus: Corpus,
    embedder: Embedder,
    vocabulary: Vocabulary,
    *,
    cache_path: str | Path | None,
    allow_rebuild: bool = True,
    force: bool = False,
) -> EmbeddingIndex:
    """Return a current index, rebuilding and persisting it when stale.

    Raises:
        CorpusFatal: If the artifact is stale and rebuilding is disabled, or
            the rebuild fails
    """
    items = index_items(corpus, vocabulary)
    if cache_path and not force:
        index = load_index(cache_path, items, model=embedder.model_id)
        if index is not None:
            return index

    if not allow_rebuild and not force:
        raise CorpusFatal(f"Embedding artifact at {cache_path} is missing or stale and rebuilding is disabled")

    index = build_index(items, embedder)
    if cache_path:
        try:
            save_index(index, cache_path)
        except OSError as e:
            logger.warning(f"Could not persist embedding artifact to {cache_path}: {e}")
    return index
