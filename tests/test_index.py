"""Tests for the embedding index and semantic retrieval."""

import asyncio
import json

import numpy as np
import pytest

from ai.embeddings import HashingEmbedder
from ai.index import (
    EmbeddingIndex,
    IndexItem,
    candidate_embedding_text,
    index_items,
    load_or_build_index,
)
from be.corpus import CandidateCategory, Corpus
from be.errors import CorpusFatal
from be.pipelines.normalization import coerce_intake
from be.pipelines.retrieval import SemanticRetriever, build_profile_text, profile_embedding_key


class CountingEmbedder(HashingEmbedder):
    """Hashing embedder that counts batches."""

    def __init__(self, dim: int = 64):
        super().__init__(dim)
        self.batches = 0

    def embed_texts(self, texts):
        self.batches += 1
        return super().embed_texts(texts)


class FailingEmbedder(HashingEmbedder):
    def embed_texts(self, texts):
        raise RuntimeError("model unavailable")


class TestEmbeddingText:
    """Test candidate text summaries."""

    def test_staff_text(self, corpus):
        """Verify staff summaries carry title and personality."""
        text = candidate_embedding_text(corpus.faculty[0])
        assert text.startswith("Faculty: Ms. Dana Chen")
        assert "Title: Studio Art Teacher" in text
        assert "Personality: artistic, creative, imaginative" in text

    def test_story_text_skips_empty_parts(self, corpus):
        """Verify optional parts are omitted when blank."""
        text = candidate_embedding_text(corpus.students[1])
        assert "Parent:" not in text
        assert "Keywords: soccer, athletics, team" in text


class TestIndexPersistence:
    """Test artifact build, reuse and staleness."""

    def test_build_then_reuse(self, corpus, vocabulary, tmp_path):
        """Verify the second load reads the artifact instead of re-embedding."""
        embedder = CountingEmbedder()
        path = tmp_path / "emb.json"

        first = load_or_build_index(corpus, embedder, vocabulary, cache_path=path)
        assert embedder.batches == 1
        assert path.exists()
        assert json.loads(path.read_text())["content_hash"] == first.content_hash

        second = load_or_build_index(corpus, embedder, vocabulary, cache_path=path)
        assert embedder.batches == 1
        assert second.content_hash == first.content_hash
        assert np.allclose(second.matrix, first.matrix, atol=1e-5)

    def test_changed_corpus_rebuilds(self, corpus, vocabulary, tmp_path):
        """Verify a content change invalidates the artifact."""
        embedder = CountingEmbedder()
        path = tmp_path / "emb.json"
        load_or_build_index(corpus, embedder, vocabulary, cache_path=path)

        smaller = Corpus(students=corpus.students[:1], faculty=corpus.faculty, alumni=corpus.alumni)
        rebuilt = load_or_build_index(smaller, embedder, vocabulary, cache_path=path)
        assert embedder.batches == 2
        assert len(rebuilt) == len(smaller.all_records())

    def test_changed_model_rebuilds(self, corpus, vocabulary, tmp_path):
        """Verify a different embedding model invalidates the artifact."""
        path = tmp_path / "emb.json"
        load_or_build_index(corpus, CountingEmbedder(64), vocabulary, cache_path=path)
        other = CountingEmbedder(32)
        index = load_or_build_index(corpus, other, vocabulary, cache_path=path)
        assert other.batches == 1
        assert index.stats()["dimension"] == 32

    def test_stale_without_rebuild_is_fatal(self, corpus, vocabulary, tmp_path):
        """Verify a missing artifact with rebuilding disabled raises CorpusFatal."""
        with pytest.raises(CorpusFatal):
            load_or_build_index(corpus, CountingEmbedder(), vocabulary,
                                cache_path=tmp_path / "missing.json", allow_rebuild=False)

    def test_embedding_failure_is_fatal(self, corpus, vocabulary, tmp_path):
        """Verify an embedder failure during build raises CorpusFatal."""
        with pytest.raises(CorpusFatal):
            load_or_build_index(corpus, FailingEmbedder(64), vocabulary, cache_path=tmp_path / "e.json")

    def test_index_items_flag_videos(self, corpus, vocabulary):
        """Verify item metadata reflects video availability and grades."""
        items = {i.candidate_id: i for i in index_items(corpus, vocabulary)}
        assert items["s-robotics"].has_video
        assert not items["f-arts"].has_video
        assert items["f-arts"].grade_relevance == ("all",)


class TestTopK:
    """Test per-category top-K search."""

    @pytest.fixture
    def index(self):
        items = [
            IndexItem("s-1", CandidateCategory.CURRENT_MEMBER, "", False, ("all",)),
            IndexItem("s-2", CandidateCategory.CURRENT_MEMBER, "", False, ("all",)),
            IndexItem("s-3", CandidateCategory.CURRENT_MEMBER, "", False, ("all",)),
            IndexItem("f-1", CandidateCategory.STAFF, "", False, ("all",)),
        ]
        vectors = np.array([[1.0, 0.0], [0.0, 1.0], [3.0, 4.0], [1.0, 0.0]])
        return EmbeddingIndex(items, vectors, model="test", content_hash="x")

    def test_threshold_is_strict(self, index):
        """Verify a similarity equal to the threshold is excluded."""
        hits = index.top_k([1.0, 0.0], CandidateCategory.CURRENT_MEMBER, 5, 0.0)
        assert [h.candidate_id for h in hits] == ["s-1", "s-3"]
        assert hits[1].similarity == pytest.approx(0.6, abs=1e-6)

    def test_k_and_category(self, index):
        """Verify results stay within the category and respect k."""
        assert [h.candidate_id for h in index.top_k([1.0, 0.0], CandidateCategory.CURRENT_MEMBER, 1, -1.0)] == ["s-1"]
        assert [h.candidate_id for h in index.top_k([1.0, 0.0], CandidateCategory.STAFF, 5, -1.0)] == ["f-1"]
        assert index.top_k([1.0, 0.0], CandidateCategory.ALUMNI, 5, -1.0) == []

    def test_zero_query(self, index):
        """Verify a zero query vector returns nothing."""
        assert index.top_k([0.0, 0.0], CandidateCategory.CURRENT_MEMBER, 5, -1.0) == []

    def test_mismatched_rows_rejected(self):
        """Verify the item and vector counts must agree."""
        with pytest.raises(CorpusFatal):
            EmbeddingIndex([], np.zeros((1, 2)), model="test", content_hash="x")


class TestSemanticRetriever:
    """Test profile embedding and shortlist retrieval."""

    @pytest.fixture
    def retriever_parts(self, corpus, vocabulary, memory_store, tmp_path):
        embedder = CountingEmbedder()
        index = load_or_build_index(corpus, embedder, vocabulary, cache_path=tmp_path / "emb.json")
        embedder.batches = 0
        return SemanticRetriever(corpus, index, embedder, memory_store), embedder

    def test_profile_text(self):
        """Verify the description is repeated and empty parts dropped."""
        answers = coerce_intake({"childDescription": "curious builder", "interests": ["stem"]})
        assert build_profile_text(answers) == (
            "Child: curious builder. curious builder. curious builder. Interests: stem"
        )
        assert build_profile_text(coerce_intake({})) == ""

    def test_search_returns_all_categories(self, retriever_parts):
        """Verify a permissive threshold shortlists every category."""
        retriever, _ = retriever_parts
        answers = coerce_intake({"childDescription": "loves soccer and robotics", "interests": ["athletics"]})
        shortlist = asyncio.run(retriever.search(answers, threshold=-1.0))
        assert len(shortlist.students) == 2
        assert len(shortlist.faculty) == 2
        assert len(shortlist.alumni) == 2
        sims = [e.similarity for e in shortlist.students]
        assert sims == sorted(sims, reverse=True)

    def test_counts_limit_shortlist(self, retriever_parts):
        """Verify per-category counts cap the shortlist."""
        retriever, _ = retriever_parts
        answers = coerce_intake({"childDescription": "artist"})
        shortlist = asyncio.run(retriever.search(answers, students_count=1, faculty_count=1, alumni_count=0,
                                                 threshold=-1.0))
        assert (len(shortlist.students), len(shortlist.faculty), len(shortlist.alumni)) == (1, 1, 0)

    def test_empty_profile_is_empty_shortlist(self, retriever_parts):
        """Verify nothing to embed yields an empty shortlist without calling the embedder."""
        retriever, embedder = retriever_parts
        shortlist = asyncio.run(retriever.search(coerce_intake({})))
        assert shortlist.is_empty
        assert embedder.batches == 0

    def test_profile_embedding_is_cached(self, retriever_parts, memory_store):
        """Verify repeated searches embed once and persist the vector."""
        retriever, embedder = retriever_parts
        answers = coerce_intake({"childDescription": "kind and curious"})

        async def run():
            await retriever.search(answers, threshold=-1.0)
            await retriever.search(answers, threshold=-1.0)
            return await memory_store.get(profile_embedding_key(build_profile_text(answers)))

        stored = asyncio.run(run())
        assert embedder.batches == 1
        assert len(json.loads(stored)) == embedder.dim
