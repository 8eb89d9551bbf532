"""Matching pipeline: questionnaire to curated student, faculty and alumni matches.

Composes normalization, the result cache, the experiment router, semantic
retrieval, generative selection and the deterministic scorer. Optional stages
may fail; the deterministic scorer always produces a complete answer.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, Field

from ai.embeddings import Embedder, create_embedder
from ai.index import EmbeddingIndex, load_or_build_index
from ai.providers import CompletionProvider, build_provider_chain
from ai.selector import GenerativeSelection, GenerativeSelector
from be.analytics import AnalyticsLogger
from be.cache import KeyValueStore, ResultCache, create_store, fingerprint
from be.config import Settings, settings as default_settings
from be.corpus import Alumni, CandidateRecord, Corpus, CorpusProvider, CurrentMember, JsonCorpusProvider, StaffMember
from be.errors import CorpusFatal, StageUnavailable
from be.experiments import ExperimentConfig, ExperimentRouter, Strategy
from be.narrative import basic_message, key_insights, recommended_programs
from be.scoring import DeterministicScorer, DeterministicSelection, ScoredCandidate, summarize_matches
from be.vocabulary import Vocabulary
from .normalization import IntakeAnswers, MatchingProfile, normalize_profile
from .retrieval import SemanticRetriever, Shortlist

logger = logging.getLogger(__name__)

LABEL_DETERMINISTIC = "hybrid:deterministic"
LABEL_SEMANTIC_DETERMINISTIC = "hybrid:semantic+deterministic"
LABEL_SEMANTIC_EMPTY = "hybrid:semantic+deterministic:fallback"
LABEL_SEMANTIC_GENERATIVE = "hybrid:semantic+llm"
LABEL_FALLBACK = "deterministic:fallback"


class MatchOptions(BaseModel):
    """Per-request overrides."""
    strategy: Strategy | None = None
    students_count: int | None = Field(default=None, ge=1, le=50)
    faculty_count: int | None = Field(default=None, ge=1, le=50)
    alumni_count: int | None = Field(default=None, ge=0, le=50)
    threshold: float | None = Field(default=None, ge=-1.0, le=1.0)
    use_cache: bool = True


class CandidateView(BaseModel):
    """Selected candidate as returned to callers."""
    id: str
    category: str
    first_name: str
    last_name: str = ""
    display_name: str
    title: str | None = None
    video_url: str | None = None
    has_video: bool = False
    score: float | None = None
    similarity: float | None = None


class PerformanceMetrics(BaseModel):
    """Stage timings in milliseconds."""
    semantic_ms: float = 0.0
    selection_ms: float = 0.0
    total_ms: float = 0.0


class SelectionResult(BaseModel):
    """Complete match result; also the cached payload."""
    selected_current_member: CandidateView
    selected_staff: CandidateView
    selected_alumni: CandidateView | None = None
    match_score: int = Field(ge=0, le=100)
    personalized_message: str
    reasoning: str = ""
    strategy_used: str
    fallback_used: bool = False
    key_insights: list[str] = Field(default_factory=list)
    recommended_programs: list[str] = Field(default_factory=list)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


@dataclass(frozen=True)
class _Snapshot:
    """Corpus, index and retriever that are swapped together on reload."""
    corpus: Corpus
    index: EmbeddingIndex
    retriever: SemanticRetriever


@dataclass
class _Outcome:
    result: SelectionResult
    shortlist: Shortlist | None = None
    selection: GenerativeSelection | None = None


class MatchingService:
    """Fallback-safe matching over a read-only corpus.

    Construct with ``from_settings`` in applications; tests may inject every
    collaborator directly.
    """

    def __init__(
        self,
        *,
        corpus_provider: CorpusProvider,
        embedder: Embedder,
        vocabulary: Vocabulary,
        selector: GenerativeSelector,
        cache: ResultCache,
        router: ExperimentRouter,
        analytics: AnalyticsLogger,
        settings: Settings,
        store: KeyValueStore | None = None,
    ):
        self.corpus_provider = corpus_provider
        self.embedder = embedder
        self.vocabulary = vocabulary
        self.scorer = DeterministicScorer(vocabulary, settings.scoring)
        self.selector = selector
        self.cache = cache
        self.router = router
        self.analytics = analytics
        self.settings = settings
        self.store = store
        self._snapshot = self._load_snapshot()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        corpus_provider: CorpusProvider | None = None,
        embedder: Embedder | None = None,
        providers: list[CompletionProvider] | None = None,
        store: KeyValueStore | None = None,
        vocabulary: Vocabulary | None = None,
    ) -> MatchingService:
        """Build the service and load the corpus and index.

        Raises:
            CorpusFatal: If the corpus or embedding index cannot be loaded
        """
        settings = settings or default_settings
        vocabulary = vocabulary or Vocabulary.default()
        corpus_provider = corpus_provider or JsonCorpusProvider(
            settings.corpus.directory,
            students_file=settings.corpus.students_file,
            alumni_file=settings.corpus.alumni_file,
            faculty_file=settings.corpus.faculty_file,
        )
        store = store if store is not None else create_store(settings.cache, settings.db)
        providers = providers if providers is not None else build_provider_chain(settings.selector)

        return cls(
            corpus_provider=corpus_provider,
            embedder=embedder or create_embedder(settings.embeddings),
            vocabulary=vocabulary,
            selector=GenerativeSelector(
                providers,
                settings.selector,
                institution=settings.corpus.institution_name,
                video_hosts=vocabulary.video_hosts,
            ),
            cache=ResultCache(
                store,
                ttl_seconds=settings.cache.ttl_seconds,
                read_timeout_ms=settings.cache.read_timeout_ms,
            ),
            router=ExperimentRouter(ExperimentConfig.from_settings(settings.experiment, settings.matching)),
            analytics=AnalyticsLogger(settings.analytics.max_entries, settings.analytics.stats_window),
            settings=settings,
            store=store,
        )

    def _load_snapshot(self) -> _Snapshot:
        corpus = self.corpus_provider.load()
        index = load_or_build_index(
            corpus,
            self.embedder,
            self.vocabulary,
            cache_path=self.settings.embeddings.cache_path,
            allow_rebuild=self.settings.embeddings.allow_rebuild,
        )
        retriever = SemanticRetriever(
            corpus,
            index,
            self.embedder,
            self.store,
            embedding_ttl_seconds=self.settings.embeddings.profile_cache_ttl_seconds,
        )
        return _Snapshot(corpus=corpus, index=index, retriever=retriever)

    @property
    def corpus(self) -> Corpus:
        return self._snapshot.corpus

    @property
    def index(self) -> EmbeddingIndex:
        return self._snapshot.index

    async def reload(self) -> dict[str, Any]:
        """Reload corpus and index; the previous snapshot stays on failure.

        Raises:
            CorpusFatal: If the new corpus or index cannot be loaded
        """
        logger.info("Reloading corpus and embedding index")
        try:
            snapshot = await asyncio.to_thread(self._load_snapshot)
        except CorpusFatal as e:
            logger.error(f"Reload failed, keeping previous corpus: {e}")
            raise
        self._snapshot = snapshot
        logger.info(f"Reload complete: {snapshot.index.stats()}")
        return self.stats()

    def stats(self) -> dict[str, Any]:
        return {
            "corpus": self.corpus.stats(self.vocabulary),
            "index": self.index.stats(),
            "generative_available": self.selector.available,
            "experiment": self.router.config.model_dump(mode="json"),
        }

    # -- result assembly -------------------------------------------------

    def _view(self, scored: ScoredCandidate | None, record: CandidateRecord | None = None,
              similarity: float | None = None) -> CandidateView | None:
        record = record or (scored.candidate if scored else None)
        if record is None:
            return None
        title = None
        if isinstance(record, StaffMember):
            title = record.title
        elif isinstance(record, Alumni):
            title = record.current_role or None
        return CandidateView(
            id=record.id,
            category=record.category.value,
            first_name=record.first_name,
            last_name=record.last_name,
            display_name=record.salutation if isinstance(record, StaffMember) else record.display_name,
            title=title,
            video_url=record.video_url,
            has_video=self.vocabulary.is_video_url(record.video_url),
            score=scored.score if scored else None,
            similarity=similarity,
        )

    def _deterministic_result(
        self,
        answers: IntakeAnswers,
        profile: MatchingProfile,
        selection: DeterministicSelection,
        *,
        strategy_used: str,
        fallback_used: bool = False,
        shortlist: Shortlist | None = None,
    ) -> SelectionResult:
        if selection.current_member is None or selection.staff is None:
            raise CorpusFatal("Corpus has no student or faculty candidates to select from")

        def similarity(scored: ScoredCandidate | None) -> float | None:
            if scored is None or shortlist is None:
                return None
            return shortlist.similarity_of(scored.candidate.id)

        student = selection.current_member.candidate
        staff = selection.staff.candidate
        summary = summarize_matches(selection)
        return SelectionResult(
            selected_current_member=self._view(selection.current_member, similarity=similarity(selection.current_member)),
            selected_staff=self._view(selection.staff, similarity=similarity(selection.staff)),
            selected_alumni=self._view(selection.alumni, similarity=similarity(selection.alumni)),
            match_score=self.scorer.composite_score(selection),
            personalized_message=basic_message(
                answers,
                student if isinstance(student, CurrentMember) else None,
                staff if isinstance(staff, StaffMember) else None,
                self.settings.corpus.institution_name,
            ),
            reasoning=f"Selected {summary} for grade fit, shared interests and personality." if summary else "",
            strategy_used=strategy_used,
            fallback_used=fallback_used,
            key_insights=key_insights(answers, self.vocabulary),
            recommended_programs=recommended_programs(answers, profile, self.vocabulary),
        )

    # -- strategies ------------------------------------------------------

    def _run_deterministic(self, answers: IntakeAnswers, profile: MatchingProfile, corpus: Corpus) -> _Outcome:
        selection = self.scorer.select_from_corpus(corpus, profile)
        return _Outcome(self._deterministic_result(answers, profile, selection, strategy_used=LABEL_DETERMINISTIC))

    async def _search(self, answers: IntakeAnswers, snapshot: _Snapshot, options: MatchOptions) -> Shortlist:
        config = self.router.config
        return await snapshot.retriever.search(
            answers,
            students_count=options.students_count or config.students_count,
            faculty_count=options.faculty_count or config.faculty_count,
            alumni_count=options.alumni_count if options.alumni_count is not None else config.alumni_count,
            threshold=options.threshold if options.threshold is not None else config.semantic_threshold,
        )

    async def _run_semantic_deterministic(
        self,
        answers: IntakeAnswers,
        profile: MatchingProfile,
        snapshot: _Snapshot,
        options: MatchOptions,
    ) -> _Outcome:
        shortlist = await self._search(answers, snapshot, options)
        corpus = snapshot.corpus

        if shortlist.is_empty:
            logger.warning("Semantic search returned no candidates, using full deterministic matching")
            selection = self.scorer.select_from_corpus(corpus, profile)
            result = self._deterministic_result(answers, profile, selection, strategy_used=LABEL_SEMANTIC_EMPTY)
        else:
            selection = self.scorer.select(
                profile,
                students=shortlist.student_records() or corpus.students,
                staff=shortlist.faculty_records() or corpus.faculty,
                alumni=shortlist.alumni_records(),
            )
            result = self._deterministic_result(
                answers, profile, selection, strategy_used=LABEL_SEMANTIC_DETERMINISTIC, shortlist=shortlist,
            )
        result.performance.semantic_ms = round(shortlist.elapsed_ms, 1)
        return _Outcome(result, shortlist=shortlist)

    async def _run_semantic_generative(
        self,
        answers: IntakeAnswers,
        profile: MatchingProfile,
        snapshot: _Snapshot,
        options: MatchOptions,
    ) -> _Outcome:
        shortlist = await self._search(answers, snapshot, options)
        offered = shortlist
        if shortlist.alumni and not self.scorer.should_include_alumni(profile):
            offered = Shortlist(students=shortlist.students, faculty=shortlist.faculty,
                                alumni=[], elapsed_ms=shortlist.elapsed_ms)

        selection = await self.selector.select(answers, offered)

        by_id = {e.candidate.id: e for e in (*offered.students, *offered.faculty, *offered.alumni)}
        student = by_id[selection.student_id]
        staff = by_id[selection.faculty_id]
        alumni = by_id.get(selection.alumni_id) if selection.alumni_id else None

        def view(entry):
            if entry is None:
                return None
            return self._view(self.scorer.score(entry.candidate, profile), similarity=entry.semantic_score)

        student_record = student.candidate
        staff_record = staff.candidate
        result = SelectionResult(
            selected_current_member=view(student),
            selected_staff=view(staff),
            selected_alumni=view(alumni),
            match_score=selection.match_score,
            personalized_message=selection.personalized_message or basic_message(
                answers,
                student_record if isinstance(student_record, CurrentMember) else None,
                staff_record if isinstance(staff_record, StaffMember) else None,
                self.settings.corpus.institution_name,
            ),
            reasoning=selection.reasoning,
            strategy_used=LABEL_SEMANTIC_GENERATIVE,
            key_insights=key_insights(answers, self.vocabulary),
            recommended_programs=recommended_programs(answers, profile, self.vocabulary),
            performance=PerformanceMetrics(
                semantic_ms=round(shortlist.elapsed_ms, 1),
                selection_ms=round(selection.elapsed_ms, 1),
            ),
        )
        return _Outcome(result, shortlist=shortlist, selection=selection)

    async def _run(
        self,
        strategy: Strategy,
        answers: IntakeAnswers,
        profile: MatchingProfile,
        snapshot: _Snapshot,
        options: MatchOptions,
    ) -> _Outcome:
        if strategy == Strategy.DETERMINISTIC:
            return self._run_deterministic(answers, profile, snapshot.corpus)
        if strategy == Strategy.SEMANTIC_DETERMINISTIC:
            return await self._run_semantic_deterministic(answers, profile, snapshot, options)
        return await self._run_semantic_generative(answers, profile, snapshot, options)

    # -- entry point -----------------------------------------------------

    async def match(
        self,
        raw_profile: Mapping[str, Any] | None,
        options: MatchOptions | None = None,
    ) -> SelectionResult:
        """Match a questionnaire to one student, one faculty member and maybe an alumnus.

        Args:
            raw_profile: Questionnaire mapping (camelCase or snake_case keys)
            options: Per-request overrides

        Returns:
            A complete SelectionResult; optional stage failures are reflected
            in ``strategy_used`` and ``fallback_used`` rather than raised
        """
        options = options or MatchOptions()
        start = time.perf_counter()
        answers, profile = normalize_profile(
            raw_profile, self.vocabulary, fuzzy_threshold=self.settings.matching.grade_fuzzy_threshold,
        )
        fp = fingerprint(answers, profile, options.model_dump(mode="json", exclude_none=True, exclude={"use_cache"}))

        if options.use_cache:
            cached = await self.cache.get(fp, SelectionResult)
            if cached is not None:
                logger.info(f"Returning cached result ({(time.perf_counter() - start) * 1000:.0f}ms)")
                return cached

        session_id = self.analytics.new_session_id()
        snapshot = self._snapshot
        strategy = self.router.assign(answers, options.strategy)
        logger.info(
            f"Starting match [{session_id}] strategy={strategy.value} grade={profile.grade_band.value} "
            f"interests={list(answers.interests)}"
        )

        try:
            outcome = await asyncio.wait_for(
                self._run(strategy, answers, profile, snapshot, options),
                timeout=self.settings.matching.stage_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{session_id}] {strategy.value} exceeded {self.settings.matching.stage_timeout_seconds}s, falling back")
            outcome = self._fallback(answers, profile, snapshot.corpus)
        except StageUnavailable as e:
            logger.warning(f"[{session_id}] {e}; falling back to deterministic matching")
            outcome = self._fallback(answers, profile, snapshot.corpus)
        except CorpusFatal:
            raise
        except Exception as e:
            logger.error(f"[{session_id}] {strategy.value} failed: {e}", exc_info=True)
            outcome = self._fallback(answers, profile, snapshot.corpus)

        result = outcome.result
        result.performance.total_ms = round((time.perf_counter() - start) * 1000, 1)

        self.analytics.record(self.analytics.build(
            session_id, answers, result, shortlist=outcome.shortlist, selection=outcome.selection,
        ))
        self.cache.put(fp, result)
        return result

    def _fallback(self, answers: IntakeAnswers, profile: MatchingProfile, corpus: Corpus) -> _Outcome:
        selection = self.scorer.select_from_corpus(corpus, profile)
        return _Outcome(self._deterministic_result(
            answers, profile, selection, strategy_used=LABEL_FALLBACK, fallback_used=True,
        ))
