"""In-memory match analytics.

Keeps a bounded window of recent requests for the admin dashboard and logs
a one-line summary per request. Owned by the matching service.
"""
from __future__ import annotations

import itertools
import logging
import time
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ai.selector import GenerativeSelection
    from .pipelines.matching import SelectionResult
    from .pipelines.normalization import IntakeAnswers
    from .pipelines.retrieval import Shortlist

logger = logging.getLogger(__name__)


@dataclass
class MatchAnalytics:
    """Analytics record for one non-cached match request."""
    session_id: str
    timestamp: float
    quiz: dict[str, Any]
    performance: dict[str, float]
    results: dict[str, Any]
    semantic_results: dict[str, Any] | None = None
    generative_selection: dict[str, Any] | None = None
    semantic_bypass: dict[str, list[str]] | None = field(default=None)


class AnalyticsLogger:
    """Bounded ring of ``MatchAnalytics`` entries."""

    def __init__(self, max_entries: int = 100, stats_window: int = 20):
        self.stats_window = stats_window
        self._entries: deque[MatchAnalytics] = deque(maxlen=max_entries)
        self._counter = itertools.count(1)

    def new_session_id(self) -> str:
        return f"session_{int(time.time() * 1000)}_{next(self._counter)}"

    def build(
        self,
        session_id: str,
        answers: IntakeAnswers,
        result: SelectionResult,
        shortlist: Shortlist | None = None,
        selection: GenerativeSelection | None = None,
    ) -> MatchAnalytics:
        """Assemble an analytics record from the pieces of a finished request."""
        entry = MatchAnalytics(
            session_id=session_id,
            timestamp=time.time(),
            quiz={
                "child_description": answers.description,
                "interests": list(answers.interests),
                "grade_level": answers.grade_level,
                "family_values": list(answers.family_values),
                "timeline": answers.timeline,
            },
            performance={
                "total_ms": result.performance.total_ms,
                "semantic_ms": result.performance.semantic_ms,
                "selection_ms": result.performance.selection_ms,
            },
            results={
                "strategy": result.strategy_used,
                "match_score": result.match_score,
                "fallback_used": result.fallback_used,
            },
        )

        if shortlist is not None:
            entry.semantic_results = {
                "students_found": len(shortlist.students),
                "faculty_found": len(shortlist.faculty),
                "alumni_found": len(shortlist.alumni),
                "top_similarities": {
                    "student": shortlist.students[0].semantic_score if shortlist.students else None,
                    "faculty": shortlist.faculty[0].semantic_score if shortlist.faculty else None,
                    "alumni": shortlist.alumni[0].semantic_score if shortlist.alumni else None,
                },
                "processing_ms": result.performance.semantic_ms,
            }

        if selection is not None:
            entry.generative_selection = {
                "student_id": selection.student_id,
                "faculty_id": selection.faculty_id,
                "alumni_id": selection.alumni_id,
                "reasoning": selection.reasoning,
                "score": selection.match_score,
                "provider": selection.provider,
                "processing_ms": result.performance.selection_ms,
            }
            if shortlist is not None:
                entry.semantic_bypass = {
                    "students_skipped": [e.candidate.id for e in shortlist.students if e.candidate.id != selection.student_id],
                    "faculty_skipped": [e.candidate.id for e in shortlist.faculty if e.candidate.id != selection.faculty_id],
                }
        return entry

    def record(self, entry: MatchAnalytics) -> None:
        self._entries.append(entry)
        summary = (
            f"[{entry.session_id}] strategy={entry.results['strategy']} "
            f"score={entry.results['match_score']} total={entry.performance['total_ms']:.0f}ms"
        )
        if entry.semantic_results:
            s = entry.semantic_results
            summary += f" candidates={s['students_found']}S/{s['faculty_found']}F/{s['alumni_found']}A"
        if entry.generative_selection:
            g = entry.generative_selection
            summary += f" selection={g['student_id']}|{g['faculty_id']}|{g['alumni_id'] or 'none'}"
        if entry.semantic_bypass:
            summary += (
                f" skipped={len(entry.semantic_bypass['students_skipped'])}S/"
                f"{len(entry.semantic_bypass['faculty_skipped'])}F"
            )
        logger.info(summary)

    def recent(self, count: int = 10) -> list[MatchAnalytics]:
        if count <= 0:
            return []
        return list(self._entries)[-count:]

    def performance_stats(self, window: int | None = None) -> dict[str, Any]:
        """Aggregate timings and strategy mix over the most recent entries."""
        recent = self.recent(window or self.stats_window)
        if not recent:
            return {
                "total_requests": len(self._entries),
                "recent_requests": 0,
                "avg_semantic_ms": 0.0,
                "avg_selection_ms": 0.0,
                "avg_total_ms": 0.0,
                "strategies": {},
                "fallback_rate": 0.0,
            }

        def avg(key: str) -> float:
            return round(sum(e.performance.get(key) or 0.0 for e in recent) / len(recent), 1)

        fallbacks = sum(1 for e in recent if e.results.get("fallback_used"))
        return {
            "total_requests": len(self._entries),
            "recent_requests": len(recent),
            "avg_semantic_ms": avg("semantic_ms"),
            "avg_selection_ms": avg("selection_ms"),
            "avg_total_ms": avg("total_ms"),
            "strategies": dict(Counter(e.results["strategy"] for e in recent)),
            "fallback_rate": round(fallbacks / len(recent), 3),
        }

    def export(self) -> list[dict[str, Any]]:
        return [asdict(e) for e in self._entries]

    def clear(self) -> None:
        self._entries.clear()
