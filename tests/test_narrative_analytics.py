"""Tests for narrative helpers and match analytics."""

from ai.selector import GenerativeSelection
from be.analytics import AnalyticsLogger
from be.narrative import basic_message, key_insights, recommended_programs
from be.pipelines.matching import CandidateView, PerformanceMetrics, SelectionResult
from be.pipelines.normalization import normalize_profile
from be.pipelines.retrieval import Shortlist, ShortlistEntry


def make_result(strategy: str = "hybrid:deterministic", fallback: bool = False, total_ms: float = 100.0):
    return SelectionResult(
        selected_current_member=CandidateView(id="s-robotics", category="student", first_name="Maya",
                                              display_name="Maya Lopez"),
        selected_staff=CandidateView(id="f-arts", category="faculty", first_name="Dana",
                                     display_name="Ms. Chen"),
        match_score=90,
        personalized_message="Hello",
        strategy_used=strategy,
        fallback_used=fallback,
        performance=PerformanceMetrics(semantic_ms=20.0, selection_ms=40.0, total_ms=total_ms),
    )


class TestNarrative:
    """Test insight and program labels and the template message."""

    def test_key_insights_capped(self, vocabulary):
        """Verify base insights come first and the list is capped at four."""
        answers, _ = normalize_profile({"interests": ["arts", "athletics", "stem"]}, vocabulary)
        assert key_insights(answers, vocabulary) == [
            "Academic Excellence", "Character Development", "Individual Attention", "Creative Expression",
        ]

    def test_key_insights_base_only(self, vocabulary):
        """Verify unknown interests add nothing."""
        answers, _ = normalize_profile({"interests": ["chess"]}, vocabulary)
        assert len(key_insights(answers, vocabulary)) == 3

    def test_recommended_programs_use_traits(self, vocabulary, scenario_profile):
        """Verify traits as well as interests trigger programs."""
        answers, profile = normalize_profile(scenario_profile, vocabulary)
        assert recommended_programs(answers, profile, vocabulary) == [
            "College Preparatory Program", "Athletics Program", "Fine Arts Program",
        ]

    def test_basic_message(self, vocabulary, corpus):
        """Verify names and institution appear in the template message."""
        answers, _ = normalize_profile({"childDescription": "kind and bright"}, vocabulary)
        message = basic_message(answers, corpus.students[0], corpus.faculty[0], "Saint Stephen's")
        assert message.startswith('Based on "kind and bright", we think Maya and Ms. Chen')
        assert "Saint Stephen's" in message

    def test_basic_message_placeholders(self, vocabulary):
        """Verify placeholders are used when nothing is known."""
        answers, _ = normalize_profile({}, vocabulary)
        message = basic_message(answers, None, None, "the school")
        assert '"your child"' in message
        assert "our students and our faculty" in message


class TestAnalyticsLogger:
    """Test the bounded analytics ring."""

    def test_build_with_shortlist_and_selection(self, vocabulary, corpus):
        """Verify semantic and generative sections are filled."""
        answers, _ = normalize_profile({"childDescription": "curious", "interests": ["stem"]}, vocabulary)
        shortlist = Shortlist(
            students=[ShortlistEntry(s, 0.7) for s in corpus.students],
            faculty=[ShortlistEntry(f, 0.5) for f in corpus.faculty],
            alumni=[],
            elapsed_ms=20.0,
        )
        selection = GenerativeSelection(
            student_id="s-robotics", faculty_id="f-arts", alumni_id=None,
            reasoning="fit", match_score=92, personalized_message="hi", provider="p", elapsed_ms=40.0,
        )
        analytics = AnalyticsLogger()
        entry = analytics.build("session_1", answers, make_result("hybrid:semantic+llm"), shortlist, selection)

        assert entry.quiz["interests"] == ["stem"]
        assert entry.semantic_results["students_found"] == 2
        assert entry.semantic_results["top_similarities"] == {"student": 0.7, "faculty": 0.5, "alumni": None}
        assert entry.generative_selection["provider"] == "p"
        assert entry.semantic_bypass == {"students_skipped": ["s-soccer"], "faculty_skipped": ["f-coach"]}

    def test_record_recent_and_bound(self, vocabulary):
        """Verify the ring keeps only the newest entries."""
        answers, _ = normalize_profile({}, vocabulary)
        analytics = AnalyticsLogger(max_entries=3)
        for i in range(5):
            analytics.record(analytics.build(f"s{i}", answers, make_result()))

        assert [e.session_id for e in analytics.recent(10)] == ["s2", "s3", "s4"]
        assert [e.session_id for e in analytics.recent(1)] == ["s4"]
        assert analytics.recent(0) == []
        assert len(analytics.export()) == 3

    def test_performance_stats(self, vocabulary):
        """Verify averages, strategy mix and fallback rate."""
        answers, _ = normalize_profile({}, vocabulary)
        analytics = AnalyticsLogger()
        analytics.record(analytics.build("a", answers, make_result(total_ms=100.0)))
        analytics.record(analytics.build("b", answers, make_result("deterministic:fallback", True, 300.0)))

        stats = analytics.performance_stats()
        assert stats["recent_requests"] == 2
        assert stats["avg_total_ms"] == 200.0
        assert stats["avg_selection_ms"] == 40.0
        assert stats["strategies"] == {"hybrid:deterministic": 1, "deterministic:fallback": 1}
        assert stats["fallback_rate"] == 0.5

    def test_empty_stats(self):
        """Verify stats on an empty logger are zeros."""
        stats = AnalyticsLogger().performance_stats()
        assert stats["recent_requests"] == 0
        assert stats["strategies"] == {}

    def test_session_ids_unique(self):
        """Verify session ids never repeat."""
        analytics = AnalyticsLogger()
        assert analytics.new_session_id() != analytics.new_session_id()
