"""Tests for the matching service end to end."""

import asyncio
import json

import pytest

from be.config import MatchingSettings
from be.errors import CorpusFatal, ProviderError
from be.experiments import Strategy
from be.pipelines.matching import (
    LABEL_DETERMINISTIC,
    LABEL_FALLBACK,
    LABEL_SEMANTIC_DETERMINISTIC,
    LABEL_SEMANTIC_EMPTY,
    LABEL_SEMANTIC_GENERATIVE,
    MatchOptions,
)
from tests.helpers import FakeProvider

DETERMINISTIC = MatchOptions(strategy=Strategy.DETERMINISTIC)
SEMANTIC = MatchOptions(strategy=Strategy.SEMANTIC_DETERMINISTIC)
GENERATIVE = MatchOptions(strategy=Strategy.SEMANTIC_GENERATIVE)


def llm_choice(student="s-robotics", faculty="f-arts", alumni="null", score=93, message="Meet Maya and Ms. Chen!"):
    return {
        "selectedStudent": student,
        "selectedFaculty": faculty,
        "selectedAlumni": alumni,
        "reasoning": "Shared creativity.",
        "matchScore": score,
        "personalizedMessage": message,
    }


class TestDeterministicStrategy:
    """Test the rule-based strategy."""

    def test_scenario_selection(self, make_service, scenario_profile):
        """Verify persona signals pick the arts teacher over the coach."""
        service = make_service()
        result = asyncio.run(service.match(scenario_profile, DETERMINISTIC))

        assert result.strategy_used == LABEL_DETERMINISTIC
        assert result.fallback_used is False
        assert result.selected_current_member.id == "s-robotics"
        assert result.selected_staff.id == "f-arts"
        assert result.selected_staff.display_name == "Ms. Chen"
        assert result.selected_staff.title == "Studio Art Teacher"
        assert result.selected_alumni.id == "a-athlete"
        assert result.match_score == 96
        assert result.reasoning.startswith("Selected Maya, Ms. Chen, and Derek Hall")
        assert result.selected_current_member.has_video is True

    def test_empty_profile_still_matches(self, make_service):
        """Verify a nearly empty questionnaire produces a complete result."""
        service = make_service()
        result = asyncio.run(service.match({"gradeLevel": "middle"}, DETERMINISTIC))

        assert result.selected_current_member.id == "s-robotics"
        assert result.selected_staff.id == "f-arts"
        assert result.selected_alumni is None
        assert 78 <= result.match_score <= 96
        assert "our faculty" not in result.personalized_message

    def test_garbage_input(self, make_service):
        """Verify a non-mapping payload degrades to an empty questionnaire."""
        result = asyncio.run(make_service().match(["not", "a", "mapping"], DETERMINISTIC))
        assert result.strategy_used == LABEL_DETERMINISTIC
        assert result.personalized_message.startswith('Based on "your child"')


class TestSemanticStrategy:
    """Test retrieval followed by deterministic scoring."""

    def test_shortlist_then_score(self, make_service, scenario_profile):
        """Verify the semantic strategy labels its result and reports similarities."""
        result = asyncio.run(make_service().match(scenario_profile, SEMANTIC))

        assert result.strategy_used == LABEL_SEMANTIC_DETERMINISTIC
        assert result.selected_staff.id == "f-arts"
        assert result.selected_staff.similarity is not None
        assert result.performance.semantic_ms >= 0

    def test_empty_profile_uses_full_corpus(self, make_service):
        """Verify an empty shortlist falls back to the full corpus."""
        result = asyncio.run(make_service().match({}, SEMANTIC))
        assert result.strategy_used == LABEL_SEMANTIC_EMPTY
        assert result.fallback_used is False
        assert result.selected_staff.similarity is None


class TestGenerativeStrategy:
    """Test retrieval followed by model selection."""

    def test_model_selection(self, make_service, scenario_profile):
        """Verify the model's choice, score and message are returned."""
        provider = FakeProvider("primary", llm_choice(alumni="a-athlete"))
        result = asyncio.run(make_service([provider]).match(scenario_profile, GENERATIVE))

        assert result.strategy_used == LABEL_SEMANTIC_GENERATIVE
        assert result.selected_current_member.id == "s-robotics"
        assert result.selected_alumni.id == "a-athlete"
        assert result.match_score == 93
        assert result.personalized_message == "Meet Maya and Ms. Chen!"
        assert result.selected_staff.score is not None
        assert provider.calls == 1

    def test_low_model_score_is_clamped(self, make_service, scenario_profile):
        """Verify model scores are clamped into the presentation range."""
        provider = FakeProvider("primary", llm_choice(score=40, message=""))
        result = asyncio.run(make_service([provider]).match(scenario_profile, GENERATIVE))

        assert result.match_score == 85
        assert "Maya" in result.personalized_message

    def test_provider_failure_falls_back(self, make_service, scenario_profile):
        """Verify an erroring provider yields the deterministic fallback."""
        provider = FakeProvider("broken", error=ProviderError("broken", "HTTP 503"))
        result = asyncio.run(make_service([provider]).match(scenario_profile, GENERATIVE))

        assert result.strategy_used == LABEL_FALLBACK
        assert result.fallback_used is True
        assert result.selected_staff.id == "f-arts"
        assert 78 <= result.match_score <= 96

    def test_no_providers_falls_back(self, make_service, scenario_profile):
        """Verify the default strategy without an API key falls back."""
        result = asyncio.run(make_service().match(scenario_profile))
        assert result.strategy_used == LABEL_FALLBACK

    def test_closed_alumni_gate_strips_alumni(self, make_service):
        """Verify alumni are not offered when the gate is closed."""
        seen = {}

        def respond(prompt):
            seen["prompt"] = prompt
            return json.dumps(llm_choice(alumni="a-writer"))

        provider = FakeProvider("primary", respond)
        profile = {"childDescription": "curious builder", "interests": ["robotics"], "gradeLevel": "upper"}
        result = asyncio.run(make_service([provider]).match(profile, GENERATIVE))

        assert "No alumni candidates found" in seen["prompt"]
        assert result.strategy_used == LABEL_FALLBACK
        assert result.selected_alumni is None

    def test_stage_timeout_falls_back(self, make_service, test_settings, scenario_profile):
        """Verify a slow stage is abandoned at the stage timeout."""
        settings = test_settings.model_copy(update={
            "matching": MatchingSettings(min_similarity=-1.0, stage_timeout_seconds=0.2),
        })
        provider = FakeProvider("slow", llm_choice(), delay=1.5)
        result = asyncio.run(make_service([provider], settings=settings).match(scenario_profile, GENERATIVE))

        assert result.strategy_used == LABEL_FALLBACK
        assert result.fallback_used is True


class TestCachingAndAnalytics:
    """Test result caching and per-request analytics."""

    def test_second_request_is_cached(self, make_service, scenario_profile):
        """Verify an identical questionnaire is served from the cache."""
        service = make_service()

        async def run():
            first = await service.match(scenario_profile, DETERMINISTIC)
            await service.cache.drain()
            second = await service.match(scenario_profile, DETERMINISTIC)
            return first, second

        first, second = asyncio.run(run())
        assert second.strategy_used == f"{LABEL_DETERMINISTIC}:cached"
        assert second.selected_staff.id == first.selected_staff.id
        assert len(service.analytics.recent(10)) == 1

    def test_changed_characteristics_miss_the_cache(self, make_service):
        """Verify a new characteristic is recomputed and can open the alumni gate."""
        service = make_service()

        async def run():
            quiet = await service.match({"gradeLevel": "upper", "selectedCharacteristics": ["quiet"]}, DETERMINISTIC)
            await service.cache.drain()
            athletic = await service.match({"gradeLevel": "upper", "selectedCharacteristics": ["athletic"]}, DETERMINISTIC)
            return quiet, athletic

        quiet, athletic = asyncio.run(run())
        assert quiet.selected_alumni is None
        assert athletic.strategy_used == LABEL_DETERMINISTIC
        assert athletic.selected_alumni is not None

    def test_strategy_override_misses_the_cache(self, make_service, scenario_profile):
        """Verify a cached default-strategy result is not served to an explicit strategy."""
        service = make_service()

        async def run():
            default = await service.match(scenario_profile)
            await service.cache.drain()
            explicit = await service.match(scenario_profile, DETERMINISTIC)
            return default, explicit

        default, explicit = asyncio.run(run())
        assert default.strategy_used == LABEL_FALLBACK
        assert explicit.strategy_used == LABEL_DETERMINISTIC

    def test_cache_bypass(self, make_service, scenario_profile):
        """Verify use_cache=False always recomputes."""
        service = make_service()
        options = MatchOptions(strategy=Strategy.DETERMINISTIC, use_cache=False)

        async def run():
            await service.match(scenario_profile, options)
            await service.cache.drain()
            return await service.match(scenario_profile, options)

        assert asyncio.run(run()).strategy_used == LABEL_DETERMINISTIC
        assert len(service.analytics.recent(10)) == 2

    def test_analytics_entry(self, make_service, scenario_profile):
        """Verify each request is recorded with its strategy."""
        service = make_service([FakeProvider("primary", llm_choice())])
        asyncio.run(service.match(scenario_profile, GENERATIVE))

        entry = service.analytics.recent(1)[0]
        assert entry.results["strategy"] == LABEL_SEMANTIC_GENERATIVE
        assert entry.generative_selection["provider"] == "primary"
        assert entry.semantic_results["faculty_found"] == 2


class TestLifecycle:
    """Test construction, reload and stats."""

    def test_broken_corpus_is_fatal(self, make_service, corpus_provider):
        """Verify the service refuses to start without a corpus."""
        corpus_provider.fail = True
        with pytest.raises(CorpusFatal):
            make_service()

    def test_reload(self, make_service, corpus_provider):
        """Verify reload swaps the snapshot and failures keep the old one."""
        service = make_service()
        before = service.corpus

        stats = asyncio.run(service.reload())
        assert corpus_provider.loads == 2
        assert stats["corpus"]["students"] == 2

        corpus_provider.fail = True
        with pytest.raises(CorpusFatal):
            asyncio.run(service.reload())
        assert service.corpus is before

    def test_stats(self, make_service):
        """Verify the stats view."""
        stats = make_service().stats()
        assert stats["corpus"]["faculty"] == 2
        assert stats["generative_available"] is False
        assert stats["experiment"]["default_strategy"] == "semantic+generative"
