"""
Tests for the research stage: query tiers, answer parsing, ranking and
the never-fail contract of ResearchService.search_topic.
"""

from unittest.mock import AsyncMock, patch

import pytest

from blogsmith.errors import ProviderError
from blogsmith.models import ResearchDepth, SearchResult
from blogsmith.research import (
    DEPTH_MODELS,
    MAX_RESULTS,
    ResearchService,
    build_queries,
    deduplicate,
    parse_answer,
    score_results,
)


def _answer(n_paragraphs, prefix="Paragraph"):
    paragraphs = [
        f"{prefix} {i}: composting research detail that easily exceeds fifty characters of text."
        for i in range(n_paragraphs)
    ]
    return "\n\n".join(paragraphs)


def _completion(content, prompt_tokens=10, completion_tokens=20):
    return {
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


# ===================================================================
# Pure helpers
# ===================================================================

class TestQueries:

    @pytest.mark.unit
    @pytest.mark.parametrize("depth,count", [
        (ResearchDepth.SHALLOW, 3),
        (ResearchDepth.MODERATE, 5),
        (ResearchDepth.DEEP, 9),
    ])
    def test_tier_sizes(self, depth, count):
        assert len(build_queries("composting", depth)) == count

    @pytest.mark.unit
    def test_tiers_extend_each_other(self):
        shallow = build_queries("x", "shallow")
        deep = build_queries("x", "deep")
        assert deep[:3] == shallow
        assert all(q.startswith("x ") for q in deep)

    @pytest.mark.unit
    def test_depth_models(self):
        assert DEPTH_MODELS[ResearchDepth.SHALLOW] == "sonar"
        assert DEPTH_MODELS[ResearchDepth.DEEP] == "sonar-deep-research"


class TestParseAnswer:

    @pytest.mark.unit
    def test_short_paragraphs_dropped(self):
        content = "Too short.\n\n" + _answer(2)
        results = parse_answer(content, "compost tips")
        assert len(results) == 2
        assert results[0].title == "compost tips - Result 1"
        assert results[1].relevance_score == 0.9

    @pytest.mark.unit
    def test_url_encodes_query(self):
        results = parse_answer(_answer(1), "a b&c")
        assert results[0].url == "https://perplexity.ai/search?q=a%20b%26c"

    @pytest.mark.unit
    def test_empty_content(self):
        assert parse_answer("", "q") == []


class TestRanking:

    @pytest.mark.unit
    def test_deduplicate_by_prefix(self):
        text = "Same opening " * 10
        results = [
            SearchResult("a", text + "one", "u1"),
            SearchResult("b", text + "two", "u2"),
            SearchResult("c", "Different content entirely", "u3"),
        ]
        assert [r.title for r in deduplicate(results)] == ["a", "c"]

    @pytest.mark.unit
    def test_score_prefers_topic_hits(self):
        results = [
            SearchResult("Unrelated", "Nothing relevant is mentioned in this text at all.", "u1"),
            SearchResult("Compost guide", "Compost is great; compost often.", "u2"),
        ]
        ranked = score_results(results, "compost")
        assert ranked[0].url == "u2"
        assert ranked[1].relevance_score == 0

    @pytest.mark.unit
    def test_empty_content_scores_zero(self):
        ranked = score_results([SearchResult("compost", "", "u")], "compost")
        assert ranked[0].relevance_score == 0.0


# ===================================================================
# ResearchService
# ===================================================================

class TestResearchService:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_collects_usage_and_caps_results(self, credentials):
        service = ResearchService(credentials)
        responses = [_completion(_answer(4, prefix=f"Query {i}")) for i in range(5)]
        with patch.object(service, "_post_completion", AsyncMock(side_effect=responses)) as post:
            bundle = await service.search_topic("composting", ResearchDepth.MODERATE)

        assert post.await_count == 5
        assert post.await_args_list[0].args[1] == "sonar-pro"
        assert len(bundle.results) == MAX_RESULTS
        assert bundle.usage.prompt_tokens == 50
        assert bundle.usage.total_tokens == 150
        assert bundle.model == "sonar-pro"
        assert len(bundle.queries) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_query_is_skipped(self, credentials):
        service = ResearchService(credentials)
        side_effect = [
            ProviderError("HTTP 500", status_code=500, provider="perplexity"),
            _completion(_answer(2)),
            _completion(_answer(1, prefix="Other")),
        ]
        with patch.object(service, "_post_completion", AsyncMock(side_effect=side_effect)):
            bundle = await service.search_topic("composting", ResearchDepth.SHALLOW)

        assert len(bundle.results) == 3
        assert bundle.usage.total_tokens == 60

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_queries_failing_yields_empty_results(self, credentials):
        service = ResearchService(credentials)
        error = ProviderError("HTTP 401", status_code=401, provider="perplexity")
        with patch.object(service, "_post_completion", AsyncMock(side_effect=error)):
            bundle = await service.search_topic("composting", ResearchDepth.SHALLOW)

        assert bundle.results == []
        assert bundle.usage.total_tokens == 0
        assert bundle.sample() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_error_never_raises(self, credentials):
        service = ResearchService(credentials)
        with patch.object(service, "_search", AsyncMock(side_effect=RuntimeError("boom"))):
            bundle = await service.search_topic("composting", ResearchDepth.DEEP)

        assert bundle.results == []
        assert bundle.queries == []
        assert bundle.usage.total_tokens == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_maps_to_provider_error(self, credentials, mock_aiohttp_response, mock_aiohttp_session):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(
            402, {"error": {"message": "insufficient credits"}}
        )
        service = ResearchService(credentials)
        with patch.object(service, "_get_session", AsyncMock(return_value=mock_aiohttp_session)):
            with pytest.raises(ProviderError) as excinfo:
                await service._post_completion("q", "sonar")
        assert excinfo.value.status_code == 402
        assert "insufficient credits" in str(excinfo.value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_request_payload(self, credentials, mock_aiohttp_response, mock_aiohttp_session):
        mock_aiohttp_session.post.return_value = mock_aiohttp_response(200, _completion("x"))
        service = ResearchService(credentials)
        with patch.object(service, "_get_session", AsyncMock(return_value=mock_aiohttp_session)):
            data = await service._post_completion("compost q", "sonar")

        assert data["usage"]["prompt_tokens"] == 10
        url = mock_aiohttp_session.post.call_args.args[0]
        payload = mock_aiohttp_session.post.call_args.kwargs["json"]
        assert url == f"{credentials.perplexity_base_url}/chat/completions"
        assert payload["model"] == "sonar"
        assert payload["max_tokens"] == 1000
        assert "compost q" in payload["messages"][1]["content"]
