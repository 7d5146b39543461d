"""
Shared fixtures for the Blogsmith test suite.

Provides credentials, sample outlines and content, and reusable mock
objects so that all tests run WITHOUT any external services.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from blogsmith.config import ProviderCredentials
from blogsmith.models import (
    ArticleContent,
    GenerationResult,
    Outline,
    OutlineSection,
    ResearchBundle,
    SearchResult,
    SEOMetadata,
    TokenUsage,
)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

@pytest.fixture
def credentials():
    """Credentials with every provider configured."""
    return ProviderCredentials(
        openai_key="sk-test-openai-1234",
        anthropic_key="sk-ant-test-5678",
        gemini_key="gemini-test-key",
        deepseek_key="deepseek-test-key",
        qwen_key="qwen-test-key",
        grok_key="grok-test-key",
        perplexity_key="pplx-test-key",
        unsplash_key="unsplash-test-key",
        wordpress_url="https://blog.example.com",
        wordpress_username="editor",
        wordpress_password="abcd efgh ijkl mnop",
    )


@pytest.fixture
def bare_credentials():
    """Credentials with nothing configured."""
    return ProviderCredentials()


# ---------------------------------------------------------------------------
# Content fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def outline():
    """A four-section outline."""
    return Outline(
        title="Intro to Composting",
        introduction_points=["Why compost matters", "What you need"],
        tone="friendly",
        sections=[
            OutlineSection(
                title=f"Section {i}",
                key_points=[f"Point {i}a", f"Point {i}b"],
                estimated_word_count=250,
            )
            for i in range(1, 5)
        ],
        conclusion_points=["Start small", "Keep it balanced"],
        call_to_action="Start your first pile this weekend",
    )


@pytest.fixture
def article_html():
    """Wrapped article HTML with an intro, four H2 sections and a conclusion."""
    sections = "".join(
        f"<h2>Section {i}</h2><p>Body of section {i} with some words.</p>" for i in range(1, 5)
    )
    return (
        "<article><h1>Intro to Composting</h1>"
        "<p>Intro paragraph about composting.</p>"
        f"{sections}"
        "<p>Conclusion paragraph.</p></article>"
    )


@pytest.fixture
def article_content(article_html):
    return ArticleContent(html=article_html, word_count=42, sources=[])


@pytest.fixture
def seo_metadata():
    return SEOMetadata(
        meta_title="Intro to Composting: A Beginner's Guide",
        meta_description="Learn how to start composting at home with simple steps, the right mix of greens and browns, and a little patience for rich soil.",
        slug="intro-to-composting",
        keywords=["composting", "compost bin", "organic waste"],
    )


@pytest.fixture
def research_bundle():
    results = [
        SearchResult(
            title=f"composting - Result {i}",
            content=f"Composting fact number {i} that is long enough to be a paragraph.",
            url=f"https://www.perplexity.ai/search?q=composting&r={i}",
            relevance_score=1.0 - i * 0.1,
        )
        for i in range(7)
    ]
    return ResearchBundle(
        query="Intro to Composting",
        results=results,
        usage=TokenUsage(120, 80),
        model="sonar-pro",
        queries=["Intro to Composting", "Intro to Composting latest news 2025"],
    )


# ---------------------------------------------------------------------------
# AI mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def outline_json():
    """A valid outline response as a model would return it."""
    return json.dumps({
        "title": "Intro to Composting",
        "introduction": {"keyPoints": ["Why compost", "What you need"]},
        "sections": [
            {"title": f"Step {i}", "keyPoints": ["a", "b", "c"], "estimatedWordCount": 300}
            for i in range(1, 6)
        ],
        "conclusion": {"keyPoints": ["Recap", "Next steps"]},
        "tone": "friendly",
        "callToAction": "Start today",
    })


@pytest.fixture
def seo_json():
    return json.dumps({
        "metaTitle": "Intro to Composting: Everything a Beginner Needs to Know Today",
        "metaDescription": "Composting turns kitchen scraps into rich soil. " * 5,
        "slug": "Intro to Composting!",
        "keywords": ["composting", "compost", "soil", "garden", "waste", "bin"],
    })


@pytest.fixture
def mock_ai():
    """A stand-in for AITextGenerator whose generate_text is an AsyncMock."""
    ai = MagicMock()
    ai.generate_text = AsyncMock(return_value="")
    ai.generate = AsyncMock(return_value=GenerationResult(text=""))
    ai.get_usage_totals = MagicMock(return_value={"input": 0, "output": 0, "total": 0})
    ai.close = AsyncMock()
    return ai


# ---------------------------------------------------------------------------
# HTTP mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_aiohttp_response():
    """Create a mock aiohttp response factory."""

    def _make(status=200, json_data=None, text="", headers=None, body=b""):
        resp = AsyncMock()
        resp.status = status
        resp.json = AsyncMock(return_value=json_data if json_data is not None else {})
        resp.text = AsyncMock(return_value=text or json.dumps(json_data or {}))
        resp.read = AsyncMock(return_value=body)
        resp.headers = headers or {"Content-Type": "application/json"}
        resp.__aenter__ = AsyncMock(return_value=resp)
        resp.__aexit__ = AsyncMock(return_value=False)
        return resp

    return _make


@pytest.fixture
def mock_aiohttp_session(mock_aiohttp_response):
    """Create a mock aiohttp ClientSession."""
    session = AsyncMock()
    default_resp = mock_aiohttp_response(200, {"ok": True})
    session.get = MagicMock(return_value=default_resp)
    session.post = MagicMock(return_value=default_resp)
    session.request = MagicMock(return_value=default_resp)
    session.close = AsyncMock()
    session.closed = False
    return session
