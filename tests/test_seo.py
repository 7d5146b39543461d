"""
Tests for SEO metadata normalization and scoring.
"""

import re

import pytest

from blogsmith.errors import ContentGenerationError
from blogsmith.models import ArticleContent, SEOMetadata
from blogsmith.seo import (
    SEOOptimizer,
    analyze_seo_score,
    extract_keywords,
    normalize_metadata,
)

SLUG_RE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


class TestNormalize:

    @pytest.mark.unit
    def test_caps_lengths_and_rebuilds_slug(self):
        meta = normalize_metadata(
            SEOMetadata(meta_title="T" * 90, meta_description="D" * 300, slug="Hello World!!", keywords=["a"]),
            "topic",
        )
        assert len(meta.meta_title) <= 60
        assert len(meta.meta_description) <= 160
        assert meta.slug == "hello-world"

    @pytest.mark.unit
    def test_slug_falls_back_to_title_then_topic(self):
        meta = normalize_metadata(SEOMetadata("Great Title", "", ""), "topic")
        assert meta.slug == "great-title"
        meta = normalize_metadata(SEOMetadata("", "", "!!!"), "Backup Topic")
        assert meta.slug == "backup-topic"

    @pytest.mark.unit
    def test_default_keywords(self):
        meta = normalize_metadata(SEOMetadata("x", "", "x", keywords=[" ", ""]), "Composting")
        assert meta.keywords == ["composting", "guide", "tips", "2025", "strategy"]

    @pytest.mark.unit
    def test_keyword_cap(self):
        meta = normalize_metadata(SEOMetadata("x", "", "x", keywords=[f"k{i}" for i in range(12)]), "t")
        assert len(meta.keywords) == 8


class TestScore:

    @pytest.mark.unit
    def test_perfect_score(self, seo_metadata):
        content = ArticleContent(html="<p>x</p>", word_count=1200)
        analysis = analyze_seo_score(seo_metadata, content)
        assert analysis.score == 100
        assert analysis.recommendations == []

    @pytest.mark.unit
    def test_each_failed_check_costs_twenty(self):
        meta = SEOMetadata(meta_title="Short", meta_description="Too short", slug="nohyphen", keywords=["other"])
        analysis = analyze_seo_score(meta, ArticleContent(html="", word_count=10))
        assert analysis.score == 0
        assert len(analysis.recommendations) == 5

    @pytest.mark.unit
    def test_score_is_deterministic(self, seo_metadata, article_content):
        first = analyze_seo_score(seo_metadata, article_content)
        second = analyze_seo_score(seo_metadata, article_content)
        assert first == second
        assert first.score % 20 == 0


class TestKeywords:

    @pytest.mark.unit
    def test_extract_keywords(self, outline):
        keywords = extract_keywords(outline, "composting at home")
        assert keywords[:2] == ["section", "composting"]
        assert "to" not in keywords
        assert "home" in keywords


class TestSEOOptimizer:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate_metadata_normalizes(self, mock_ai, outline, article_content, seo_json):
        mock_ai.generate_text.return_value = seo_json
        meta = await SEOOptimizer(mock_ai).generate_metadata(outline, article_content, "Intro to Composting")

        assert len(meta.meta_title) <= 60
        assert len(meta.meta_description) <= 160
        assert SLUG_RE.match(meta.slug)
        assert meta.slug == "intro-to-composting"
        assert mock_ai.generate_text.await_args.args[1].temperature == 0.3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_output(self, mock_ai, outline, article_content):
        mock_ai.generate_text.return_value = ""
        with pytest.raises(ContentGenerationError, match="No SEO data generated"):
            await SEOOptimizer(mock_ai).generate_metadata(outline, article_content, "x")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unparseable_output(self, mock_ai, outline, article_content):
        mock_ai.generate_text.return_value = "Here are some ideas: nice title"
        with pytest.raises(ContentGenerationError):
            await SEOOptimizer(mock_ai).generate_metadata(outline, article_content, "x")
