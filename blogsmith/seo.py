"""
SEO stage: metadata generation plus a deterministic score.

The provider proposes title, description, slug and keywords; the result is
normalized without another call (length caps, slug regeneration, default
keywords). :func:`analyze_seo_score` is a pure function of its inputs.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import replace
from typing import List, Optional

from blogsmith.ai_client import AITextGenerator
from blogsmith.errors import ContentGenerationError
from blogsmith.models import ArticleContent, GenerateOptions, Outline, SEOAnalysis, SEOMetadata
from blogsmith.utils import generate_slug, parse_model_json, strip_html, truncate

logger = logging.getLogger("blogsmith.seo")

META_TITLE_MAX = 60
META_TITLE_MIN = 30
META_DESCRIPTION_MAX = 160
META_DESCRIPTION_MIN = 120
MIN_WORD_COUNT = 800
MAX_KEYWORDS = 8
POINTS_PER_CHECK = 20

MAX_TOKENS_SEO = 1000
SEO_TEMPERATURE = 0.3

SYSTEM_PROMPT = """You are a SEO/Copywriting expert. Generate clickworthy (non-clickbait) metadata.
Write outputs in the same language as the provided topic/title.
Rules:
- Title <= 60 characters, clear, benefit + natural primary keyword
- Description <= 160 characters, value + curiosity, action verb
- Slug short, readable, keyword patterns (dashes), no stop-words
- Tone: professional, engaging

Respond ONLY with valid JSON, no extra text."""


def extract_keywords(outline: Outline, topic: str, limit: int = 10) -> List[str]:
    """Most frequent words longer than three characters in title, headings and topic."""
    text = " ".join([outline.title, *(s.title for s in outline.sections), topic]).lower()
    words = [w for w in re.sub(r"[^\w\s]", " ", text).split() if len(w) > 3]
    return [word for word, _ in Counter(words).most_common(limit)]


def build_seo_prompt(outline: Outline, content: ArticleContent, topic: str) -> str:
    preview = strip_html(content.html)[:500].strip()
    sections = "\n".join(f"- {s.title}" for s in outline.sections)
    return f"""Generate optimal, engaging SEO metadata for this blog post:

MAIN TOPIC: {topic}
ARTICLE TITLE: {outline.title}
IDENTIFIED KEYWORDS: {", ".join(extract_keywords(outline, topic))}

CONTENT (preview):
{preview}...

MAIN SECTIONS:
{sections}

Return JSON with this exact structure and well-filled fields:
{{
  "metaTitle": "SEO-optimized title (max 60 characters)",
  "metaDescription": "Engaging meta description (max 160 characters)",
  "slug": "seo-optimized-url-slug",
  "keywords": ["keyword-1", "keyword-2", "keyword-3", "keyword-4", "keyword-5"]
}}

Mandatory criteria:
- Meta title: max 60 chars, includes primary keyword
- Meta description: max 160 chars, compels click
- Slug: URL-friendly, with dashes, max 60 chars
- Keywords: 5-8 relevant terms, mix of short- and long-tail

Write outputs in the same language as the provided topic/title."""


def normalize_metadata(metadata: SEOMetadata, topic: str) -> SEOMetadata:
    """Enforce length caps, a clean slug and a non-empty keyword list."""
    title = truncate(metadata.meta_title.strip(), META_TITLE_MAX)
    description = truncate(metadata.meta_description.strip(), META_DESCRIPTION_MAX)
    slug = generate_slug(metadata.slug or title) or generate_slug(topic) or "article"
    keywords = [k.strip() for k in metadata.keywords if k.strip()][:MAX_KEYWORDS]
    if not keywords:
        keywords = [topic.lower(), "guide", "tips", "2025", "strategy"]
    return SEOMetadata(meta_title=title, meta_description=description, slug=slug, keywords=keywords)


def analyze_seo_score(metadata: SEOMetadata, content: ArticleContent) -> SEOAnalysis:
    """Score metadata and content against five fixed checks (20 points each)."""
    score = 0
    recommendations: List[str] = []

    if META_TITLE_MIN <= len(metadata.meta_title) <= META_TITLE_MAX:
        score += POINTS_PER_CHECK
    else:
        recommendations.append("Adjust the SEO title length (30-60 characters)")

    if META_DESCRIPTION_MIN <= len(metadata.meta_description) <= META_DESCRIPTION_MAX:
        score += POINTS_PER_CHECK
    else:
        recommendations.append("Adjust the meta description length (120-160 characters)")

    title_lower = metadata.meta_title.lower()
    if any(kw.lower() in title_lower for kw in metadata.keywords if kw):
        score += POINTS_PER_CHECK
    else:
        recommendations.append("Include at least one keyword in the title")

    if content.word_count >= MIN_WORD_COUNT:
        score += POINTS_PER_CHECK
    else:
        recommendations.append("Increase the content length (minimum 800 words)")

    if len(metadata.slug) <= 60 and "-" in metadata.slug:
        score += POINTS_PER_CHECK
    else:
        recommendations.append("Optimize the URL slug (short, with hyphens)")

    return SEOAnalysis(score=score, recommendations=recommendations)


class SEOOptimizer:
    """Generates and normalizes SEO metadata with one provider call."""

    def __init__(self, ai: AITextGenerator, options: Optional[GenerateOptions] = None) -> None:
        self.ai = ai
        self.options = options or GenerateOptions()

    async def generate_metadata(
        self, outline: Outline, content: ArticleContent, topic: str
    ) -> SEOMetadata:
        """
        Produce metadata satisfying the length invariants.

        Raises
        ------
        ContentGenerationError
            Empty or unparseable model output.
        """
        opts = replace(self.options, max_tokens=MAX_TOKENS_SEO, temperature=SEO_TEMPERATURE)
        raw = await self.ai.generate_text(
            [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_seo_prompt(outline, content, topic)},
            ],
            opts,
        )
        if not raw or not raw.strip():
            raise ContentGenerationError("No SEO data generated")
        try:
            data = parse_model_json(raw)
        except ValueError as exc:
            raise ContentGenerationError(f"Failed to parse SEO JSON: {exc}") from exc

        metadata = normalize_metadata(SEOMetadata.from_dict(data), topic)
        logger.info("SEO metadata: title=%r slug=%s keywords=%d", metadata.meta_title, metadata.slug, len(metadata.keywords))
        return metadata
