"""
Writer stage: outline into full HTML, one unit at a time.

Units run strictly in order (introduction, each section, conclusion)
because every prompt carries the tail of the HTML written so far. Each
finished unit is appended immediately and reported through the progress
callback so the caller can stream partial output.
"""

from __future__ import annotations

import inspect
import logging
import re
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from blogsmith.ai_client import AITextGenerator
from blogsmith.models import (
    ArticleContent,
    GenerateOptions,
    Outline,
    OutlineSection,
    ResearchBundle,
)
from blogsmith.utils import count_words, extract_urls

logger = logging.getLogger("blogsmith.writer")

MAX_TOKENS_INTRO = 1500
MAX_TOKENS_SECTION = 2000
MAX_TOKENS_CONCLUSION = 1200
WRITER_TEMPERATURE = 0.7

SECTION_CONTEXT_CHARS = 500
CONCLUSION_CONTEXT_CHARS = 800

ProgressCallback = Callable[[Dict[str, str]], Union[None, Awaitable[None]]]

INTRO_SYSTEM_PROMPT = """You are a senior copywriter. Write engaging, elegant introductions.
Write in the same language as the provided outline title.
Requirements:
- Strong hook in the first sentence (question, data, concrete stake)
- State reader intent and benefit clearly
- Announce the promise (what the reader will get)
- Tone: professional, warm, clear; no unnecessary jargon
- 150-220 words; short-to-medium sentences; good rhythm
- Clean semantic HTML (<p>, <strong>, <em>); no <h1>
- Avoid cliches (e.g. "In this article..."); prefer a vivid opening."""

SECTION_SYSTEM_PROMPT = """You are a senior writer. Produce pedagogical, structured, pleasant sections.
Write in the same language as the provided outline title.
Rules:
- H2 title = provided section title, followed by a bridge sentence linking to previous context
- Develop each key point with examples, micro-steps, or mini-cases
- Target length about {words} words; short paragraphs
- Add H3s when helpful for pacing
- Prefer lists (<ul><li>) to synthesize steps/tips
- Style: concrete, active, precise; avoid repetition and filler
- Clean HTML only: <h2>, <h3>, <p>, <ul>, <li>, <strong>, <em>; no <h1>
- Natural SEO (no keyword stuffing)."""

CONCLUSION_SYSTEM_PROMPT = """You are a senior writer. Craft memorable conclusions that inspire action.
Write in the same language as the provided outline title.
Expectations:
- Fast, clear synthesis (what to remember)
- Put in perspective (why it matters now)
- Natural, useful CTA (next concrete step)
- 130-180 words, positive and motivating tone
- Clean HTML only: <p>, <strong>, <em>; no headings."""


def _bullets(items: List[str]) -> str:
    return "\n".join(f"- {item}" for item in items)


def _tail(text: str, chars: int) -> str:
    return text[-chars:] if len(text) > chars else text


def clean_unit_html(html: str) -> str:
    """Strip code fences and demote any ``<h1>`` a model slipped in to ``<h2>``."""
    html = (html or "").strip()
    html = re.sub(r"^```(?:html)?\s*\n?", "", html)
    html = re.sub(r"\n?```\s*$", "", html)
    html = re.sub(r"<h1(\s[^>]*)?>", lambda m: f"<h2{m.group(1) or ''}>", html, flags=re.IGNORECASE)
    html = re.sub(r"</h1\s*>", "</h2>", html, flags=re.IGNORECASE)
    return html.strip()


def wrap_article(content: str, title: str) -> str:
    """Root structure: one h1 header block, then the content container."""
    return (
        "<article>\n"
        "  <header>\n"
        f"    <h1>{title}</h1>\n"
        "  </header>\n"
        '  <div class="article-content">\n'
        f"    {content}\n"
        "  </div>\n"
        "</article>"
    )


class ArticleWriter:
    """Expands an outline into HTML through sequential provider calls."""

    def __init__(self, ai: AITextGenerator, options: Optional[GenerateOptions] = None) -> None:
        self.ai = ai
        self.options = options or GenerateOptions()

    # -- Prompts ------------------------------------------------------------

    def build_intro_prompt(self, outline: Outline, research_text: str, extra_context: str) -> str:
        return f"""Write an engaging blog introduction for: "{outline.title}"

Mention these key points:
{_bullets(outline.introduction_points)}

Desired tone: {outline.tone}

Complete research information:
{research_text}

Additional constraints (if any):
{extra_context.strip()}

Sections that will be covered:
{_bullets([s.title for s in outline.sections])}

The introduction must be engaging, informative, and make the reader want to continue.
Write in the same language as the article title."""

    def build_section_prompt(
        self,
        section: OutlineSection,
        outline: Outline,
        research_text: str,
        previous: str,
        extra_context: str,
    ) -> str:
        subsections = ""
        if section.subsections:
            subsections = f"Optional subsections:\n{_bullets(section.subsections)}"
        return f"""Write the next section for the article "{outline.title}":

SECTION TITLE: {section.title}

Key points to develop:
{_bullets(section.key_points)}

{subsections}

Target length: about {section.estimated_word_count} words

Article context (previous content):
{_tail(previous, SECTION_CONTEXT_CHARS)}

Additional constraints (if any):
{extra_context.strip()}

Complete research information:
{research_text}

The section must flow naturally from the previous content and develop the topic.
Write in the same language as the article title."""

    def build_conclusion_prompt(
        self, outline: Outline, research_text: str, previous: str, extra_context: str
    ) -> str:
        cta = f"Call-to-action: {outline.call_to_action}" if outline.call_to_action else ""
        return f"""Write a conclusion for the article "{outline.title}":

Key points to summarize:
{_bullets(outline.conclusion_points)}

{cta}

Additional constraints (if any):
{extra_context.strip()}

Article content to summarize:
{_tail(previous, CONCLUSION_CONTEXT_CHARS)}

Complete research information:
{research_text}

The conclusion should synthesize the main points and encourage reader action.
Write in the same language as the article title."""

    # -- Generation ---------------------------------------------------------

    async def _write_unit(self, system_prompt: str, prompt: str, max_tokens: int) -> str:
        opts = replace(self.options, max_tokens=max_tokens, temperature=WRITER_TEMPERATURE)
        text = await self.ai.generate_text(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            opts,
        )
        return clean_unit_html(text)

    @staticmethod
    async def _notify(on_progress: Optional[ProgressCallback], section: str, html: str) -> None:
        if on_progress is None:
            return
        result: Any = on_progress({"section": section, "content": html})
        if inspect.isawaitable(result):
            await result

    async def write_article(
        self,
        outline: Outline,
        research: ResearchBundle,
        extra_context: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> ArticleContent:
        """
        Write the complete article.

        Parameters
        ----------
        outline : Outline
            Validated outline (title, intro points, sections, conclusion).
        research : ResearchBundle
            Research whose full text goes into every prompt.
        extra_context : str
            Free-text constraints from the user.
        on_progress : callable, optional
            Called (or awaited) with ``{"section", "content"}`` after each
            unit: "Introduction", every section title, then "Conclusion".

        Returns
        -------
        ArticleContent
            Wrapped HTML, word count of the unit text, unique source URLs.

        Raises
        ------
        ProviderError
            Any unit failure aborts the whole article.
        """
        logger.info("WRITE PHASE: title='%s' sections=%d", outline.title[:60], len(outline.sections))
        start_time = time.monotonic()
        research_text = research.full_text()
        content = ""

        intro = await self._write_unit(
            INTRO_SYSTEM_PROMPT,
            self.build_intro_prompt(outline, research_text, extra_context),
            MAX_TOKENS_INTRO,
        )
        content += intro
        await self._notify(on_progress, "Introduction", intro)

        for index, section in enumerate(outline.sections, start=1):
            html = await self._write_unit(
                SECTION_SYSTEM_PROMPT.format(words=section.estimated_word_count),
                self.build_section_prompt(section, outline, research_text, content, extra_context),
                MAX_TOKENS_SECTION,
            )
            content += html
            logger.info(
                "Section %d/%d written: '%s' (%d words)",
                index, len(outline.sections), section.title[:50], count_words(html),
            )
            await self._notify(on_progress, section.title, html)

        conclusion = await self._write_unit(
            CONCLUSION_SYSTEM_PROMPT,
            self.build_conclusion_prompt(outline, research_text, content, extra_context),
            MAX_TOKENS_CONCLUSION,
        )
        content += conclusion
        await self._notify(on_progress, "Conclusion", conclusion)

        article = ArticleContent(
            html=wrap_article(content, outline.title),
            word_count=count_words(content),
            sources=extract_urls(content),
        )
        logger.info(
            "WRITE COMPLETE: %d words, %d sources in %.1fs",
            article.word_count, len(article.sources), time.monotonic() - start_time,
        )
        return article
