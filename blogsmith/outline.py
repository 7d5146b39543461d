"""
Outline stage: topic + research into a structured article outline.

One provider call with a JSON-only instruction. The answer is cleaned,
repaired and validated; outlines with fewer than four sections are padded
with generic sections so downstream stages can rely on the minimum.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional

from blogsmith.ai_client import AITextGenerator
from blogsmith.errors import ContentGenerationError
from blogsmith.models import GenerateOptions, Outline, OutlineSection, ResearchBundle
from blogsmith.utils import parse_model_json

logger = logging.getLogger("blogsmith.outline")

MIN_SECTIONS = 4
MIN_KEY_POINTS = 2
DEFAULT_SECTION_WORDS = 300
RESEARCH_SNIPPETS = 5
SNIPPET_CHARS = 200

MAX_TOKENS_OUTLINE = 2000
OUTLINE_TEMPERATURE = 0.7

SYSTEM_PROMPT = """You are a senior editorial strategist. You produce reader-first, high-converting blog outlines.
Write all titles and text in the same language as the provided topic/title.
Key requirements:
- Clear, differentiating angle in the title
- 4-6 sections with logical progression (context to action)
- Concrete, actionable key points supported by the provided research
- Tone: professional, warm, accessible (avoid unnecessary jargon)
- SEO intent integrated naturally (no over-optimization)

CRITICAL: You MUST respond with ONLY valid JSON. No markdown, no code blocks, no explanations.
Start directly with { and end with }. Escape all quotes inside strings with \\."""

_STRUCTURE = """{
  "title": "Compelling article title",
  "introduction": {
    "keyPoints": ["Clear promise", "Why it matters now", "What the reader will learn"],
    "tone": "professional-warm|educational|approachable expert"
  },
  "sections": [
    {
      "title": "Section title",
      "keyPoints": ["Concrete key idea 1", "Key idea 2 supported by a data point", "Key idea 3 with example"],
      "estimatedWordCount": 300,
      "subsections": ["Optional subsection 1", "Optional subsection 2"]
    }
  ],
  "conclusion": {
    "keyPoints": ["Memorable synthesis", "Immediate actionable advice"],
    "callToAction": "Natural, value-oriented CTA"
  }
}"""


def build_outline_prompt(topic: str, research: ResearchBundle, extra_context: str = "") -> str:
    snippets = "\n".join(
        f"- {r.title}: {r.content[:SNIPPET_CHARS]}..." for r in research.results[:RESEARCH_SNIPPETS]
    )
    return f"""Generate a complete blog outline in JSON for the topic: "{topic}".

Research (recent snippets):
{snippets}

Additional constraints (if any):
{(extra_context or "").strip()}

Structure requirements (strictly follow keys):
{_STRUCTURE}

Criteria:
- 4-6 sections (250-400 words each), natural progression
- Concrete points based on the provided research
- Benefit-oriented title with natural primary keyword
- Consistent tone: professional, warm, clear, dynamic

Write the outline's content in the same language as the provided topic/title."""


def _points(block: Any) -> List[str]:
    """Key points from an ``{keyPoints: [...]}`` block or a bare string."""
    if isinstance(block, dict):
        raw = block.get("keyPoints") or block.get("key_points") or []
        return [str(p) for p in raw if str(p).strip()]
    if isinstance(block, list):
        return [str(p) for p in block if str(p).strip()]
    if isinstance(block, str) and block.strip():
        return [block.strip()]
    return []


def outline_from_data(data: Dict[str, Any], topic: str) -> Outline:
    """Validate parsed model JSON and enforce the section invariants.

    Raises
    ------
    ContentGenerationError
        When title, introduction, sections or conclusion is missing.
    """
    if any(data.get(key) is None for key in ("title", "introduction", "sections", "conclusion")):
        raise ContentGenerationError("Invalid outline structure")
    if not isinstance(data["sections"], list):
        raise ContentGenerationError("Invalid outline structure")

    introduction = data["introduction"]
    conclusion = data["conclusion"]
    sections = [
        OutlineSection.from_dict(s if isinstance(s, dict) else {"title": str(s)})
        for s in data["sections"]
    ]

    while len(sections) < MIN_SECTIONS:
        sections.append(
            OutlineSection(
                title=f"Key aspects of {topic}",
                key_points=[
                    f"Point to develop about {topic}",
                    "Supporting detail",
                    "Concrete example",
                ],
                estimated_word_count=DEFAULT_SECTION_WORDS,
            )
        )

    for section in sections:
        if len(section.key_points) < MIN_KEY_POINTS:
            section.key_points.extend(
                [f"Additional point on {section.title}", "Important detail to remember"]
            )
        if section.estimated_word_count <= 0:
            section.estimated_word_count = DEFAULT_SECTION_WORDS

    return Outline(
        title=str(data["title"]).strip(),
        introduction_points=_points(introduction),
        tone=(introduction.get("tone") if isinstance(introduction, dict) else None) or "professional",
        sections=sections,
        conclusion_points=_points(conclusion),
        call_to_action=conclusion.get("callToAction") if isinstance(conclusion, dict) else None,
    )


class OutlineGenerator:
    """Generates the article outline with one provider call."""

    def __init__(self, ai: AITextGenerator, options: Optional[GenerateOptions] = None) -> None:
        self.ai = ai
        self.options = options or GenerateOptions()

    async def generate_outline(
        self, topic: str, research: ResearchBundle, extra_context: str = ""
    ) -> Outline:
        """
        Produce a validated outline with at least four sections.

        Raises
        ------
        ContentGenerationError
            Empty model output, unparseable JSON, or missing required fields.
        ProviderError
            Propagated from the provider adapter.
        """
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_outline_prompt(topic, research, extra_context)},
        ]
        opts = replace(self.options, max_tokens=MAX_TOKENS_OUTLINE, temperature=OUTLINE_TEMPERATURE)
        content = await self.ai.generate_text(messages, opts)
        logger.debug("Outline raw content: %d chars", len(content or ""))

        if not content or not content.strip():
            logger.error("Empty outline from provider=%s model=%s", opts.provider, opts.model)
            raise ContentGenerationError("No content generated for outline")

        try:
            data = parse_model_json(content)
        except ValueError as exc:
            raise ContentGenerationError(f"Failed to parse outline JSON: {exc}") from exc

        outline = outline_from_data(data, topic)
        logger.info("Outline for '%s': %d sections", topic[:60], len(outline.sections))
        return outline
