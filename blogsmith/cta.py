"""
Call-to-action blocks: rendering, positional injection and AI copy.

Positions are resolved from a structural scan of the article's H1/H2
headings. ``middle`` and ``before-conclusion`` are computed once from the
total H2 count; ``after-section`` clamps to the last real section.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from blogsmith.ai_client import AITextGenerator
from blogsmith.errors import ContentGenerationError
from blogsmith.models import CTA, CTAColors, CTAPosition, CTAStyle, GenerateOptions
from blogsmith.utils import parse_model_json, truncate

logger = logging.getLogger("blogsmith.cta")

_HEADING_SPLIT_RE = re.compile(r"(<h[12][^>]*>.*?</h[12]>)", re.IGNORECASE | re.DOTALL)
_H2_OPEN_RE = re.compile(r"<h2[^>]*>", re.IGNORECASE)

CTA_TITLE_MAX = 60
CTA_DESCRIPTION_MAX = 120
CTA_BUTTON_MAX = 25
CTA_TEMPERATURE = 0.8
MAX_TOKENS_CTA = 300

CTA_SYSTEM_PROMPT = (
    "You are a professional copywriter specializing in creating compelling "
    "Call-to-Action content. Always respond with valid JSON only."
)

_STYLES: Dict[CTAStyle, Dict[str, str]] = {
    CTAStyle.BORDERED: {
        "container": "border: 2px solid #111; background: #fff;",
        "title": "color: #111;",
        "description": "color: #555;",
        "button": "background: #111; color: #fff; text-decoration: none;",
    },
    CTAStyle.GRADIENT: {
        "container": "background: linear-gradient(135deg, #111 0%, #333 50%, #555 100%);",
        "title": "color: #fff;",
        "description": "color: #e5e5e5;",
        "button": "background: #fff; color: #111; text-decoration: none;",
    },
    CTAStyle.MINIMAL: {
        "container": "background: #f5f5f5;",
        "title": "color: #111;",
        "description": "color: #555;",
        "button": "color: #111; text-decoration: underline;",
    },
    CTAStyle.DEFAULT: {
        "container": "background: #f0f0f0; border: 1px solid #ddd;",
        "title": "color: #111;",
        "description": "color: #555;",
        "button": "background: #111; color: #fff; text-decoration: none;",
    },
}


def escape_html(text: Optional[str]) -> str:
    return (
        (text or "")
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#039;")
    )


def style_rules(style: CTAStyle, colors: Optional[CTAColors] = None) -> Dict[str, str]:
    """Inline CSS fragments for container, title, description and button."""
    if style == CTAStyle.CUSTOM:
        c = colors or CTAColors()
        return {
            "container": f"background: {c.background or '#f0f0f0'};",
            "title": f"color: {c.title_color or '#111'};",
            "description": f"color: {c.description_color or '#555'};",
            "button": (
                f"background: {c.button_background or '#111'}; "
                f"color: {c.button_text_color or '#fff'}; text-decoration: none;"
            ),
        }
    return _STYLES.get(style, _STYLES[CTAStyle.DEFAULT])


def render_cta_html(cta: CTA) -> str:
    styles = style_rules(cta.style, cta.custom_colors)
    layout = "display: flex; gap: 1.5rem; align-items: center;" if cta.image_url else ""

    image = ""
    if cta.image_url:
        image = (
            '\n  <div style="flex-shrink: 0;">\n'
            f'    <img src="{escape_html(cta.image_url)}" alt="{escape_html(cta.title or "CTA")}" '
            'style="width: 150px; height: 150px; object-fit: cover; border-radius: 0.75rem;" />\n'
            "  </div>"
        )

    button = ""
    if cta.button_url:
        button = (
            f'\n    <a href="{escape_html(cta.button_url)}" target="_blank" rel="noopener noreferrer" '
            f'style="{styles["button"]} display: inline-flex; align-items: center; gap: 0.5rem; '
            'padding: 0.75rem 1.5rem; border-radius: 0.75rem; font-weight: 600; transition: all 0.2s;">\n'
            f"      {escape_html(cta.button_text or 'Learn More')}\n"
            '      <span style="font-size: 1rem;">&rarr;</span>\n'
            "    </a>"
        )

    return (
        "\n"
        f'<div class="cta-block" style="{styles["container"]} padding: 2rem; '
        f'border-radius: 1rem; margin: 2rem 0; {layout}">'
        f"{image}\n"
        '  <div style="flex: 1;">\n'
        f'    <h3 style="{styles["title"]} font-size: 1.5rem; font-weight: bold; margin: 0 0 0.75rem 0;">\n'
        f"      {escape_html(cta.title)}\n"
        "    </h3>\n"
        f'    <p style="{styles["description"]} margin: 0 0 1.5rem 0; line-height: 1.6;">\n'
        f"      {escape_html(cta.description)}\n"
        "    </p>"
        f"{button}\n"
        "  </div>\n"
        "</div>"
    )


def inject_ctas(html: str, ctas: Sequence[CTA]) -> str:
    """
    Splice rendered CTAs into *html* at their resolved positions.

    CTAs sharing a position are injected in list order. Content without
    any heading only receives ``end`` CTAs.
    """
    if not ctas:
        return html

    parts = _HEADING_SPLIT_RE.split(html)
    h2_count = len(_H2_OPEN_RE.findall(html))
    middle = h2_count // 2
    before_conclusion = max(0, h2_count - 1)
    last = len(parts) - 1

    if last == 0:
        tail = "".join(render_cta_html(c) for c in ctas if c.position_type == CTAPosition.END)
        return html + tail

    out: List[str] = []
    h2_seen = 0
    current_section = 0
    for i, part in enumerate(parts):
        out.append(part)
        if _H2_OPEN_RE.match(part):
            h2_seen += 1
            current_section = h2_seen
        # Even indices are the content between headings
        if i == 0 or i % 2 != 0:
            continue
        for cta in ctas:
            position = cta.position_type
            if position == CTAPosition.AFTER_INTRO:
                hit = i == 2 and h2_seen == 0
            elif position == CTAPosition.AFTER_SECTION:
                target = min(cta.section_number or 1, h2_count)
                hit = current_section == target
            elif position == CTAPosition.MIDDLE:
                hit = current_section == middle
            elif position == CTAPosition.BEFORE_CONCLUSION:
                hit = current_section == before_conclusion
            else:
                hit = i == last
            if hit:
                out.append(render_cta_html(cta))
    return "".join(out)


class CTAGenerator:
    """Writes CTA copy (title, description, button text) with one provider call."""

    def __init__(self, ai: AITextGenerator, options: Optional[GenerateOptions] = None) -> None:
        self.ai = ai
        self.options = options or GenerateOptions()

    async def generate_cta(self, prompt: str, url: str = "") -> Dict[str, str]:
        """
        Generate CTA copy for *prompt* pointing at *url*.

        Returns
        -------
        dict
            ``{"title", "description", "buttonText"}`` truncated to 60, 120
            and 25 characters.

        Raises
        ------
        ContentGenerationError
            Empty or unparseable model output.
        """
        user_prompt = f"""Generate a compelling Call-to-Action (CTA) based on this requirement:

{prompt}

Target URL: {url or "https://example.com"}

Generate an engaging CTA with:
1. A catchy title (max 60 characters)
2. A persuasive description (max 120 characters)
3. An action-oriented button text (max 25 characters)

The CTA should be professional, engaging, and encourage readers to click.

Return ONLY a JSON object with this exact format:
{{
  "title": "...",
  "description": "...",
  "buttonText": "..."
}}"""
        opts = replace(self.options, temperature=CTA_TEMPERATURE, max_tokens=MAX_TOKENS_CTA)
        raw = await self.ai.generate_text(
            [
                {"role": "system", "content": CTA_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            opts,
        )
        if not raw or not raw.strip():
            raise ContentGenerationError("No CTA text generated")
        try:
            data = parse_model_json(raw)
        except ValueError as exc:
            logger.error("Unparseable CTA output: %s", raw[:200])
            raise ContentGenerationError(f"Failed to parse CTA JSON: {exc}") from exc

        return {
            "title": truncate(str(data.get("title") or "").strip(), CTA_TITLE_MAX),
            "description": truncate(str(data.get("description") or "").strip(), CTA_DESCRIPTION_MAX),
            "buttonText": truncate(
                str(data.get("buttonText") or data.get("button_text") or "").strip(), CTA_BUTTON_MAX
            ),
        }
