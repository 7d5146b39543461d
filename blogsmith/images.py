"""
Image placement: one Unsplash photo after the heading of randomly chosen
sections.

Search terms come from the run's AI provider (translated to English when
needed) with a stopword-filtered fallback. Repeated terms ask Unsplash for
the next result page so the same photo is not placed twice. Every failure
here is absorbed: the affected section simply gets no image.
"""

from __future__ import annotations

import asyncio
import html as html_lib
import json
import logging
import random
import re
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

import aiohttp

from blogsmith.ai_client import AITextGenerator
from blogsmith.config import IMAGE_TIMEOUT, ProviderCredentials, is_placeholder
from blogsmith.models import GenerateOptions, ImageAsset, Outline, OutlineSection

logger = logging.getLogger("blogsmith.images")

MAX_IMAGES = 5
MAX_QUERY_TERMS = 5
FALLBACK_TERM = "kitchen countertop"

_ACCENTED_RE = re.compile(r"[àâäéèêëîïôöùûüç]", re.IGNORECASE)
_H2_SPLIT_RE = re.compile(r"(<h2[^>]*>.*?</h2>)", re.IGNORECASE | re.DOTALL)
_H2_RE = re.compile(r"<h2[^>]*>.*?</h2>", re.IGNORECASE | re.DOTALL)

STOPWORDS = frozenset({
    "the", "a", "an", "of", "for", "and", "to", "in", "on", "with", "by",
    "from", "at", "as", "about", "into", "over", "under", "between",
    "across", "per", "vs", "via",
})

TERM_SYSTEM_PROMPT = "You generate terse, high-signal image search terms for Unsplash. Output only the term."
TRANSLATE_SYSTEM_PROMPT = "You translate keywords to English only. Return comma-separated."


def normalize_term(text: str, max_tokens: int = 3) -> str:
    """Lowercase ASCII letters only, stopwords removed, first three tokens."""
    tokens = re.sub(r"[^a-z\s]", " ", str(text).lower()).split()
    return " ".join([t for t in tokens if t not in STOPWORDS][:max_tokens])


def pick_random_indices(count: int, total: int, rng: Optional[random.Random] = None) -> List[int]:
    """``count`` distinct indices out of ``range(total)`` via Fisher-Yates."""
    rng = rng or random.Random()
    indices = list(range(total))
    for i in range(len(indices) - 1, 0, -1):
        j = rng.randint(0, i)
        indices[i], indices[j] = indices[j], indices[i]
    return indices[: max(0, min(count, total))]


def figure_html(image: ImageAsset) -> str:
    caption = ""
    if image.author:
        caption = (
            f'<figcaption>Photo: <a href="{html_lib.escape(image.author_url or "#")}" '
            f'target="_blank" rel="noopener noreferrer">{html_lib.escape(image.author)}</a>'
            " / Unsplash</figcaption>"
        )
    return (
        '\n<figure class="my-6">\n'
        f'  <img src="{html_lib.escape(image.url)}" alt="{html_lib.escape(image.alt)}" '
        'style="width:100%;height:auto;border-radius:8px;" />\n'
        f"  {caption}\n"
        "</figure>"
    )


def inject_images_by_section(html: str, section_images: Dict[int, ImageAsset]) -> str:
    """Insert each image right after the H2 of its (0-based) section index."""
    if not section_images:
        return html
    parts = _H2_SPLIT_RE.split(html)
    out: List[str] = []
    section = -1
    for part in parts:
        out.append(part)
        if _H2_RE.fullmatch(part):
            section += 1
            image = section_images.get(section)
            if image is not None:
                out.append(figure_html(image))
    return "".join(out)


# ---------------------------------------------------------------------------
# Unsplash client
# ---------------------------------------------------------------------------


class UnsplashClient:
    """Unsplash photo search plus AI-assisted search terms."""

    def __init__(
        self,
        credentials: ProviderCredentials,
        ai: Optional[AITextGenerator] = None,
        options: Optional[GenerateOptions] = None,
        timeout: int = IMAGE_TIMEOUT,
    ) -> None:
        self.credentials = credentials
        self.ai = ai
        self.options = options or GenerateOptions()
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Client-ID {self.credentials.unsplash_key}",
                    "Accept-Version": "v1",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def is_configured(self) -> bool:
        return not is_placeholder(self.credentials.unsplash_key) and "your_unsplash" not in self.credentials.unsplash_key.lower()

    async def translate_keywords(self, keywords: Sequence[str]) -> List[str]:
        """English versions of *keywords*; returned unchanged when no accents or on failure."""
        keywords = [k for k in keywords if k]
        if self.ai is None or not any(_ACCENTED_RE.search(k) for k in keywords):
            return list(keywords)
        prompt = (
            "Translate the following SEO keywords to natural English, lowercase, "
            f"comma-separated. Keep meanings: \n{', '.join(keywords)}"
        )
        try:
            text = await self.ai.generate_text(
                [
                    {"role": "system", "content": TRANSLATE_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                replace(self.options, temperature=0.2, max_tokens=120),
            )
        except Exception as exc:
            logger.warning("Keyword translation failed: %s", exc)
            return list(keywords)
        translated = [s.strip().lower() for s in (text or "").split(",") if s.strip()]
        return translated or list(keywords)

    async def _fallback_term(self, terms: Sequence[str]) -> str:
        translated = await self.translate_keywords(terms)
        return normalize_term(" ".join(translated)) or FALLBACK_TERM

    async def search_term_for_section(
        self,
        section: OutlineSection,
        article_title: str = "",
        article_description: str = "",
    ) -> str:
        """A 1-3 word English photo subject for *section*."""
        fallback_terms = [t for t in [section.title, *section.key_points, article_title, article_description] if t]
        if self.ai is None:
            return await self._fallback_term(fallback_terms)

        prompt = f"""You are an expert image curator for Unsplash.
Context:
- Article title: {article_title}
- Article description: {article_description}
- Section title: {section.title}

Goal: Return ONE concise English search term (1-3 words, lowercase) that best matches a concrete photographic SUBJECT (object/place/material/scene) for this section. Be generic, not specific.
Guidelines:
- Prefer physical subjects over abstract concepts.
- No punctuation, brands, or locations. Output ONLY the term."""
        try:
            text = await self.ai.generate_text(
                [
                    {"role": "system", "content": TERM_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                replace(self.options, temperature=0.3, max_tokens=40),
            )
        except Exception as exc:
            logger.warning("Search term generation failed for '%s': %s", section.title[:50], exc)
            return await self._fallback_term(fallback_terms)

        first = re.split(r"[\n,]", (text or "").strip().strip('"'))[0].strip()
        term = normalize_term(first)
        return term or await self._fallback_term(fallback_terms)

    async def search_images(self, keywords: Sequence[str], count: int = 1, page: int = 1) -> List[ImageAsset]:
        """Search landscape photos; returns ``[]`` when unconfigured or on any error."""
        if count <= 0 or not self.is_configured:
            return []
        try:
            translated = await self.translate_keywords(keywords)
            params = {
                "query": " ".join(translated[:MAX_QUERY_TERMS]),
                "per_page": str(min(max(count, 1), 5)),
                "page": str(max(page, 1)),
                "orientation": "landscape",
                "content_filter": "high",
                "order_by": "relevant",
                "lang": "en",
            }
            session = await self._get_session()
            url = f"{self.credentials.unsplash_base_url}/search/photos"
            async with session.get(url, params=params) as resp:
                if resp.status >= 400:
                    logger.warning("Unsplash search failed: HTTP %d", resp.status)
                    return []
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError, ValueError) as exc:
            logger.warning("Unsplash search failed: %s", exc)
            return []

        images: List[ImageAsset] = []
        for item in (data or {}).get("results") or []:
            urls = item.get("urls") or {}
            user = item.get("user") or {}
            url = urls.get("regular") or urls.get("small") or urls.get("full")
            if not url:
                continue
            images.append(
                ImageAsset(
                    id=str(item.get("id", "")),
                    url=url,
                    alt=item.get("alt_description") or item.get("description") or (translated[0] if translated else "") or "blog image",
                    author=user.get("name"),
                    author_url=(user.get("links") or {}).get("html"),
                )
            )
        return images


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------


async def place_images(
    unsplash: UnsplashClient,
    outline: Outline,
    html: str,
    number_of_images: int,
    description: str = "",
    rng: Optional[random.Random] = None,
) -> Tuple[str, List[ImageAsset]]:
    """
    Choose ``min(number_of_images, len(sections))`` sections at random and
    splice one photo after each one's H2.

    Returns the updated HTML and the placed images in placement order.
    Sections whose search yields nothing are skipped.
    """
    count = min(max(int(number_of_images or 0), 0), MAX_IMAGES)
    indices = pick_random_indices(count, len(outline.sections), rng)
    term_counts: Dict[str, int] = {}
    section_images: Dict[int, ImageAsset] = {}
    placed: List[ImageAsset] = []

    for idx in indices:
        section = outline.sections[idx]
        term = await unsplash.search_term_for_section(section, outline.title, description)
        term_counts[term] = term_counts.get(term, 0) + 1
        found = await unsplash.search_images([term], 1, page=term_counts[term])
        if not found:
            logger.info("No image for section %d ('%s') term=%r", idx + 1, section.title[:40], term)
            continue
        image = found[0]
        image = replace(image, alt=image.alt or f"{term} - {section.title}", search_term=term)
        section_images[idx] = image
        placed.append(image)

    if section_images:
        html = inject_images_by_section(html, section_images)
    logger.info("Placed %d/%d images", len(placed), len(indices))
    return html, placed
