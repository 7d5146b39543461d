"""
Research stage: depth-scaled web research through Perplexity.

Queries are issued one at a time; results are deduplicated, scored against
the topic and trimmed to the top ten. Research never fails a run: any
provider error degrades to an empty :class:`ResearchBundle`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from blogsmith.config import PERPLEXITY_MODEL, RESEARCH_TIMEOUT, ProviderCredentials
from blogsmith.errors import ProviderError
from blogsmith.models import ResearchBundle, ResearchDepth, SearchResult, TokenUsage

logger = logging.getLogger("blogsmith.research")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEPTH_MODELS: Dict[ResearchDepth, str] = {
    ResearchDepth.SHALLOW: "sonar",
    ResearchDepth.MODERATE: "sonar-pro",
    ResearchDepth.DEEP: "sonar-deep-research",
}

MAX_RESULTS = 10
MIN_PARAGRAPH_CHARS = 50
DEDUP_PREFIX_CHARS = 100

RESEARCH_MAX_TOKENS = 1000
RESEARCH_TEMPERATURE = 0.1

SYSTEM_PROMPT = (
    "You are a research assistant. Provide comprehensive, factual information "
    "with sources. Focus on recent, credible information."
)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def build_queries(topic: str, depth: ResearchDepth) -> List[str]:
    """Depth-tiered query list (3, 5 or 9); each tier extends the previous."""
    base = [
        f"{topic} latest trends 2024 2025",
        f"{topic} recent developments news",
        f"{topic} best practices guide",
    ]
    moderate = [
        f"{topic} statistics data research",
        f"{topic} expert opinions analysis",
    ]
    deep = [
        f"{topic} market size statistics 2024 2025",
        f"{topic} case studies examples",
        f"{topic} regulatory updates 2024 2025",
        f"{topic} benchmarks comparison",
    ]
    depth = ResearchDepth(depth)
    if depth == ResearchDepth.SHALLOW:
        return base
    if depth == ResearchDepth.MODERATE:
        return base + moderate
    return base + moderate + deep


def parse_answer(content: str, query: str) -> List[SearchResult]:
    """Split a research answer into paragraph-sized results."""
    paragraphs = [p.strip() for p in content.split("\n\n") if len(p.strip()) > MIN_PARAGRAPH_CHARS]
    url = f"https://perplexity.ai/search?q={quote(query, safe='')}"
    return [
        SearchResult(
            title=f"{query} - Result {i + 1}",
            content=para,
            url=url,
            relevance_score=round(1.0 - i * 0.1, 2),
        )
        for i, para in enumerate(paragraphs)
    ]


def deduplicate(results: List[SearchResult]) -> List[SearchResult]:
    """Drop results whose first 100 content characters were already seen."""
    seen = set()
    unique: List[SearchResult] = []
    for result in results:
        key = result.content[:DEDUP_PREFIX_CHARS].lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(result)
    return unique


def score_results(results: List[SearchResult], topic: str) -> List[SearchResult]:
    """Term-frequency relevance against the topic words, best first.

    Title hits count double; the sum is normalized by content length
    (per hundred characters).
    """
    words = [w for w in topic.lower().split(" ") if w]
    scored: List[SearchResult] = []
    for result in results:
        content = result.content.lower()
        title = result.title.lower()
        score = 0
        for word in words:
            score += title.count(word) * 2
            score += content.count(word)
        normalized = score / (len(result.content) / 100) if result.content else 0.0
        scored.append(
            SearchResult(result.title, result.content, result.url, relevance_score=normalized)
        )
    scored.sort(key=lambda r: r.relevance_score, reverse=True)
    return scored


# ---------------------------------------------------------------------------
# ResearchService
# ---------------------------------------------------------------------------


class ResearchService:
    """Perplexity-backed research for one request."""

    def __init__(self, credentials: ProviderCredentials, timeout: int = RESEARCH_TIMEOUT) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self.credentials.perplexity_key}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def search_topic(
        self, topic: str, depth: ResearchDepth = ResearchDepth.MODERATE
    ) -> ResearchBundle:
        """
        Research *topic* at the given depth.

        Returns an empty bundle (no results, zero usage, no queries) instead
        of raising when anything goes wrong.
        """
        try:
            depth = ResearchDepth(depth)
            queries = build_queries(topic, depth)
            model = DEPTH_MODELS[depth]
            usage = TokenUsage()
            collected: List[SearchResult] = []

            start_time = time.monotonic()
            for query in queries:
                results, delta = await self._search(query, model)
                collected.extend(results)
                usage.add(delta)

            ranked = score_results(deduplicate(collected), topic)[:MAX_RESULTS]
            logger.info(
                "Research for '%s' (%s): %d queries, %d results kept, %d tokens in %.1fs",
                topic[:60], depth.value, len(queries), len(ranked),
                usage.total_tokens, time.monotonic() - start_time,
            )
            return ResearchBundle(
                query=topic, results=ranked, usage=usage, model=model, queries=queries,
            )
        except Exception as exc:
            logger.error("Research error (continuing without web research): %s", exc)
            return ResearchBundle.empty(topic, model=PERPLEXITY_MODEL)

    async def _search(self, query: str, model: str) -> Tuple[List[SearchResult], TokenUsage]:
        """One research query; per-query failures yield no results."""
        try:
            data = await self._post_completion(query, model)
        except ProviderError as exc:
            logger.warning(
                "Search error for query '%s' (status %s): %s", query, exc.status_code or "-", exc,
            )
            return [], TokenUsage()

        choices = data.get("choices") or []
        content = ""
        if choices:
            content = (choices[0].get("message") or {}).get("content") or ""
        raw_usage = data.get("usage") or {}
        delta = TokenUsage(
            int(raw_usage.get("prompt_tokens") or 0),
            int(raw_usage.get("completion_tokens") or 0),
        )
        return parse_answer(content, query), delta

    async def _post_completion(self, query: str, model: str) -> Dict:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Research and provide detailed information about: {query}. "
                        "Include recent data, statistics, and credible sources."
                    ),
                },
            ],
            "max_tokens": RESEARCH_MAX_TOKENS,
            "temperature": RESEARCH_TEMPERATURE,
        }
        url = f"{self.credentials.perplexity_base_url}/chat/completions"
        session = await self._get_session()
        try:
            async with session.post(url, json=payload) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = {"error": {"message": await resp.text()}}
                if resp.status >= 400:
                    err = body.get("error") if isinstance(body, dict) else None
                    message = err.get("message", err) if isinstance(err, dict) else (err or body)
                    raise ProviderError(
                        f"HTTP {resp.status} from perplexity: {message}",
                        status_code=resp.status,
                        provider="perplexity",
                    )
                return body if isinstance(body, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(f"Network connection error: {exc}", provider="perplexity") from exc
