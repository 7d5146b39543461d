"""
Article Pipeline
================

Runs one generation request through every stage and reports progress as
it goes.

Stages (in order):
    1. RESEARCH    - Perplexity research (skipped when disabled, never fatal)
    2. OUTLINE     - Structured outline, at least four sections
    3. WRITING     - Introduction, each section, conclusion; strictly sequential
    4. SEO         - Metadata plus a deterministic score
    5. IMAGES      - Unsplash photos after randomly chosen section headings
    6. WORDPRESS   - Optional post creation on the user's site
    7. COMPLETED

A run is an async generator of events. Each event is a dict
``{"type": "progress"|"complete"|"error", "payload": {...}}``; exactly one
``complete`` or ``error`` event ends the run. :class:`EventStream` turns
events into Server-Sent Event frames and guards the transport.

Usage:
    pipeline = ArticlePipeline(credentials)
    async for event in pipeline.run(GenerationRequest(topic="Intro to Composting")):
        print(event)

CLI:
    python -m blogsmith.pipeline run --topic "Intro to Composting" --no-research
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import sys
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from blogsmith.ai_client import AITextGenerator
from blogsmith.config import ProviderCredentials
from blogsmith.cta import inject_ctas
from blogsmith.errors import ContentGenerationError, classify_error, classify_publish_error
from blogsmith.images import UnsplashClient, place_images
from blogsmith.models import (
    ArticleContent,
    GenerateOptions,
    GenerationRequest,
    ImageAsset,
    Outline,
    PipelineStep,
    ResearchBundle,
    SEOAnalysis,
    SEOMetadata,
)
from blogsmith.outline import OutlineGenerator
from blogsmith.research import ResearchService
from blogsmith.seo import SEOOptimizer, analyze_seo_score
from blogsmith.wordpress_client import WordPressClient
from blogsmith.writer import ArticleWriter

logger = logging.getLogger("blogsmith.pipeline")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_ERROR = "error"
TERMINAL_EVENTS = frozenset({EVENT_COMPLETE, EVENT_ERROR})

STEP_PERCENT: Dict[PipelineStep, int] = {
    PipelineStep.RESEARCH: 10,
    PipelineStep.OUTLINE: 25,
    PipelineStep.WRITING: 40,
    PipelineStep.SEO: 80,
    PipelineStep.IMAGES: 85,
    PipelineStep.WORDPRESS: 90,
    PipelineStep.COMPLETED: 100,
}
WRITING_END_PERCENT = 80

OUTLINE_TEMPERATURE = 0.7
RESEARCH_SAMPLE_SIZE = 5

Event = Dict[str, Any]


# ---------------------------------------------------------------------------
# Event helpers
# ---------------------------------------------------------------------------


def progress_event(
    step: PipelineStep,
    message: str,
    percent: Optional[int] = None,
    current_section: Optional[str] = None,
) -> Event:
    payload: Dict[str, Any] = {
        "step": step.value,
        "message": message,
        "progress": STEP_PERCENT[step] if percent is None else percent,
    }
    if current_section:
        payload["currentSection"] = current_section
    return {"type": EVENT_PROGRESS, "payload": payload}


def complete_event(result: Dict[str, Any]) -> Event:
    return {"type": EVENT_COMPLETE, "payload": result}


def error_event(message: str, hint: Optional[str] = None) -> Event:
    payload = {"message": message}
    if hint:
        payload["hint"] = hint
    return {"type": EVENT_ERROR, "payload": payload}


def writing_percent(done: int, total: int) -> int:
    """Writing progress scaled linearly from 40 to 80 over *total* units."""
    start = STEP_PERCENT[PipelineStep.WRITING]
    if total <= 0:
        return WRITING_END_PERCENT
    done = max(0, min(done, total))
    return start + round((WRITING_END_PERCENT - start) * done / total)


def encode_sse(event: Event) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass
class StageTiming:
    """Wall-clock record for one stage."""
    step: str
    started: float = field(default_factory=time.monotonic)
    duration_seconds: float = 0.0

    def finish(self) -> None:
        self.duration_seconds = round(time.monotonic() - self.started, 2)


@dataclass
class PipelineRun:
    """Everything accumulated while a single request moves through the stages."""
    request: GenerationRequest
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    current_step: Optional[PipelineStep] = None
    research: Optional[ResearchBundle] = None
    outline: Optional[Outline] = None
    content: Optional[ArticleContent] = None
    seo_metadata: Optional[SEOMetadata] = None
    seo_analysis: Optional[SEOAnalysis] = None
    images: List[ImageAsset] = field(default_factory=list)
    post: Optional[Dict[str, Any]] = None
    timings: List[StageTiming] = field(default_factory=list)

    def start_stage(self, step: PipelineStep) -> StageTiming:
        self.current_step = step
        timing = StageTiming(step=step.value)
        self.timings.append(timing)
        logger.info("Pipeline %s | Stage %s", self.run_id, step.value)
        return timing

    def result_payload(self, token_usage: Dict[str, int]) -> Dict[str, Any]:
        """The ``complete`` event payload."""
        research = self.research or ResearchBundle.empty(self.request.topic)
        payload: Dict[str, Any] = {}
        if self.post:
            payload["postId"] = self.post.get("postId")
            payload["editUrl"] = self.post.get("editUrl")
        payload.update({
            "seoScore": self.seo_analysis.score if self.seo_analysis else 0,
            "wordCount": self.content.word_count if self.content else 0,
            "articleContent": self.content.html if self.content else "",
            "outline": self.outline.to_dict() if self.outline else None,
            "seoMetadata": self.seo_metadata.to_dict() if self.seo_metadata else None,
            "images": [image.to_dict() for image in self.images],
            "research": {
                "model": research.model,
                "queries": list(research.queries),
                "usage": research.usage.to_dict(),
                "sample": research.sample(RESEARCH_SAMPLE_SIZE),
            },
            "recommendations": list(self.seo_analysis.recommendations) if self.seo_analysis else [],
            "tokenUsage": token_usage,
            "totalTokens": token_usage.get("total", 0) + research.usage.total_tokens,
        })
        return payload


# ---------------------------------------------------------------------------
# ArticlePipeline
# ---------------------------------------------------------------------------


class ArticlePipeline:
    """
    Orchestrates one article generation per :meth:`run` call.

    Parameters
    ----------
    credentials : ProviderCredentials
        Request-scoped keys. Nothing process-wide is read or modified
        during a run.
    ai, research, unsplash, wordpress : optional
        Pre-built clients. Clients the pipeline creates itself are closed
        when the run ends; injected ones are left open.
    rng : random.Random, optional
        Source of randomness for image section selection.
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        ai: Optional[AITextGenerator] = None,
        research: Optional[ResearchService] = None,
        unsplash: Optional[UnsplashClient] = None,
        wordpress: Optional[WordPressClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.credentials = credentials
        self._ai = ai
        self._research = research
        self._unsplash = unsplash
        self._wordpress = wordpress
        self.rng = rng

    async def run(self, request: GenerationRequest) -> AsyncIterator[Event]:
        """
        Execute every stage for *request*, yielding events as it goes.

        Yields any number of ``progress`` events followed by exactly one
        ``complete`` or ``error`` event. Closing the generator early (client
        gone) stops the run at its current await point.
        """
        run = PipelineRun(request=request)
        owned: List[Any] = []

        ai = self._ai
        if ai is None:
            ai = AITextGenerator(self.credentials, default_model=request.model)
            owned.append(ai)

        start_time = time.monotonic()
        logger.info(
            "Pipeline %s started: topic='%s' provider=%s research=%s images=%d publish=%s",
            run.run_id, request.topic[:60], request.provider, request.use_research,
            request.number_of_images, request.publish_to_wordpress,
        )
        try:
            options = request.options(OUTLINE_TEMPERATURE, None)

            # 1. Research
            if request.use_research:
                yield progress_event(PipelineStep.RESEARCH, "Researching recent information...")
                timing = run.start_stage(PipelineStep.RESEARCH)
                research = self._research
                if research is None:
                    research = ResearchService(self.credentials)
                    owned.append(research)
                run.research = await research.search_topic(request.topic, request.research_depth)
                timing.finish()
            else:
                run.research = ResearchBundle.empty(request.topic)

            # 2. Outline
            yield progress_event(PipelineStep.OUTLINE, "Generating article outline...")
            timing = run.start_stage(PipelineStep.OUTLINE)
            run.outline = await OutlineGenerator(ai, options).generate_outline(
                request.topic, run.research, request.extra_context
            )
            timing.finish()

            # 3. Writing
            yield progress_event(PipelineStep.WRITING, "Writing the article...")
            timing = run.start_stage(PipelineStep.WRITING)
            writing = self._write_with_progress(ArticleWriter(ai, options), run)
            try:
                async for event in writing:
                    yield event
            finally:
                await writing.aclose()
            timing.finish()

            # 4. SEO
            yield progress_event(PipelineStep.SEO, "Generating SEO metadata...")
            timing = run.start_stage(PipelineStep.SEO)
            run.seo_metadata = await SEOOptimizer(ai, options).generate_metadata(
                run.outline, run.content, request.topic
            )
            run.seo_analysis = analyze_seo_score(run.seo_metadata, run.content)
            timing.finish()

            # 5. Images
            if request.number_of_images > 0:
                yield progress_event(PipelineStep.IMAGES, "Fetching images per section (Unsplash)...")
                timing = run.start_stage(PipelineStep.IMAGES)
                await self._place_images(run, ai, options, owned)
                timing.finish()

            if request.ctas:
                run.content = replace(run.content, html=inject_ctas(run.content.html, request.ctas))
                logger.info("Pipeline %s | Injected %d CTAs", run.run_id, len(request.ctas))

            # 6. WordPress
            if request.publish_to_wordpress:
                yield progress_event(PipelineStep.WORDPRESS, "Creating WordPress post...")
                timing = run.start_stage(PipelineStep.WORDPRESS)
                wordpress = self._wordpress
                if wordpress is None:
                    wordpress = WordPressClient.from_credentials(self.credentials)
                    owned.append(wordpress)
                run.post = await wordpress.create_or_update_post(
                    run.content.html,
                    run.seo_metadata,
                    request.topic,
                    status="draft",
                    featured_image_url=run.images[0].url if run.images else None,
                    word_count=run.content.word_count,
                )
                timing.finish()

            # 7. Completed
            run.current_step = PipelineStep.COMPLETED
            yield progress_event(
                PipelineStep.COMPLETED,
                "Article generated and posted to WordPress!"
                if request.publish_to_wordpress else "Article generated successfully!",
            )
            payload = run.result_payload(ai.get_usage_totals())
            logger.info(
                "Pipeline %s completed in %.1fs: %d words, SEO %d, %d images, %d tokens",
                run.run_id, time.monotonic() - start_time, payload["wordCount"],
                payload["seoScore"], len(run.images), payload["totalTokens"],
            )
            yield complete_event(payload)

        except asyncio.CancelledError:
            logger.warning("Pipeline %s cancelled at stage %s", run.run_id, _step_name(run))
            raise
        except Exception as exc:
            logger.error(
                "Pipeline %s failed at stage %s: %s", run.run_id, _step_name(run), exc,
                exc_info=True,
            )
            if run.current_step is PipelineStep.WORDPRESS:
                classified = classify_publish_error(exc)
            else:
                classified = classify_error(exc, request.provider)
            yield error_event(classified.message, classified.hint)
        finally:
            for client in owned:
                try:
                    await client.close()
                except Exception as exc:
                    logger.debug("Error closing %s: %s", type(client).__name__, exc)

    async def _write_with_progress(
        self, writer: ArticleWriter, run: PipelineRun
    ) -> AsyncIterator[Event]:
        """Run the writer while relaying one progress event per finished unit."""
        units: asyncio.Queue = asyncio.Queue()
        total = len(run.outline.sections) + 2
        task = asyncio.ensure_future(
            writer.write_article(
                run.outline, run.research, run.request.extra_context, on_progress=units.put_nowait
            )
        )
        done = 0
        try:
            while True:
                getter = asyncio.ensure_future(units.get())
                finished, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in finished:
                    getter.cancel()
                    break
                done += 1
                section = getter.result().get("section", "")
                yield progress_event(
                    PipelineStep.WRITING, "Writing...", writing_percent(done, total), section
                )
            while not units.empty():
                done += 1
                section = units.get_nowait().get("section", "")
                yield progress_event(
                    PipelineStep.WRITING, "Writing...", writing_percent(done, total), section
                )
            run.content = task.result()
        finally:
            if not task.done():
                task.cancel()
        if not run.content or not run.content.html:
            raise ContentGenerationError("No content generated for outline")

    async def _place_images(
        self,
        run: PipelineRun,
        ai: AITextGenerator,
        options: GenerateOptions,
        owned: List[Any],
    ) -> None:
        """Image failures leave the article without images; they never fail the run."""
        unsplash = self._unsplash
        if unsplash is None:
            unsplash = UnsplashClient(self.credentials, ai=ai, options=options)
            owned.append(unsplash)
        try:
            html, images = await place_images(
                unsplash,
                run.outline,
                run.content.html,
                run.request.number_of_images,
                run.seo_metadata.meta_description if run.seo_metadata else "",
                rng=self.rng,
            )
        except Exception as exc:
            logger.warning("Pipeline %s | Image placement failed, continuing: %s", run.run_id, exc)
            return
        run.content = replace(run.content, html=html)
        run.images = images


def _step_name(run: PipelineRun) -> str:
    return run.current_step.value if run.current_step else "startup"


# ---------------------------------------------------------------------------
# EventStream
# ---------------------------------------------------------------------------


class EventStream:
    """
    SSE framing for a pipeline run with an exactly-once terminal frame.

    Once a terminal frame has been produced or the client is found to be
    gone, the stream is closed: later sends return ``None`` and the
    underlying run is closed. If the run ends without a terminal event an
    ``error`` frame is produced in its place.

    Parameters
    ----------
    is_disconnected : callable, optional
        Awaitable predicate checked before every frame (for example
        ``starlette.requests.Request.is_disconnected``).
    """

    def __init__(self, is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None) -> None:
        self._is_disconnected = is_disconnected
        self.closed = False
        self.terminal_sent = False
        self.frames_sent = 0

    def send(self, event: Event) -> Optional[str]:
        """Encode *event*, or return ``None`` when the stream is already closed."""
        if self.closed:
            return None
        frame = encode_sse(event)
        self.frames_sent += 1
        if event.get("type") in TERMINAL_EVENTS:
            self.terminal_sent = True
            self.close()
        return frame

    def close(self) -> None:
        self.closed = True

    async def _client_gone(self) -> bool:
        if self._is_disconnected is None:
            return False
        try:
            return bool(await self._is_disconnected())
        except Exception as exc:
            logger.debug("Disconnect check failed: %s", exc)
            return True

    async def frames(self, events: AsyncIterator[Event]) -> AsyncIterator[str]:
        """Relay *events* as SSE frames until a terminal event or disconnect."""
        try:
            async for event in events:
                if self.closed:
                    break
                if await self._client_gone():
                    logger.info("Client disconnected; stopping stream after %d frames", self.frames_sent)
                    self.close()
                    break
                frame = self.send(event)
                if frame is not None:
                    yield frame
                if self.closed:
                    break
        except Exception as exc:
            logger.error("Event source failed: %s", exc, exc_info=True)
            classified = classify_error(exc)
            frame = self.send(error_event(classified.message, classified.hint))
            if frame is not None:
                yield frame
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        if not self.closed:
            frame = self.send(error_event("Generation ended unexpectedly"))
            if frame is not None:
                yield frame
        self.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blogsmith.pipeline",
        description="Generate one article and print the pipeline events.",
    )
    sub = parser.add_subparsers(dest="command")

    p_run = sub.add_parser("run", help="Run the pipeline for a topic")
    p_run.add_argument("--topic", required=True, help="Article topic")
    p_run.add_argument("--provider", default="openai", help="AI provider id")
    p_run.add_argument("--model", default=None, help="Model override")
    p_run.add_argument("--depth", default="moderate", choices=["shallow", "moderate", "deep"])
    p_run.add_argument("--no-research", action="store_true", help="Skip web research")
    p_run.add_argument("--images", type=int, default=0, help="Number of images (0-5)")
    p_run.add_argument("--publish", action="store_true", help="Create a WordPress draft")
    p_run.add_argument("--context", default="", help="Extra instructions for the writer")
    p_run.add_argument("--html-out", default=None, help="Write the final HTML to this file")
    return parser


async def _cli_run(args: argparse.Namespace) -> int:
    request = GenerationRequest(
        topic=args.topic,
        use_research=not args.no_research,
        research_depth=args.depth,
        number_of_images=args.images,
        publish_to_wordpress=args.publish,
        provider=args.provider,
        model=args.model,
        extra_context=args.context,
    )
    pipeline = ArticlePipeline(ProviderCredentials.from_env())
    status = 1
    async for event in pipeline.run(request):
        payload = event["payload"]
        if event["type"] == EVENT_PROGRESS:
            section = f" [{payload['currentSection']}]" if payload.get("currentSection") else ""
            print(f"  {payload['progress']:>3}%  {payload['step']:<10} {payload['message']}{section}")
        elif event["type"] == EVENT_COMPLETE:
            status = 0
            print(f"\nDone: {payload['wordCount']} words, SEO score {payload['seoScore']}, "
                  f"{payload['totalTokens']} tokens")
            if payload.get("editUrl"):
                print(f"  Edit: {payload['editUrl']}")
            if args.html_out:
                with open(args.html_out, "w", encoding="utf-8") as fh:
                    fh.write(payload["articleContent"])
                print(f"  HTML written to {args.html_out}")
        else:
            print(f"\nError: {payload['message']}")
            if payload.get("hint"):
                print(f"  Hint: {payload['hint']}")
    return status


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command != "run":
        parser.print_help()
        return 1
    return asyncio.run(_cli_run(args))


if __name__ == "__main__":
    sys.exit(main())
