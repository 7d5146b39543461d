"""
Blogsmith API Server
====================

FastAPI server exposing article generation (streamed as Server-Sent
Events), the per-user article library, CTA templates, stored credentials,
WordPress publishing and the scheduled-publish sweep.

Run directly:
    python -m blogsmith.api
    uvicorn blogsmith.api:app --host 0.0.0.0 --port 8000

Port configurable via BLOGSMITH_API_PORT environment variable (default 8000).
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from blogsmith import __version__
from blogsmith.ai_client import AITextGenerator
from blogsmith.auth import (
    SecurityMiddleware,
    RateLimiter,
    TokenAuth,
    init_auth,
    rate_limit,
    rate_limit_generate,
    rate_limit_strict,
    require_cron,
    require_user,
)
from blogsmith.config import SUPPORTED_PROVIDERS, ProviderCredentials
from blogsmith.cta import CTAGenerator
from blogsmith.errors import ArticleNotFoundError, ValidationError, classify_error
from blogsmith.models import CTA, GenerateOptions, GenerationRequest, to_camel
from blogsmith.pipeline import ArticlePipeline, EventStream
from blogsmith.scheduler import publish_article, publish_due
from blogsmith.store import ArticleStore, CTATemplateStore, UserKeyStore
from blogsmith.utils import now_iso
from blogsmith.wordpress_client import WordPressClient, WordPressError

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("blogsmith.api")
logger.setLevel(logging.INFO)

if not logger.handlers:
    _h = logging.StreamHandler()
    _h.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
    logger.addHandler(_h)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

API_PORT = int(os.getenv("BLOGSMITH_API_PORT", "8000"))

ALLOWED_ORIGINS = os.getenv(
    "BLOGSMITH_CORS_ORIGINS",
    "http://localhost:3000,http://localhost:8000",
).split(",")

AUTH_DISABLED = os.getenv("BLOGSMITH_AUTH_DISABLED", "").lower() in ("true", "1", "yes")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# ---------------------------------------------------------------------------
# Pydantic Models -- Requests
# ---------------------------------------------------------------------------


class CamelModel(BaseModel):
    """Accepts the camelCase wire names as well as the field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateRequestBody(CamelModel):
    topic: str = ""
    publish_to_wordpress: bool = Field(False, alias="publishToWordPress")
    research_depth: str = "moderate"
    use_research: bool = True
    extra_context: str = ""
    number_of_images: int = 0
    openai_model: Optional[str] = None
    model: Optional[str] = None
    ai_provider: str = "openai"
    gpt5_reasoning_effort: Optional[str] = None
    gpt5_verbosity: Optional[str] = None
    ctas: List[Dict[str, Any]] = Field(default_factory=list)


class CTAGenerateRequest(CamelModel):
    prompt: str
    url: str = ""
    ai_provider: str = "openai"
    model: Optional[str] = None
    reasoning_effort: Optional[str] = None
    verbosity: Optional[str] = None


class ArticleCreateRequest(CamelModel):
    title: str
    content: str = ""
    topic: str = ""
    status: str = "draft"
    word_count: int = 0
    seo_metadata: Optional[Dict[str, Any]] = None
    seo_score: Optional[int] = None
    outline: Optional[Dict[str, Any]] = None
    images: List[Dict[str, Any]] = Field(default_factory=list)
    wordpress_post_id: Optional[int] = None
    wordpress_edit_url: Optional[str] = None


class ArticleUpdateRequest(CamelModel):
    title: Optional[str] = None
    content: Optional[str] = None
    topic: Optional[str] = None
    status: Optional[str] = None
    word_count: Optional[int] = None
    seo_metadata: Optional[Dict[str, Any]] = None
    seo_score: Optional[int] = None
    outline: Optional[Dict[str, Any]] = None
    images: Optional[List[Dict[str, Any]]] = None


class PublishRequest(CamelModel):
    scheduled_at: Optional[str] = None


class ScheduleRequest(CamelModel):
    scheduled_at: str


class WordPressTestRequest(CamelModel):
    wordpress_url: Optional[str] = None
    wordpress_username: Optional[str] = None
    wordpress_password: Optional[str] = None


# ---------------------------------------------------------------------------
# Application State
# ---------------------------------------------------------------------------


class AppState:
    """Holds the stores and auth subsystems for the server's lifetime."""

    def __init__(self) -> None:
        self.articles: Optional[ArticleStore] = None
        self.cta_templates: Optional[CTATemplateStore] = None
        self.keys: Optional[UserKeyStore] = None
        self.auth: Optional[TokenAuth] = None
        self.rate_limiter: Optional[RateLimiter] = None
        self.start_time: float = 0.0


state = AppState()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize stores and auth on startup."""
    logger.info("Starting Blogsmith API on port %d", API_PORT)
    state.start_time = time.monotonic()

    state.auth = TokenAuth()
    state.rate_limiter = RateLimiter()
    init_auth(token_auth=state.auth, rate_limiter=state.rate_limiter)
    logger.info(
        "Auth initialized (disabled=%s, tokens_loaded=%d)",
        AUTH_DISABLED,
        len(state.auth.list_tokens()),
    )

    state.articles = ArticleStore()
    state.cta_templates = CTATemplateStore()
    state.keys = UserKeyStore()

    yield

    logger.info("Shutting down Blogsmith API")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Blogsmith API",
    description="Multi-provider AI article generation with WordPress publishing.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(SecurityMiddleware)


def _articles() -> ArticleStore:
    if state.articles is None:
        raise HTTPException(503, "Article store not initialized")
    return state.articles


def _templates() -> CTATemplateStore:
    if state.cta_templates is None:
        raise HTTPException(503, "CTA template store not initialized")
    return state.cta_templates


def _keys() -> UserKeyStore:
    if state.keys is None:
        raise HTTPException(503, "Key store not initialized")
    return state.keys


def _credentials(user_id: str) -> ProviderCredentials:
    return _keys().credentials_for(user_id)


def missing_generation_keys(credentials: ProviderCredentials, body: GenerateRequestBody) -> List[str]:
    """Names of the services a generation request needs but has no key for."""
    missing: List[str] = []
    provider = (body.ai_provider or "openai").lower()
    if provider not in SUPPORTED_PROVIDERS:
        missing.append(f"AI Provider ({provider} is not supported)")
    elif not credentials.has_key(provider):
        missing.append(f"AI Provider ({provider})")
    if body.use_research and not credentials.has_key("perplexity"):
        missing.append("Perplexity (for web research)")
    if body.publish_to_wordpress and not credentials.has_wordpress:
        missing.append("WordPress credentials")
    if body.number_of_images > 0 and not credentials.has_key("unsplash"):
        missing.append("Unsplash (for images)")
    return missing


# ===================================================================
# Health (public, rate-limited only)
# ===================================================================


@app.get("/health", tags=["Health"])
async def health(_rl=Depends(rate_limit)):
    """Server health check with environment configuration status."""
    env = ProviderCredentials.from_env()
    uptime = time.monotonic() - state.start_time if state.start_time else 0
    configured = {provider: env.has_key(provider) for provider in SUPPORTED_PROVIDERS}
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": now_iso(),
        "auth": "disabled" if AUTH_DISABLED else "enabled",
        "uptime_seconds": round(uptime),
        "config": {
            **configured,
            "perplexity": env.has_key("perplexity"),
            "unsplash": env.has_key("unsplash"),
            "wordpress": env.has_wordpress,
        },
    }


# ===================================================================
# Generation
# ===================================================================


@app.post("/api/generate", tags=["Generation"])
async def generate_article(
    body: GenerateRequestBody,
    request: Request,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_generate),
):
    """Run the article pipeline and stream progress as Server-Sent Events."""
    if not body.topic or not body.topic.strip():
        raise HTTPException(400, "Topic is required and must be a string")

    credentials = _credentials(user_id)
    missing = missing_generation_keys(credentials, body)
    if missing:
        raise HTTPException(400, f"Missing required API keys: {', '.join(missing)}")

    try:
        generation = GenerationRequest(
            topic=body.topic.strip(),
            use_research=body.use_research,
            research_depth=body.research_depth,
            number_of_images=body.number_of_images,
            publish_to_wordpress=body.publish_to_wordpress,
            provider=body.ai_provider,
            model=body.model or body.openai_model,
            reasoning_effort=body.gpt5_reasoning_effort,
            verbosity=body.gpt5_verbosity,
            extra_context=body.extra_context,
            ctas=tuple(CTA.from_dict(c) for c in body.ctas),
        )
    except (TypeError, ValueError) as exc:
        raise HTTPException(400, f"Invalid request: {exc}")

    logger.info("Generation requested by %s: '%s' via %s", user_id, generation.topic[:60], generation.provider)
    pipeline = ArticlePipeline(credentials)
    stream = EventStream(request.is_disconnected)
    return StreamingResponse(
        stream.frames(pipeline.run(generation)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/generate-cta", tags=["Generation"])
async def generate_cta(
    body: CTAGenerateRequest,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_generate),
):
    """Write CTA copy (title, description, button text) for a prompt."""
    if not body.prompt.strip():
        raise HTTPException(400, "Prompt is required")
    provider = (body.ai_provider or "openai").lower()
    credentials = _credentials(user_id)
    if not credentials.has_key(provider):
        raise HTTPException(400, f"{provider} API key not found. Please add it in Settings.")

    options = GenerateOptions(
        provider=provider,
        model=body.model,
        reasoning_effort=body.reasoning_effort,
        verbosity=body.verbosity,
    )
    ai = AITextGenerator(credentials, default_model=body.model)
    try:
        generated = await CTAGenerator(ai, options).generate_cta(body.prompt, body.url)
    except Exception as exc:
        classified = classify_error(exc, provider)
        logger.error("CTA generation failed for %s: %s", user_id, exc)
        raise HTTPException(500, classified.message)
    finally:
        await ai.close()
    return {"success": True, "generatedText": generated}


# ===================================================================
# Articles
# ===================================================================


@app.get("/api/articles", tags=["Articles"])
async def list_articles(user_id: str = Depends(require_user), _rl=Depends(rate_limit)):
    articles = _articles().list_articles(user_id)
    return {"articles": [a.to_dict() for a in articles], "count": len(articles)}


@app.post("/api/articles", tags=["Articles"])
async def create_article(
    body: ArticleCreateRequest,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    try:
        article = _articles().save_article(user_id, body.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"success": True, "article": article.to_dict()}


@app.get("/api/articles/{article_id}", tags=["Articles"])
async def get_article(article_id: str, user_id: str = Depends(require_user), _rl=Depends(rate_limit)):
    try:
        return {"article": _articles().get_article(user_id, article_id).to_dict()}
    except ArticleNotFoundError:
        raise HTTPException(404, "Article not found")


@app.patch("/api/articles/{article_id}", tags=["Articles"])
async def update_article(
    article_id: str,
    body: ArticleUpdateRequest,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    changes = body.model_dump(exclude_unset=True)
    try:
        article = _articles().update_article(user_id, article_id, **changes)
    except ArticleNotFoundError:
        raise HTTPException(404, "Article not found")
    except ValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"success": True, "article": article.to_dict()}


@app.delete("/api/articles/{article_id}", tags=["Articles"])
async def delete_article(
    article_id: str,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    if not _articles().delete_article(user_id, article_id):
        raise HTTPException(404, "Article not found")
    return {"success": True}


@app.post("/api/articles/{article_id}/publish", tags=["Articles"])
async def publish_stored_article(
    article_id: str,
    body: Optional[PublishRequest] = None,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    """Publish now, or schedule on WordPress when ``scheduledAt`` is in the future."""
    store = _articles()
    credentials = _credentials(user_id)
    if not credentials.has_wordpress:
        raise HTTPException(400, "WordPress is not configured. Add your WordPress credentials in Settings.")
    try:
        article = store.get_article(user_id, article_id)
    except ArticleNotFoundError:
        raise HTTPException(404, "Article not found")

    client = WordPressClient.from_credentials(credentials)
    try:
        connection = await client.test_connection()
        if not connection["success"]:
            raise HTTPException(401, connection["message"])
        updated = await publish_article(
            store, client, user_id, article, scheduled_at=body.scheduled_at if body else None
        )
    except ValidationError as exc:
        raise HTTPException(400, str(exc))
    except WordPressError as exc:
        logger.error("Publishing article %s failed: %s", article_id[:8], exc)
        raise HTTPException(500, f"Failed to publish article: {exc}")
    finally:
        await client.close()

    return {
        "success": True,
        "article": updated.to_dict(),
        "wordpress": {"postId": updated.wordpress_post_id, "editUrl": updated.wordpress_edit_url},
    }


@app.post("/api/articles/{article_id}/schedule", tags=["Articles"])
async def schedule_article(
    article_id: str,
    body: ScheduleRequest,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    try:
        article = _articles().schedule_article(user_id, article_id, body.scheduled_at)
    except ArticleNotFoundError:
        raise HTTPException(404, "Article not found")
    except ValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"success": True, "article": article.to_dict()}


@app.delete("/api/articles/{article_id}/schedule", tags=["Articles"])
async def unschedule_article(
    article_id: str,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    try:
        article = _articles().unschedule_article(user_id, article_id)
    except ArticleNotFoundError:
        raise HTTPException(404, "Article not found")
    return {"success": True, "article": article.to_dict()}


# ===================================================================
# CTA templates
# ===================================================================


@app.get("/api/cta-templates", tags=["CTA Templates"])
async def list_cta_templates(user_id: str = Depends(require_user), _rl=Depends(rate_limit)):
    templates = _templates().list_templates(user_id)
    return {"templates": [t.to_dict() for t in templates]}


@app.post("/api/cta-templates", tags=["CTA Templates"])
async def create_cta_template(
    body: Dict[str, Any],
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    try:
        cta = CTA.from_dict(body)
    except (TypeError, ValueError) as exc:
        raise HTTPException(400, f"Invalid CTA: {exc}")
    if not cta.title:
        raise HTTPException(400, "CTA title is required")
    return {"success": True, "template": _templates().save_template(user_id, cta).to_dict()}


@app.put("/api/cta-templates/{template_id}", tags=["CTA Templates"])
async def update_cta_template(
    template_id: str,
    body: Dict[str, Any],
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    try:
        cta = _templates().update_template(user_id, template_id, body)
    except KeyError:
        raise HTTPException(404, "CTA template not found")
    except (TypeError, ValueError) as exc:
        raise HTTPException(400, f"Invalid CTA: {exc}")
    return {"success": True, "template": cta.to_dict()}


@app.delete("/api/cta-templates/{template_id}", tags=["CTA Templates"])
async def delete_cta_template(
    template_id: str,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    if not _templates().delete_template(user_id, template_id):
        raise HTTPException(404, "CTA template not found")
    return {"success": True}


# ===================================================================
# Stored credentials
# ===================================================================


@app.get("/api/keys", tags=["Settings"])
async def get_keys(user_id: str = Depends(require_user), _rl=Depends(rate_limit)):
    """Stored keys with secrets masked."""
    return {"keys": _keys().masked_keys(user_id)}


@app.put("/api/keys", tags=["Settings"])
async def put_keys(
    body: Dict[str, Optional[str]],
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    """Merge keys; an empty value removes a stored key."""
    store = _keys()
    try:
        store.save_keys(user_id, body)
    except ValidationError as exc:
        raise HTTPException(400, str(exc))
    return {"success": True, "keys": store.masked_keys(user_id)}


@app.post("/api/wordpress/test", tags=["Settings"])
async def test_wordpress(
    body: Optional[WordPressTestRequest] = None,
    user_id: str = Depends(require_user),
    _rl=Depends(rate_limit_strict),
):
    """Check WordPress credentials from the body, falling back to stored ones."""
    credentials = _credentials(user_id)
    if body is not None:
        credentials = replace(
            credentials,
            wordpress_url=body.wordpress_url or credentials.wordpress_url,
            wordpress_username=body.wordpress_username or credentials.wordpress_username,
            wordpress_password=body.wordpress_password or credentials.wordpress_password,
        )
    if not credentials.has_wordpress:
        raise HTTPException(400, "Missing WordPress credentials")
    async with WordPressClient.from_credentials(credentials) as client:
        return await client.test_connection()


# ===================================================================
# Scheduled publishing
# ===================================================================


async def _run_publish_sweep() -> Dict[str, Any]:
    summary = await publish_due(_articles(), _keys())
    return {"success": True, **summary}


@app.get("/api/cron/publish-due", tags=["Scheduler"])
async def cron_publish_due_get(_cron=Depends(require_cron)):
    return await _run_publish_sweep()


@app.post("/api/cron/publish-due", tags=["Scheduler"])
async def cron_publish_due_post(_cron=Depends(require_cron)):
    return await _run_publish_sweep()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    uvicorn.run(
        "blogsmith.api:app",
        host="0.0.0.0",
        port=API_PORT,
        reload=False,
        log_level="info",
    )
