"""
Tests for the FastAPI server: validation, SSE streaming, the article
library, CTA templates, stored keys and the cron sweep endpoint.
"""

import json
import os
from unittest.mock import AsyncMock, MagicMock, patch

os.environ.setdefault("BLOGSMITH_AUTH_DISABLED", "true")

import pytest
from fastapi.testclient import TestClient

from blogsmith import api as api_module
from blogsmith import auth as auth_module
from blogsmith.api import app, state
from blogsmith.config import _ENV_FALLBACKS
from blogsmith.pipeline import EventStream, complete_event, progress_event
from blogsmith.models import PipelineStep
from blogsmith.store import ArticleStore, CTATemplateStore, UserKeyStore

ALL_KEYS = {
    "openaiKey": "sk-test-openai-1234",
    "perplexityKey": "pplx-test-5678",
    "unsplashKey": "unsplash-test-9012",
    "wordpressUrl": "https://blog.example.com",
    "wordpressUsername": "editor",
    "wordpressPassword": "abcd efgh ijkl mnop",
}


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(auth_module, "_auth_disabled", True)
    for var in _ENV_FALLBACKS.values():
        monkeypatch.delenv(var, raising=False)
    with TestClient(app, raise_server_exceptions=False) as c:
        state.articles = ArticleStore(tmp_path)
        state.cta_templates = CTATemplateStore(tmp_path)
        state.keys = UserKeyStore(tmp_path)
        yield c


@pytest.fixture
def keyed_client(client):
    state.keys.save_keys("dev", ALL_KEYS)
    return client


def _sse_events(text):
    return [json.loads(chunk[len("data: "):]) for chunk in text.split("\n\n") if chunk.startswith("data: ")]


def _wp_mock(connected=True, post_id=55):
    wp = MagicMock()
    wp.test_connection = AsyncMock(return_value={
        "success": connected,
        "message": "Connected as editor" if connected else "Invalid WordPress username or application password",
    })
    wp.create_or_update_post = AsyncMock(return_value={
        "postId": post_id, "editUrl": f"https://blog.example.com/wp-admin/post.php?post={post_id}&action=edit",
    })
    wp.close = AsyncMock()
    return wp


# ===================================================================
# Health
# ===================================================================

class TestHealth:

    @pytest.mark.unit
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["config"]["openai"] is False
        assert resp.headers["X-Content-Type-Options"] == "nosniff"


# ===================================================================
# Generation
# ===================================================================

class TestGenerate:

    @pytest.mark.unit
    def test_topic_required(self, keyed_client):
        resp = keyed_client.post("/api/generate", json={"topic": "   "})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Topic is required and must be a string"

    @pytest.mark.unit
    def test_missing_keys_listed(self, client):
        resp = client.post("/api/generate", json={
            "topic": "Composting", "publishToWordPress": True, "numberOfImages": 2,
        })
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail.startswith("Missing required API keys: ")
        for part in ("AI Provider (openai)", "Perplexity (for web research)",
                     "WordPress credentials", "Unsplash (for images)"):
            assert part in detail

    @pytest.mark.unit
    def test_unsupported_provider(self, keyed_client):
        resp = keyed_client.post("/api/generate", json={"topic": "Composting", "aiProvider": "llamafarm"})
        assert resp.status_code == 400
        assert "AI Provider (llamafarm is not supported)" in resp.json()["detail"]

    @pytest.mark.unit
    def test_invalid_research_depth(self, keyed_client):
        resp = keyed_client.post("/api/generate", json={"topic": "Composting", "researchDepth": "bottomless"})
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("Invalid request: ")

    @pytest.mark.unit
    def test_streams_events(self, keyed_client):
        captured = {}

        async def fake_run(request):
            captured["request"] = request
            yield progress_event(PipelineStep.OUTLINE, "Generating article outline...")
            yield complete_event({"wordCount": 1200, "seoScore": 90})

        pipeline = MagicMock()
        pipeline.run = fake_run
        with patch.object(api_module, "ArticlePipeline", return_value=pipeline) as factory, \
                patch.object(api_module, "EventStream", side_effect=lambda is_disconnected: EventStream()):
            resp = keyed_client.post("/api/generate", json={
                "topic": "  Intro to Composting ",
                "researchDepth": "deep",
                "numberOfImages": 9,
                "gpt5ReasoningEffort": "low",
            })

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        events = _sse_events(resp.text)
        assert [e["type"] for e in events] == ["progress", "complete"]
        assert events[-1]["payload"]["wordCount"] == 1200

        generation = captured["request"]
        assert generation.topic == "Intro to Composting"
        assert generation.number_of_images == 5
        assert generation.reasoning_effort == "low"
        assert factory.call_args.args[0].openai_key == ALL_KEYS["openaiKey"]

    @pytest.mark.unit
    def test_stream_without_terminal_gets_error_frame(self, keyed_client):
        async def fake_run(request):
            yield progress_event(PipelineStep.OUTLINE, "Generating article outline...")

        pipeline = MagicMock()
        pipeline.run = fake_run
        with patch.object(api_module, "ArticlePipeline", return_value=pipeline), \
                patch.object(api_module, "EventStream", side_effect=lambda is_disconnected: EventStream()):
            resp = keyed_client.post("/api/generate", json={"topic": "Composting", "useResearch": False})

        events = _sse_events(resp.text)
        assert events[-1] == {"type": "error", "payload": {"message": "Generation ended unexpectedly"}}


class TestGenerateCTA:

    @pytest.mark.unit
    def test_generates_copy(self, keyed_client, mock_ai):
        mock_ai.generate_text.return_value = json.dumps({
            "title": "Grow better soil", "description": "Free checklist.", "buttonText": "Get it",
        })
        with patch.object(api_module, "AITextGenerator", return_value=mock_ai):
            resp = keyed_client.post("/api/generate-cta", json={"prompt": "compost checklist", "url": "https://x.com"})

        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "generatedText": {"title": "Grow better soil", "description": "Free checklist.", "buttonText": "Get it"},
        }
        mock_ai.close.assert_awaited_once()

    @pytest.mark.unit
    def test_missing_key(self, client):
        resp = client.post("/api/generate-cta", json={"prompt": "compost checklist", "aiProvider": "anthropic"})
        assert resp.status_code == 400

    @pytest.mark.unit
    def test_failure_is_classified(self, keyed_client, mock_ai):
        mock_ai.generate_text.return_value = ""
        with patch.object(api_module, "AITextGenerator", return_value=mock_ai):
            resp = keyed_client.post("/api/generate-cta", json={"prompt": "compost checklist"})
        assert resp.status_code == 500
        assert resp.json()["detail"] == "No CTA text generated"


# ===================================================================
# Articles
# ===================================================================

class TestArticles:

    @pytest.mark.unit
    def test_crud(self, client):
        created = client.post("/api/articles", json={"title": "Composting", "content": "<p>x</p>", "wordCount": 1})
        assert created.status_code == 200
        article_id = created.json()["article"]["id"]

        listed = client.get("/api/articles").json()
        assert listed["count"] == 1
        assert listed["articles"][0]["wordCount"] == 1

        patched = client.patch(f"/api/articles/{article_id}", json={"seoScore": 77})
        assert patched.json()["article"]["seoScore"] == 77
        assert client.get(f"/api/articles/{article_id}").json()["article"]["title"] == "Composting"

        assert client.delete(f"/api/articles/{article_id}").json() == {"success": True}
        assert client.get(f"/api/articles/{article_id}").status_code == 404

    @pytest.mark.unit
    def test_users_see_only_their_own(self, client):
        client.post("/api/articles", json={"title": "Mine"}, headers={"X-User-ID": "alice"})
        assert client.get("/api/articles", headers={"X-User-ID": "bob"}).json()["count"] == 0

    @pytest.mark.unit
    def test_title_required(self, client):
        assert client.post("/api/articles", json={"content": "x"}).status_code == 422

    @pytest.mark.unit
    def test_invalid_status(self, client):
        article_id = client.post("/api/articles", json={"title": "T"}).json()["article"]["id"]
        assert client.patch(f"/api/articles/{article_id}", json={"status": "archived"}).status_code == 400

    @pytest.mark.unit
    def test_schedule_and_unschedule(self, client):
        article_id = client.post("/api/articles", json={"title": "T"}).json()["article"]["id"]
        resp = client.post(f"/api/articles/{article_id}/schedule", json={"scheduledAt": "2999-01-01T09:00:00Z"})
        assert resp.json()["article"]["status"] == "scheduled"

        past = client.post(f"/api/articles/{article_id}/schedule", json={"scheduledAt": "2001-01-01T09:00:00Z"})
        assert past.status_code == 400

        resp = client.delete(f"/api/articles/{article_id}/schedule")
        assert resp.json()["article"]["status"] == "draft"
        assert resp.json()["article"]["scheduledAt"] is None

    @pytest.mark.unit
    def test_publish(self, keyed_client):
        article_id = keyed_client.post("/api/articles", json={"title": "T", "content": "<p>x</p>"}).json()["article"]["id"]
        wp = _wp_mock(post_id=55)
        with patch.object(api_module.WordPressClient, "from_credentials", return_value=wp):
            resp = keyed_client.post(f"/api/articles/{article_id}/publish")

        assert resp.status_code == 200
        body = resp.json()
        assert body["article"]["status"] == "published"
        assert body["wordpress"]["postId"] == 55
        assert wp.create_or_update_post.await_args.kwargs["status"] == "publish"
        wp.close.assert_awaited_once()

    @pytest.mark.unit
    def test_publish_bad_wordpress_login(self, keyed_client):
        article_id = keyed_client.post("/api/articles", json={"title": "T"}).json()["article"]["id"]
        wp = _wp_mock(connected=False)
        with patch.object(api_module.WordPressClient, "from_credentials", return_value=wp):
            resp = keyed_client.post(f"/api/articles/{article_id}/publish")
        assert resp.status_code == 401
        wp.create_or_update_post.assert_not_awaited()

    @pytest.mark.unit
    def test_publish_requires_wordpress(self, client):
        article_id = client.post("/api/articles", json={"title": "T"}).json()["article"]["id"]
        resp = client.post(f"/api/articles/{article_id}/publish")
        assert resp.status_code == 400

    @pytest.mark.unit
    def test_publish_missing_article(self, keyed_client):
        assert keyed_client.post("/api/articles/nope/publish").status_code == 404


# ===================================================================
# CTA templates & keys
# ===================================================================

class TestTemplates:

    @pytest.mark.unit
    def test_lifecycle(self, client):
        created = client.post("/api/cta-templates", json={"title": "Newsletter", "positionType": "end"})
        template_id = created.json()["template"]["id"]

        updated = client.put(f"/api/cta-templates/{template_id}", json={"title": "Weekly letter"})
        assert updated.json()["template"]["title"] == "Weekly letter"
        assert [t["title"] for t in client.get("/api/cta-templates").json()["templates"]] == ["Weekly letter"]

        assert client.delete(f"/api/cta-templates/{template_id}").status_code == 200
        assert client.delete(f"/api/cta-templates/{template_id}").status_code == 404

    @pytest.mark.unit
    def test_validation(self, client):
        assert client.post("/api/cta-templates", json={"description": "no title"}).status_code == 400
        assert client.post("/api/cta-templates", json={"title": "T", "style": "neon"}).status_code == 400
        assert client.put("/api/cta-templates/nope", json={"title": "x"}).status_code == 404


class TestKeys:

    @pytest.mark.unit
    def test_put_and_get_masked(self, client):
        resp = client.put("/api/keys", json={"openaiKey": "sk-abc-1234", "wordpressUrl": "https://a.com"})
        assert resp.json()["keys"] == {"openaiKey": "****1234", "wordpressUrl": "https://a.com"}
        assert client.get("/api/keys").json()["keys"]["openaiKey"] == "****1234"

    @pytest.mark.unit
    def test_unknown_key_rejected(self, client):
        assert client.put("/api/keys", json={"stripeKey": "x"}).status_code == 400

    @pytest.mark.unit
    def test_wordpress_test_requires_credentials(self, client):
        assert client.post("/api/wordpress/test", json={}).status_code == 400


# ===================================================================
# Cron
# ===================================================================

class TestCron:

    @pytest.mark.unit
    def test_rejects_without_secret(self, client):
        with patch.object(auth_module, "CRON_SECRET", "s3cret"):
            resp = client.get("/api/cron/publish-due")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Unauthorized"

    @pytest.mark.unit
    def test_bearer_secret(self, client):
        with patch.object(auth_module, "CRON_SECRET", "s3cret"):
            resp = client.post("/api/cron/publish-due", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True, "processed": 0, "published": 0, "skipped": 0, "failed": 0, "results": [],
        }

    @pytest.mark.unit
    def test_platform_header_alone_rejected(self, client):
        with patch.object(auth_module, "CRON_SECRET", "s3cret"):
            resp = client.post("/api/cron/publish-due", headers={"x-vercel-cron": "anything"})
        assert resp.status_code == 401

    @pytest.mark.unit
    def test_sweep_reports_skipped_article(self, client):
        article_id = client.post("/api/articles", json={"title": "T"}).json()["article"]["id"]
        state.articles.update_article("dev", article_id, status="scheduled", scheduled_at="2001-01-01T00:00:00Z")

        with patch.object(auth_module, "CRON_SECRET", "s3cret"):
            resp = client.get("/api/cron/publish-due", headers={"Authorization": "Bearer s3cret"})

        body = resp.json()
        assert body["processed"] == 1
        assert body["results"][0]["reason"] == "WordPress credentials missing"
